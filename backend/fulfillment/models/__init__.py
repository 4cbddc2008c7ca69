from .tenancy import Store
from .customers import Customer
from .inventory import ProductVariant, InventoryTransfer
from .purchasing import Purchase, PurchaseLine
from .orders import Order, OrderLine

__all__ = [
    'Store',
    'Customer',
    'ProductVariant', 'InventoryTransfer',
    'Purchase', 'PurchaseLine',
    'Order', 'OrderLine',
]
