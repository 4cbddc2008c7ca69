from __future__ import annotations

from ..extensions import db
from fulfillment.time_utils import to_utc_z


class Order(db.Model):
    """
    Customer order header.

    shipping_status: pending, processing, shipped, delivered, cancelled.
    A cancelled order resolves all of its backordered lines.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_orders_order_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(64), nullable=False)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=True, index=True)

    shipping_status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    customer = db.relationship("Customer", backref=db.backref("orders", lazy=True))
    store = db.relationship("Store")

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r}>"

    @property
    def is_cancelled(self) -> bool:
        return self.shipping_status == "cancelled"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "customer_id": self.customer_id,
            "customer_name": self.customer.name if self.customer else None,
            "store_id": self.store_id,
            "shipping_status": self.shipping_status,
            "created_at": to_utc_z(self.created_at),
        }


class OrderLine(db.Model):
    """
    Individual item on an order.

    BACKORDER LIFECYCLE:
    1. Created with is_backorder=True when on-hand stock cannot cover it
    2. Linked to a supplier purchase line (purchase_line_id) and/or
       covered by an inventory transfer matched on order + variant
    3. Resolved once is_fulfilled is set or the order is cancelled

    purchase_line_id NULL means the line still awaits a sourcing decision.
    """
    __tablename__ = "order_lines"
    __table_args__ = (
        db.Index("ix_order_lines_backorder_purchase", "is_backorder", "purchase_line_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True, index=True)

    # Snapshots taken when the order was placed
    product_name = db.Column(db.String(255), nullable=True)
    sku = db.Column(db.String(64), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    fulfilled_quantity = db.Column(db.Integer, nullable=False, default=0)

    price_cents = db.Column(db.Integer, nullable=True)
    cost_cents = db.Column(db.Integer, nullable=True)

    is_backorder = db.Column(db.Boolean, nullable=False, default=False)
    is_fulfilled = db.Column(db.Boolean, nullable=False, default=False)

    purchase_line_id = db.Column(db.Integer, db.ForeignKey("purchase_lines.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", backref=db.backref("lines", lazy=True, order_by="OrderLine.id"))
    product_variant = db.relationship("ProductVariant")
    purchase_line = db.relationship("PurchaseLine", backref=db.backref("order_lines", lazy=True))

    def __repr__(self) -> str:
        return (
            f"<OrderLine id={self.id} order_id={self.order_id} "
            f"variant_id={self.product_variant_id} qty={self.quantity}>"
        )

    @property
    def pending_quantity(self) -> int:
        return max(0, (self.quantity or 0) - (self.fulfilled_quantity or 0))

    @property
    def is_fully_fulfilled(self) -> bool:
        # Over-fulfilment still counts as fulfilled
        return (self.fulfilled_quantity or 0) >= (self.quantity or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_variant_id": self.product_variant_id,
            "product_name": self.product_name,
            "sku": self.sku,
            "quantity": self.quantity,
            "fulfilled_quantity": self.fulfilled_quantity,
            "price_cents": self.price_cents,
            "cost_cents": self.cost_cents,
            "is_backorder": self.is_backorder,
            "is_fulfilled": self.is_fulfilled,
            "purchase_line_id": self.purchase_line_id,
            "created_at": to_utc_z(self.created_at),
        }
