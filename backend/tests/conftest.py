"""
Pytest fixtures for the fulfillment backend tests.

Provides test database setup, catalog/order fixtures and small factories
for orders, backordered lines, supplier purchases and inventory transfers.
"""

import itertools

import pytest
from fulfillment import create_app
from fulfillment.config import TestConfig
from fulfillment.extensions import db
from fulfillment.models import (
    Customer, InventoryTransfer, Order, OrderLine, ProductVariant, Purchase, PurchaseLine, Store,
)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def store_a(db_session):
    store = Store(name="Store A", code="A")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def store_b(db_session):
    store = Store(name="Store B", code="B")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def customer(db_session):
    customer = Customer(name="Chen Mei-Ling", phone="0912-345-678")
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def variant(db_session):
    variant = ProductVariant(
        sku="IPHONE-15-PRO-GOLD-512",
        product_name="iPhone 15 Pro Gold 512GB",
        price_cents=4590000,
        cost_price_cents=3800000,
    )
    db_session.add(variant)
    db_session.commit()
    return variant


@pytest.fixture(scope='function')
def make_variant(db_session):
    counter = itertools.count(1)

    def _make(sku=None, cost_price_cents=10000, product_name=None):
        n = next(counter)
        variant = ProductVariant(
            sku=sku or f"SKU-{n:03d}",
            product_name=product_name or f"Product {n}",
            price_cents=cost_price_cents * 2 if cost_price_cents is not None else None,
            cost_price_cents=cost_price_cents,
        )
        db_session.add(variant)
        db_session.commit()
        return variant

    return _make


@pytest.fixture(scope='function')
def make_order(db_session, store_a, customer):
    counter = itertools.count(1)

    def _make(order_number=None, customer=customer, shipping_status="pending", created_at=None):
        order = Order(
            order_number=order_number or f"SO-20250717-{next(counter):04d}",
            customer_id=customer.id if customer else None,
            store_id=store_a.id,
            shipping_status=shipping_status,
        )
        if created_at is not None:
            order.created_at = created_at
        db_session.add(order)
        db_session.commit()
        return order

    return _make


@pytest.fixture(scope='function')
def make_line(db_session, variant):
    def _make(order, line_variant=variant, quantity=1, is_backorder=True, purchase_line=None,
              fulfilled_quantity=0, is_fulfilled=False, created_at=None):
        line = OrderLine(
            order_id=order.id,
            product_variant_id=line_variant.id if line_variant else None,
            product_name=line_variant.product_name if line_variant else "Custom item",
            sku=line_variant.sku if line_variant else None,
            quantity=quantity,
            fulfilled_quantity=fulfilled_quantity,
            price_cents=line_variant.price_cents if line_variant else 0,
            cost_cents=line_variant.cost_price_cents if line_variant else 0,
            is_backorder=is_backorder,
            is_fulfilled=is_fulfilled,
            purchase_line_id=purchase_line.id if purchase_line else None,
        )
        if created_at is not None:
            line.created_at = created_at
        db_session.add(line)
        db_session.commit()
        return line

    return _make


@pytest.fixture(scope='function')
def make_purchase(db_session, store_a, variant):
    """make_purchase(status, lines=[(variant, quantity, unit_cost_cents), ...])"""
    counter = itertools.count(1)

    def _make(status="pending", lines=None, shipping_cost_cents=0):
        purchase = Purchase(
            order_number=f"PO-20250717-{next(counter):04d}",
            store_id=store_a.id,
            status=status,
            shipping_cost_cents=shipping_cost_cents,
        )
        db_session.add(purchase)
        db_session.flush()
        for line_variant, quantity, unit_cost_cents in (lines if lines is not None else [(variant, 5, 10000)]):
            db_session.add(PurchaseLine(
                purchase_id=purchase.id,
                product_variant_id=line_variant.id if line_variant else None,
                quantity=quantity,
                unit_cost_cents=unit_cost_cents,
            ))
        db_session.commit()
        return purchase

    return _make


@pytest.fixture(scope='function')
def make_transfer(db_session, store_a, store_b, variant):
    def _make(order, status="pending", transfer_variant=variant, quantity=1, notes=None):
        transfer = InventoryTransfer(
            from_store_id=store_b.id,
            to_store_id=store_a.id,
            product_variant_id=transfer_variant.id if transfer_variant else None,
            order_id=order.id if order else None,
            quantity=quantity,
            status=status,
            notes=notes,
        )
        db_session.add(transfer)
        db_session.commit()
        return transfer

    return _make
