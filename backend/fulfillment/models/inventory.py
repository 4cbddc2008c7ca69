from __future__ import annotations

from ..extensions import db
from fulfillment.time_utils import to_utc_z


class ProductVariant(db.Model):
    """
    Sellable product variant (the unit an order line, purchase line and
    inventory transfer all refer to).

    Money fields are stored in cents; the display layer may only format them.
    """
    __tablename__ = "product_variants"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_product_variants_sku"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False)
    product_name = db.Column(db.String(255), nullable=False)

    price_cents = db.Column(db.Integer, nullable=True)
    cost_price_cents = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<ProductVariant id={self.id} sku={self.sku!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "product_name": self.product_name,
            "price_cents": self.price_cents,
            "cost_price_cents": self.cost_price_cents,
        }


class InventoryTransfer(db.Model):
    """
    Stock movement of one product variant between two stores.

    LIFECYCLE:
    1. pending: Transfer requested
    2. in_transit: Shipped from the source store
    3. completed: Received at the destination store
    4. cancelled: Abandoned (from pending or in_transit)

    A transfer may carry the order that triggered it. Order lines are NOT
    linked by foreign key; the backorder resolver matches on
    (order_id, product_variant_id) at read time.

    notes is an append-only log. Writers go through
    services.backorder_service.append_transfer_note under a row lock.
    """
    __tablename__ = "inventory_transfers"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_inventory_transfers_quantity_positive"),
        db.Index("ix_inventory_transfers_order_variant", "order_id", "product_variant_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    from_store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    to_store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    product_variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)

    # Fixed at creation
    quantity = db.Column(db.Integer, nullable=False)

    # pending, in_transit, completed, cancelled
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    from_store = db.relationship("Store", foreign_keys=[from_store_id])
    to_store = db.relationship("Store", foreign_keys=[to_store_id])
    product_variant = db.relationship("ProductVariant")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<InventoryTransfer id={self.id} order_id={self.order_id} "
            f"variant_id={self.product_variant_id} status={self.status!r}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from_store_id": self.from_store_id,
            "to_store_id": self.to_store_id,
            "product_variant_id": self.product_variant_id,
            "order_id": self.order_id,
            "quantity": self.quantity,
            "status": self.status,
            "notes": self.notes,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
        }
