from __future__ import annotations

from ..extensions import db
from fulfillment.time_utils import to_utc_z


class Purchase(db.Model):
    """
    Supplier purchase order.

    LIFECYCLE:
    pending -> confirmed -> in_transit -> partially_received / received -> completed
    cancelled is reachable from any state before completed.

    Money is stored in cents. total_amount_cents is the goods cost plus
    shipping_cost_cents, and shipping is spread over the lines by quantity
    (see services.purchase_service.update_purchase_shipping_cost).
    """
    __tablename__ = "purchases"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_purchases_order_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(64), nullable=False)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=True, index=True)

    status = db.Column(db.String(24), nullable=False, default="pending", index=True)

    shipping_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    store = db.relationship("Store")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Purchase id={self.id} number={self.order_number!r} status={self.status!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "store_id": self.store_id,
            "status": self.status,
            "shipping_cost_cents": self.shipping_cost_cents,
            "total_amount_cents": self.total_amount_cents,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
        }


class PurchaseLine(db.Model):
    """
    One product variant on a purchase. received_quantity below quantity is
    a normal partial receipt, not an error.
    """
    __tablename__ = "purchase_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    purchase_id = db.Column(db.Integer, db.ForeignKey("purchases.id"), nullable=False, index=True)
    product_variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    received_quantity = db.Column(db.Integer, nullable=False, default=0)

    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    allocated_shipping_cost_cents = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    purchase = db.relationship(
        "Purchase",
        backref=db.backref("lines", lazy=True, order_by="PurchaseLine.id"),
    )
    product_variant = db.relationship("ProductVariant")

    def __repr__(self) -> str:
        return f"<PurchaseLine id={self.id} purchase_id={self.purchase_id} qty={self.quantity}>"

    @property
    def is_fully_received(self) -> bool:
        return (self.received_quantity or 0) >= (self.quantity or 0)

    @property
    def landed_cost_cents(self) -> int:
        return (self.quantity or 0) * (self.unit_cost_cents or 0) + (self.allocated_shipping_cost_cents or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_id": self.purchase_id,
            "product_variant_id": self.product_variant_id,
            "quantity": self.quantity,
            "received_quantity": self.received_quantity,
            "unit_cost_cents": self.unit_cost_cents,
            "allocated_shipping_cost_cents": self.allocated_shipping_cost_cents,
            "landed_cost_cents": self.landed_cost_cents,
            "created_at": to_utc_z(self.created_at),
        }
