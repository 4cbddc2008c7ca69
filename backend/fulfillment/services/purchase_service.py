# backend/fulfillment/services/purchase_service.py
"""
Supplier purchase money and receipt operations.

SHIPPING COST:
A purchase's shipping cost is one lump amount. It is spread over the
purchase lines in proportion to ordered quantity with allocate(), so the
line allocations always add back up to the header amount; the last line
absorbs the rounding remainder.

FROM BACKORDERS:
Backordered order lines without a purchase become pending purchases, one
per receiving store and one line per variant, numbered PO-YYYYMMDD-NNNN.

PARTIAL RECEIPT:
Receiving fewer units than ordered is a normal state. The purchase moves
to partially_received until every line is fully received, then received.
"""
from __future__ import annotations

from collections import OrderedDict
from datetime import date
from typing import Iterable, Mapping, Optional

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import OrderLine, Purchase, PurchaseLine
from fulfillment.time_utils import utcnow
from .allocation_service import allocate_to
from .concurrency import lock_for_update, run_with_retry
from .status_service import (
    PURCHASE_STATE_CANCELLED,
    PURCHASE_STATE_COMPLETED,
    PURCHASE_STATE_PARTIALLY_RECEIVED,
    PURCHASE_STATE_PENDING,
    PURCHASE_STATE_RECEIVED,
)


PURCHASE_NUMBER_PREFIX = "PO"


class PurchaseNotFoundError(LookupError):
    """Raised when a purchase does not exist."""
    pass


class PurchaseValidationError(ValueError):
    """Raised when purchase input or state does not allow the operation."""
    pass


def _locked_purchase(purchase_id: int) -> Purchase:
    purchase = lock_for_update(db.session.query(Purchase).filter_by(id=purchase_id)).first()
    if purchase is None:
        raise PurchaseNotFoundError(f"Purchase {purchase_id} not found")
    return purchase


def goods_total_cents(purchase: Purchase) -> int:
    return sum((line.quantity or 0) * (line.unit_cost_cents or 0) for line in purchase.lines)


def update_purchase_shipping_cost(purchase_id: int, shipping_cost_cents: int) -> Purchase:
    """
    Replace the shipping cost of a purchase and reallocate it over its lines.

    Args:
        purchase_id: Purchase ID
        shipping_cost_cents: New total shipping cost in cents (>= 0)

    Returns:
        Purchase: The updated purchase (flushed, not committed)

    Raises:
        PurchaseNotFoundError: If the purchase does not exist
        PurchaseValidationError: Negative/non-integer amount or cancelled purchase
    """
    if isinstance(shipping_cost_cents, bool) or not isinstance(shipping_cost_cents, int):
        raise PurchaseValidationError("Shipping cost must be an integer amount of cents")
    if shipping_cost_cents < 0:
        raise PurchaseValidationError("Shipping cost cannot be negative")

    def _op():
        purchase = _locked_purchase(purchase_id)
        if purchase.status == PURCHASE_STATE_CANCELLED:
            raise PurchaseValidationError(f"Cannot change shipping cost of purchase in {purchase.status} status")

        lines = _apply_shipping(purchase, shipping_cost_cents)
        db.session.flush()

        current_app.logger.info(
            "Purchase %s shipping cost set to %s cents over %s lines",
            purchase.id, shipping_cost_cents, len(lines),
        )
        return purchase

    return run_with_retry(_op)


def _apply_shipping(purchase: Purchase, shipping_cost_cents: int) -> list[PurchaseLine]:
    lines = list(purchase.lines)
    if lines:
        for line, share in allocate_to(shipping_cost_cents, lines, lambda l: l.quantity or 0):
            line.allocated_shipping_cost_cents = share

    purchase.shipping_cost_cents = shipping_cost_cents
    purchase.total_amount_cents = goods_total_cents(purchase) + shipping_cost_cents
    return lines


def next_purchase_number(day: Optional[date] = None) -> str:
    """
    Next PO-YYYYMMDD-NNNN number for the day.

    order_number is unique, so a concurrent writer that takes the same
    number makes the flush fail with IntegrityError instead of duplicating it.
    """
    day = day or utcnow().date()
    prefix = f"{PURCHASE_NUMBER_PREFIX}-{day:%Y%m%d}-"
    last = (
        db.session.query(func.max(Purchase.order_number))
        .filter(Purchase.order_number.like(f"{prefix}%"))
        .scalar()
    )
    sequence = int(last.rsplit("-", 1)[1]) + 1 if last else 1
    return f"{prefix}{sequence:04d}"


def create_purchase_from_backorders(
    order_line_ids: Iterable[int],
    *,
    store_id: Optional[int] = None,
    shipping_cost_cents: int = 0,
) -> list[Purchase]:
    """
    Turn backordered order lines into supplier purchases.

    Lines that are not backorders, already have a purchase line, have
    nothing pending, have no product variant or belong to a cancelled
    order are skipped. The remaining lines are grouped into one purchase
    per receiving store (store_id, or else each order's store), with one
    purchase line per variant for the summed pending quantity at the
    variant's cost price. Every converted order line is bound to its new
    purchase line.

    Args:
        order_line_ids: Candidate order line IDs
        store_id: Receive everything at this store (one purchase)
        shipping_cost_cents: Shipping of the new purchase, spread by quantity;
            only allowed when a single purchase results

    Returns:
        list[Purchase]: New pending purchases (flushed, not committed)

    Raises:
        PurchaseValidationError: No valid backordered lines, negative
            shipping, or shipping given for more than one purchase
    """
    if isinstance(shipping_cost_cents, bool) or not isinstance(shipping_cost_cents, int):
        raise PurchaseValidationError("Shipping cost must be an integer amount of cents")
    if shipping_cost_cents < 0:
        raise PurchaseValidationError("Shipping cost cannot be negative")

    ids = sorted(set(order_line_ids))
    lines = []
    if ids:
        lines = (
            db.session.query(OrderLine)
            .filter(OrderLine.id.in_(ids))
            .order_by(OrderLine.created_at.asc(), OrderLine.id.asc())
            .all()
        )
    lines = [
        line for line in lines
        if line.is_backorder
        and line.purchase_line_id is None
        and line.product_variant_id is not None
        and line.pending_quantity > 0
        and not (line.order and line.order.is_cancelled)
    ]
    if not lines:
        raise PurchaseValidationError("No valid backordered items found")

    by_store = OrderedDict()
    for line in lines:
        receiving_store = store_id if store_id is not None else (line.order.store_id if line.order else None)
        by_store.setdefault(receiving_store, []).append(line)

    if shipping_cost_cents and len(by_store) > 1:
        raise PurchaseValidationError(
            f"Shipping cost needs a single purchase; these lines make {len(by_store)} (pass store_id)"
        )

    purchases = []
    for receiving_store, store_lines in by_store.items():
        purchase = Purchase(
            order_number=next_purchase_number(),
            store_id=receiving_store,
            status=PURCHASE_STATE_PENDING,
        )
        db.session.add(purchase)
        db.session.flush()

        by_variant = OrderedDict()
        for line in store_lines:
            by_variant.setdefault(line.product_variant_id, []).append(line)

        for variant_id, variant_lines in by_variant.items():
            variant = variant_lines[0].product_variant
            purchase_line = PurchaseLine(
                purchase_id=purchase.id,
                product_variant_id=variant_id,
                quantity=sum(line.pending_quantity for line in variant_lines),
                unit_cost_cents=(variant.cost_price_cents if variant else None) or 0,
            )
            db.session.add(purchase_line)
            db.session.flush()
            for line in variant_lines:
                line.purchase_line = purchase_line

        db.session.expire(purchase, ["lines"])
        _apply_shipping(purchase, shipping_cost_cents)
        db.session.flush()

        current_app.logger.info(
            "Purchase %s created from backorders: order lines %s",
            purchase.order_number, [line.id for line in store_lines],
        )
        purchases.append(purchase)

    return purchases


def record_purchase_receipt(purchase_id: int, received: Mapping[int, int]) -> Purchase:
    """
    Record units received now, per purchase line.

    Args:
        purchase_id: Purchase ID
        received: {purchase_line_id: quantity received in this delivery}

    Returns:
        Purchase: Updated purchase, status received or partially_received

    Raises:
        PurchaseNotFoundError: If the purchase does not exist
        PurchaseValidationError: Unknown line, non-positive quantity,
            over-receipt, or a completed/cancelled purchase
    """
    if not received:
        raise PurchaseValidationError("Nothing to receive")

    def _op():
        purchase = _locked_purchase(purchase_id)
        if purchase.status in (PURCHASE_STATE_COMPLETED, PURCHASE_STATE_CANCELLED):
            raise PurchaseValidationError(f"Cannot receive against purchase in {purchase.status} status")

        lines = {line.id: line for line in purchase.lines}
        for line_id, quantity in received.items():
            line = lines.get(line_id)
            if line is None:
                raise PurchaseValidationError(f"Line {line_id} does not belong to purchase {purchase_id}")
            if quantity <= 0:
                raise PurchaseValidationError("Received quantity must be positive")
            if (line.received_quantity or 0) + quantity > line.quantity:
                raise PurchaseValidationError(
                    f"Line {line_id}: receiving {quantity} would exceed ordered quantity "
                    f"{line.quantity} (already received {line.received_quantity or 0})"
                )

        for line_id, quantity in received.items():
            lines[line_id].received_quantity = (lines[line_id].received_quantity or 0) + quantity

        if all(line.is_fully_received for line in lines.values()):
            purchase.status = PURCHASE_STATE_RECEIVED
        else:
            purchase.status = PURCHASE_STATE_PARTIALLY_RECEIVED
        db.session.flush()

        current_app.logger.info(
            "Purchase %s receipt recorded for lines %s; status %s",
            purchase.id, sorted(received), purchase.status,
        )
        return purchase

    return run_with_retry(_op)
