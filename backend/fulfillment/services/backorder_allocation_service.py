# Overview: Hands received stock to waiting backordered order lines, oldest first.

"""
Backorder Allocation Service

When stock for a product variant arrives (usually a purchase receipt), the
units are handed to open backordered order lines of that variant.

CANDIDATES:
- is_backorder, not is_fulfilled, fulfilled_quantity < quantity
- order not cancelled and not delivered
- optional store and max waiting days filters

STRATEGY:
fifo only. Lines are served by created_at, then id. priority_score is
1000 minus whole days waiting, so older lines score higher; it is reported
but does not change the order.

DRY RUN:
dry_run=True computes exactly the same result without touching any line,
so a preview and the real run agree for the same data.

TRANSACTIONS:
Lines are read under a row lock and the run retries on conflicts
(run_with_retry). Changes are flushed, never committed; the caller owns
the commit.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Mapping, Optional

from flask import current_app
from sqlalchemy.orm import joinedload

from ..extensions import db
from ..models import Order, OrderLine, PurchaseLine
from fulfillment.time_utils import utcnow, whole_days_since
from . import purchase_service
from .concurrency import lock_for_update, run_with_retry


ALLOCATION_STRATEGY_FIFO = "fifo"
ALLOCATION_STRATEGIES = (ALLOCATION_STRATEGY_FIFO,)

FIFO_BASE_SCORE = 1000
CLOSED_ORDER_STATUSES = ("cancelled", "delivered")

FULFILLMENT_FULL = "fully_fulfilled"
FULFILLMENT_PARTIAL = "partially_fulfilled"

# (bucket, inclusive upper bound in days); the last bucket has no bound
WAITING_BUCKETS = (
    ("1_week", 7),
    ("1_month", 30),
    ("3_months", 90),
    ("over_3_months", None),
)

PRIORITY_BUCKETS = (
    ("very_high", 200),
    ("high", 100),
    ("medium", 50),
    ("low", 0),
)

TOP_PRIORITY_LIMIT = 10


class AllocationError(ValueError):
    """Raised when stock cannot be allocated with the given input."""
    pass


class PurchaseLineNotFoundError(LookupError):
    """Raised when the purchase line a receipt refers to does not exist."""
    pass


def fifo_priority_score(line: OrderLine, now: Optional[datetime] = None) -> int:
    return FIFO_BASE_SCORE - whole_days_since(line.created_at, now)


def waiting_bucket(days: int) -> str:
    for name, limit in WAITING_BUCKETS:
        if limit is None or days <= limit:
            return name
    return WAITING_BUCKETS[-1][0]


def priority_bucket(score: int) -> str:
    for name, floor in PRIORITY_BUCKETS:
        if score >= floor:
            return name
    return "very_low"


def _check_strategy(strategy: str) -> None:
    if strategy not in ALLOCATION_STRATEGIES:
        raise AllocationError(
            f"Unknown allocation strategy {strategy!r}; expected one of {', '.join(ALLOCATION_STRATEGIES)}"
        )


def _candidate_lines(
    product_variant_id: int,
    *,
    store_id: Optional[int] = None,
    max_waiting_days: Optional[int] = None,
    for_update: bool = False,
    now: Optional[datetime] = None,
) -> list[OrderLine]:
    query = (
        db.session.query(OrderLine)
        .join(Order, OrderLine.order_id == Order.id)
        .filter(
            OrderLine.product_variant_id == product_variant_id,
            OrderLine.is_backorder.is_(True),
            OrderLine.is_fulfilled.is_(False),
            OrderLine.fulfilled_quantity < OrderLine.quantity,
            Order.shipping_status.notin_(CLOSED_ORDER_STATUSES),
        )
    )
    if store_id is not None:
        query = query.filter(Order.store_id == store_id)
    if max_waiting_days is not None:
        cutoff = (now or utcnow()) - timedelta(days=max_waiting_days)
        query = query.filter(OrderLine.created_at >= cutoff)

    query = query.order_by(OrderLine.created_at.asc(), OrderLine.id.asc())
    if for_update:
        query = lock_for_update(query)
    else:
        # Eager outer joins cannot sit under FOR UPDATE on PostgreSQL
        query = query.options(joinedload(OrderLine.order).joinedload(Order.customer))
    return query.all()


def _customer_name(line: OrderLine) -> str:
    order = line.order
    if order is not None and order.customer is not None:
        return order.customer.name
    return "Unknown"


def _plan(candidates: list[OrderLine], quantity: int) -> list[tuple[OrderLine, int]]:
    remaining = quantity
    plan = []
    for line in candidates:
        if remaining <= 0:
            break
        share = min(remaining, line.pending_quantity)
        if share > 0:
            plan.append((line, share))
            remaining -= share
    return plan


def _allocation_record(line: OrderLine, share: int, now: datetime) -> dict:
    will_fulfil = (line.fulfilled_quantity or 0) + share >= line.quantity
    return {
        "order_line_id": line.id,
        "order_id": line.order_id,
        "order_number": line.order.order_number if line.order else "",
        "customer_name": _customer_name(line),
        "allocated_quantity": share,
        "priority_score": fifo_priority_score(line, now),
        "fulfillment_status": FULFILLMENT_FULL if will_fulfil else FULFILLMENT_PARTIAL,
        "will_be_fully_fulfilled": will_fulfil,
        "waiting_days": whole_days_since(line.created_at, now),
        "allocation_reason": ALLOCATION_STRATEGY_FIFO,
    }


def allocate_stock_to_backorders(
    product_variant_id: int,
    quantity: int,
    *,
    strategy: str = ALLOCATION_STRATEGY_FIFO,
    store_id: Optional[int] = None,
    max_waiting_days: Optional[int] = None,
    dry_run: bool = False,
    now: Optional[datetime] = None,
) -> dict:
    """
    Hand quantity units of a variant to its waiting backordered lines.

    Args:
        product_variant_id: Variant the stock is for
        quantity: Units available (> 0)
        strategy: Allocation order; only "fifo"
        store_id: Only serve orders of this store
        max_waiting_days: Only serve lines created within this many days
        dry_run: Compute the result without changing any line

    Returns:
        dict with allocated_items, total_allocated, remaining_quantity,
        dry_run and allocation_summary (total_candidates, allocated_orders,
        fully_fulfilled_orders, allocation_efficiency in percent)

    Raises:
        AllocationError: Non-positive quantity or unknown strategy
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise AllocationError(f"Quantity to allocate must be a positive integer, got {quantity!r}")
    _check_strategy(strategy)
    now = now or utcnow()

    def _op():
        candidates = _candidate_lines(
            product_variant_id,
            store_id=store_id,
            max_waiting_days=max_waiting_days,
            for_update=not dry_run,
            now=now,
        )
        plan = _plan(candidates, quantity)
        items = [_allocation_record(line, share, now) for line, share in plan]

        if not dry_run:
            for line, share in plan:
                line.fulfilled_quantity = (line.fulfilled_quantity or 0) + share
                if line.is_fully_fulfilled:
                    line.is_fulfilled = True
                current_app.logger.info(
                    "Allocated %s of variant %s to order line %s (order %s)",
                    share, product_variant_id, line.id, line.order_id,
                )
            db.session.flush()

        total = sum(item["allocated_quantity"] for item in items)
        return {
            "product_variant_id": product_variant_id,
            "strategy": strategy,
            "dry_run": dry_run,
            "allocated_items": items,
            "total_allocated": total,
            "remaining_quantity": quantity - total,
            "allocation_summary": {
                "total_candidates": len(candidates),
                "allocated_orders": len(items),
                "fully_fulfilled_orders": sum(1 for item in items if item["will_be_fully_fulfilled"]),
                "allocation_efficiency": round(total * 100 / quantity, 2),
            },
        }

    if dry_run:
        return _op()
    return run_with_retry(_op)


def allocate_receipt_to_backorders(
    purchase_line_id: int,
    quantity: Optional[int] = None,
    *,
    dry_run: bool = False,
    strategy: str = ALLOCATION_STRATEGY_FIFO,
    store_id: Optional[int] = None,
    max_waiting_days: Optional[int] = None,
) -> dict:
    """
    Allocate units received on a purchase line.

    quantity defaults to everything received on the line so far.
    """
    purchase_line = db.session.get(PurchaseLine, purchase_line_id)
    if purchase_line is None:
        raise PurchaseLineNotFoundError(f"Purchase line {purchase_line_id} not found")
    if purchase_line.product_variant_id is None:
        raise AllocationError(f"Purchase line {purchase_line_id} has no product variant")

    if quantity is None:
        quantity = purchase_line.received_quantity or 0
    result = allocate_stock_to_backorders(
        purchase_line.product_variant_id,
        quantity,
        strategy=strategy,
        store_id=store_id,
        max_waiting_days=max_waiting_days,
        dry_run=dry_run,
    )
    result["purchase_line_id"] = purchase_line_id
    return result


def receive_and_allocate(purchase_id: int, received: Mapping[int, int], **options) -> tuple:
    """
    Record a receipt and hand each line's newly received units to backorders.

    Lines without a product variant are received but not allocated.

    Returns:
        (purchase, {purchase_line_id: allocation result})
    """
    purchase = purchase_service.record_purchase_receipt(purchase_id, received)
    results = {}
    for line_id, quantity in received.items():
        if db.session.get(PurchaseLine, line_id).product_variant_id is None:
            continue
        results[line_id] = allocate_receipt_to_backorders(line_id, quantity, **options)
    return purchase, results


def get_allocation_report(
    product_variant_id: int,
    *,
    store_id: Optional[int] = None,
    max_waiting_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Waiting backorders of a variant, in the order an allocation would serve them."""
    now = now or utcnow()
    candidates = _candidate_lines(
        product_variant_id, store_id=store_id, max_waiting_days=max_waiting_days, now=now,
    )

    def _group(key_of):
        groups = {}
        for line in candidates:
            groups.setdefault(key_of(line), []).append(line)
        return groups

    priority_groups = _group(lambda line: priority_bucket(fifo_priority_score(line, now)))
    waiting_groups = _group(lambda line: waiting_bucket(whole_days_since(line.created_at, now)))

    priority_distribution = {}
    for name in [b[0] for b in PRIORITY_BUCKETS] + ["very_low"]:
        lines = priority_groups.get(name)
        if lines:
            priority_distribution[name] = {
                "count": len(lines),
                "total_quantity": sum(line.pending_quantity for line in lines),
                "avg_score": round(sum(fifo_priority_score(line, now) for line in lines) / len(lines), 2),
            }

    waiting_time_analysis = {}
    for name, _ in WAITING_BUCKETS:
        lines = waiting_groups.get(name)
        if lines:
            waiting_time_analysis[name] = {
                "count": len(lines),
                "total_quantity": sum(line.pending_quantity for line in lines),
                "avg_waiting_days": round(
                    sum(whole_days_since(line.created_at, now) for line in lines) / len(lines), 2
                ),
            }

    return {
        "product_variant_id": product_variant_id,
        "strategy": ALLOCATION_STRATEGY_FIFO,
        "total_pending_orders": len(candidates),
        "total_pending_quantity": sum(line.pending_quantity for line in candidates),
        "priority_distribution": priority_distribution,
        "top_priority_orders": [
            {
                "order_line_id": line.id,
                "order_number": line.order.order_number if line.order else "",
                "customer_name": _customer_name(line),
                "quantity": line.quantity,
                "fulfilled_quantity": line.fulfilled_quantity,
                "pending_quantity": line.pending_quantity,
                "priority_score": fifo_priority_score(line, now),
                "waiting_days": whole_days_since(line.created_at, now),
            }
            for line in candidates[:TOP_PRIORITY_LIMIT]
        ],
        "waiting_time_analysis": waiting_time_analysis,
    }
