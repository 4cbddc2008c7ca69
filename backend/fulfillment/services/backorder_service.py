# backend/fulfillment/services/backorder_service.py
"""
Backorder aggregation: pending backorder listings (flat or grouped by
order), statistics, per-variant purchase preparation, and the one
mutating operation, advancing the transfer that covers a backordered line.

SNAPSHOT RULE:
Every listing resolves purchase/transfer context for ALL of its lines
first (FulfillmentSourceResolver.resolve_many), and only then derives
per-line and per-order statuses, so an order summary never mixes reads.

TRANSACTIONS:
update_backorder_transfer_status flushes but does not commit. Status and
note are written in the same UPDATE under a row lock plus the transfer's
version counter; the caller owns the commit.
"""
from __future__ import annotations

from collections import OrderedDict
from datetime import datetime
from typing import Optional

from flask import current_app
from sqlalchemy.orm import joinedload

from ..extensions import db
from ..models import Order, OrderLine, PurchaseLine
from fulfillment.time_utils import end_of_day, parse_iso_datetime, to_utc_z, whole_days_since
from .concurrency import run_with_retry
from .fulfillment_resolver import FulfillmentSourceResolver, FulfillmentSources
from .status_service import (
    TRANSFER_STATUSES,
    derive_purchase_status,
    integrate_status,
    is_line_resolved,
    purchase_status_text,
    summarize_order_status,
    summary_status_text,
)


NOTE_SEPARATOR = "\n"


class BackorderNotFoundError(LookupError):
    """Raised when the order line targeted by an update does not exist."""
    pass


class TransferNotFoundError(LookupError):
    """Raised when no inventory transfer is associated with the order line."""
    pass


class InvalidTransferStatusError(ValueError):
    """Raised when a transfer status outside pending/in_transit/completed/cancelled is requested."""
    pass


def _apply_filters(query, date_from=None, date_to=None, product_variant_id: Optional[int] = None):
    start = parse_iso_datetime(date_from)
    end = end_of_day(date_to)
    if start is not None:
        query = query.filter(OrderLine.created_at >= start)
    if end is not None:
        query = query.filter(OrderLine.created_at <= end)
    if product_variant_id is not None:
        query = query.filter(OrderLine.product_variant_id == product_variant_id)
    return query


def _backorder_query(*, pending_only: bool, date_from=None, date_to=None, product_variant_id=None):
    query = (
        db.session.query(OrderLine)
        .options(joinedload(OrderLine.order).joinedload(Order.customer))
        .filter(OrderLine.is_backorder.is_(True))
    )
    if pending_only:
        query = query.filter(OrderLine.purchase_line_id.is_(None))
    query = _apply_filters(query, date_from, date_to, product_variant_id)
    return query.order_by(OrderLine.created_at.asc(), OrderLine.id.asc())


def _order_summary(order: Optional[Order]) -> dict:
    return {
        "order_number": order.order_number if order else "",
        "customer": {"name": order.customer.name} if order and order.customer else None,
    }


def _flat_record(line: OrderLine, purchase_state: Optional[str] = None) -> dict:
    purchase_status = derive_purchase_status(purchase_state, is_backorder=line.is_backorder)
    record = line.to_dict()
    record.update(
        {
            "purchase_status": purchase_status,
            "purchase_status_text": purchase_status_text(purchase_status),
            "order": _order_summary(line.order),
        }
    )
    return record


def _purchase_context(purchase_line: Optional[PurchaseLine]) -> Optional[dict]:
    if purchase_line is None:
        return None
    purchase = purchase_line.purchase
    return {
        "purchase_line_id": purchase_line.id,
        "purchase_id": purchase_line.purchase_id,
        "purchase_number": purchase.order_number if purchase else None,
        "status": purchase.status if purchase else None,
        "quantity": purchase_line.quantity,
        "received_quantity": purchase_line.received_quantity,
    }


def _context_record(sources: FulfillmentSources) -> dict:
    line = sources.order_line
    integrated = integrate_status(sources.purchase_state, sources.transfer_state)
    record = _flat_record(line, sources.purchase_state)
    record.update(
        {
            "integrated_status": integrated.key,
            "integrated_status_text": integrated.text,
            "is_resolved": is_line_resolved(
                integrated.key,
                is_fulfilled=bool(line.is_fulfilled) or line.is_fully_fulfilled,
                is_cancelled=bool(line.order and line.order.is_cancelled),
            ),
            "transfer": sources.transfer.to_dict() if sources.transfer is not None else None,
            "purchase": _purchase_context(sources.purchase_line),
            "transfer_conflict_ids": list(sources.transfer_conflict_ids),
        }
    )
    return record


def list_pending_backorders(*, date_from=None, date_to=None, product_variant_id: Optional[int] = None) -> list[dict]:
    """
    Backordered lines with no purchase line linked yet, flat and ungrouped.

    Returns an empty list when there is nothing pending.
    """
    lines = _backorder_query(
        pending_only=True,
        date_from=date_from,
        date_to=date_to,
        product_variant_id=product_variant_id,
    ).all()
    return [_flat_record(line) for line in lines]


def list_pending_backorders_with_context(
    *,
    group_by_order: bool = False,
    include_transfers: bool = True,
    for_purchase_only: bool = False,
    date_from=None,
    date_to=None,
    product_variant_id: Optional[int] = None,
    resolver: Optional[FulfillmentSourceResolver] = None,
) -> list[dict]:
    """
    Pending backorders with purchase/transfer context and integrated status.

    A line qualifies when it has no purchase line yet, or when it already
    has a matching transfer (it stays visible even once purchase-linked).

    Args:
        group_by_order: Return order groups instead of flat line records
        include_transfers: Attach transfer context (False: purchase side only)
        for_purchase_only: Drop lines already covered by a transfer
        date_from / date_to: Inclusive line creation date bounds
        product_variant_id: Restrict to one variant
        resolver: Alternate resolver (e.g. strict mode)
    """
    resolver = resolver or FulfillmentSourceResolver()
    lines = _backorder_query(
        pending_only=not include_transfers,
        date_from=date_from,
        date_to=date_to,
        product_variant_id=product_variant_id,
    ).all()

    if include_transfers:
        sources = resolver.resolve_many(lines)
    else:
        sources = [FulfillmentSources(order_line=line) for line in lines]

    selected = [
        s for s in sources
        if s.order_line.purchase_line_id is None or s.transfer is not None
    ]
    if for_purchase_only:
        selected = [s for s in selected if s.transfer is None]

    records = [_context_record(s) for s in selected]
    if group_by_order:
        return _group_by_order(selected, records)
    return records


def _group_by_order(sources: list[FulfillmentSources], records: list[dict]) -> list[dict]:
    groups: "OrderedDict[int, dict]" = OrderedDict()
    oldest: dict[int, Optional[datetime]] = {}

    for source, record in zip(sources, records):
        line = source.order_line
        order = line.order
        group = groups.get(line.order_id)
        if group is None:
            group = {
                "order_id": line.order_id,
                "order_number": order.order_number if order else "",
                "customer_name": order.customer.name if order and order.customer else None,
                "created_at": to_utc_z(order.created_at) if order else None,
                "total_items": 0,
                "total_quantity": 0,
                "items": [],
            }
            groups[line.order_id] = group
            oldest[line.order_id] = line.created_at

        group["total_items"] += 1
        group["total_quantity"] += line.quantity or 0
        group["items"].append(record)
        if line.created_at is not None and (oldest[line.order_id] is None or line.created_at < oldest[line.order_id]):
            oldest[line.order_id] = line.created_at

    result = []
    for order_id, group in groups.items():
        summary = summarize_order_status(
            (item["integrated_status"], item["is_resolved"]) for item in group["items"]
        )
        group["summary_status"] = summary
        group["summary_status_text"] = summary_status_text(summary)
        group["days_pending"] = whole_days_since(oldest[order_id])
        result.append(group)
    return result


def get_pending_backorder_stats(*, date_from=None, date_to=None, product_variant_id: Optional[int] = None) -> dict:
    lines = _backorder_query(
        pending_only=True,
        date_from=date_from,
        date_to=date_to,
        product_variant_id=product_variant_id,
    ).all()

    created = [line.created_at for line in lines if line.created_at is not None]
    oldest = min(created) if created else None
    return {
        "total_items": len(lines),
        "unique_products": len({line.product_variant_id for line in lines if line.product_variant_id is not None}),
        "affected_orders": len({line.order_id for line in lines}),
        "total_quantity": sum(line.quantity or 0 for line in lines),
        "oldest_backorder_date": to_utc_z(oldest),
        "days_pending": whole_days_since(oldest),
    }


def summarize_backorders_by_variant(*, date_from=None, date_to=None, product_variant_id: Optional[int] = None) -> list[dict]:
    """
    Pending backorders grouped by product variant, for turning them into
    supplier purchases. estimated_cost_cents is the variant cost times the
    total quantity (None when the variant has no cost).
    """
    lines = (
        _backorder_query(
            pending_only=True,
            date_from=date_from,
            date_to=date_to,
            product_variant_id=product_variant_id,
        )
        .options(joinedload(OrderLine.product_variant))
        .all()
    )

    groups: "OrderedDict[Optional[int], dict]" = OrderedDict()
    for line in lines:
        group = groups.get(line.product_variant_id)
        if group is None:
            variant = line.product_variant
            group = {
                "product_variant_id": line.product_variant_id,
                "product_name": line.product_name or (variant.product_name if variant else None),
                "sku": line.sku or (variant.sku if variant else None),
                "total_quantity": 0,
                "order_ids": [],
                "item_ids": [],
                "earliest_date": line.created_at,
                "latest_date": line.created_at,
                "_cost": variant.cost_price_cents if variant else None,
            }
            groups[line.product_variant_id] = group

        group["total_quantity"] += line.quantity or 0
        group["item_ids"].append(line.id)
        if line.order_id not in group["order_ids"]:
            group["order_ids"].append(line.order_id)
        if line.created_at is not None:
            if group["earliest_date"] is None or line.created_at < group["earliest_date"]:
                group["earliest_date"] = line.created_at
            if group["latest_date"] is None or line.created_at > group["latest_date"]:
                group["latest_date"] = line.created_at

    result = []
    for group in groups.values():
        cost = group.pop("_cost")
        group["order_count"] = len(group["order_ids"])
        group["estimated_cost_cents"] = cost * group["total_quantity"] if cost is not None else None
        group["earliest_date"] = to_utc_z(group["earliest_date"])
        group["latest_date"] = to_utc_z(group["latest_date"])
        result.append(group)

    result.sort(key=lambda g: (g["product_variant_id"] is None, g["product_variant_id"] or 0))
    return result


def append_transfer_note(transfer, note: Optional[str]) -> None:
    """Append to the transfer's running notes; prior notes are never overwritten."""
    if note is None or not note.strip():
        return
    if transfer.notes:
        transfer.notes = f"{transfer.notes}{NOTE_SEPARATOR}{note}"
    else:
        transfer.notes = note


def update_backorder_transfer_status(
    order_line_id: int,
    new_status: str,
    note: Optional[str] = None,
    *,
    resolver: Optional[FulfillmentSourceResolver] = None,
) -> bool:
    """
    Set the status of the transfer covering a backordered line and append
    the note to its notes.

    Returns:
        True once status and note are flushed together

    Raises:
        InvalidTransferStatusError: new_status is not a transfer status
        BackorderNotFoundError: No such order line
        TransferNotFoundError: No transfer matches the line (nothing is written)
    """
    if new_status not in TRANSFER_STATUSES:
        raise InvalidTransferStatusError(
            f"Invalid transfer status {new_status!r}; expected one of {', '.join(TRANSFER_STATUSES)}"
        )
    resolver = resolver or FulfillmentSourceResolver()

    def _op():
        session = resolver.session
        line = session.get(OrderLine, order_line_id)
        if line is None:
            raise BackorderNotFoundError(f"Order line {order_line_id} not found")

        transfer = resolver.find_transfer(line, for_update=True)
        if transfer is None:
            raise TransferNotFoundError(f"Order line {order_line_id} has no associated inventory transfer")

        old_status = transfer.status
        transfer.status = new_status
        append_transfer_note(transfer, note)
        session.flush()

        current_app.logger.info(
            "Backorder transfer status updated: order_line=%s transfer=%s %s -> %s",
            order_line_id, transfer.id, old_status, new_status,
        )
        return True

    return run_with_retry(_op)
