# backend/fulfillment/services/status_service.py
"""
Status derivation for backordered order lines.

Two levels:
1. Raw purchase / transfer states -> derived source status keys.
2. (purchase status, transfer status) -> one integrated status per line,
   and a summary status per order.

INTEGRATED STATUS PRECEDENCE:
1. Purchase linked and not completed  -> purchase_<status>
   (an open purchase dominates even a further-along transfer)
2. Purchase completed, transfer open  -> transfer_<status>
3. Only a transfer                    -> transfer_<status>
4. Neither                            -> pending_purchase

Everything here is pure: no database, no app context, no logging.
The keys are consumed by dashboards and must stay stable.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional


class StatusDerivationError(ValueError):
    """Raised for a raw purchase or transfer state this module does not know."""
    pass


# Raw purchase states (Purchase.status)
PURCHASE_STATE_PENDING = "pending"
PURCHASE_STATE_CONFIRMED = "confirmed"
PURCHASE_STATE_IN_TRANSIT = "in_transit"
PURCHASE_STATE_RECEIVED = "received"
PURCHASE_STATE_PARTIALLY_RECEIVED = "partially_received"
PURCHASE_STATE_COMPLETED = "completed"
PURCHASE_STATE_CANCELLED = "cancelled"

# Derived purchase status keys
PURCHASE_STATUS_NOT_APPLICABLE = "not_applicable"
PURCHASE_STATUS_PENDING_PURCHASE = "pending_purchase"
PURCHASE_STATUS_ORDERED = "ordered_from_supplier"
PURCHASE_STATUS_IN_TRANSIT = "in_transit"
PURCHASE_STATUS_RECEIVED = "received"
PURCHASE_STATUS_COMPLETED = "completed"
PURCHASE_STATUS_CANCELLED = "cancelled"

# Transfer states map 1:1 to their status keys
TRANSFER_STATUS_PENDING = "pending"
TRANSFER_STATUS_IN_TRANSIT = "in_transit"
TRANSFER_STATUS_COMPLETED = "completed"
TRANSFER_STATUS_CANCELLED = "cancelled"

TRANSFER_STATUSES = (
    TRANSFER_STATUS_PENDING,
    TRANSFER_STATUS_IN_TRANSIT,
    TRANSFER_STATUS_COMPLETED,
    TRANSFER_STATUS_CANCELLED,
)

# Integrated status keys
INTEGRATED_PENDING_PURCHASE = "pending_purchase"
SOURCE_PURCHASE = "purchase"
SOURCE_TRANSFER = "transfer"
SOURCE_NONE = "none"

# Order summary keys
SUMMARY_IN_PROGRESS = "transfer_in_progress"
SUMMARY_RESOLVED = "resolved"
SUMMARY_PENDING = "pending"


_PURCHASE_STATE_TO_STATUS = {
    PURCHASE_STATE_PENDING: PURCHASE_STATUS_ORDERED,
    PURCHASE_STATE_CONFIRMED: PURCHASE_STATUS_ORDERED,
    PURCHASE_STATE_IN_TRANSIT: PURCHASE_STATUS_IN_TRANSIT,
    PURCHASE_STATE_RECEIVED: PURCHASE_STATUS_RECEIVED,
    PURCHASE_STATE_PARTIALLY_RECEIVED: PURCHASE_STATUS_RECEIVED,
    PURCHASE_STATE_COMPLETED: PURCHASE_STATUS_COMPLETED,
    PURCHASE_STATE_CANCELLED: PURCHASE_STATUS_CANCELLED,
}

PURCHASE_STATUS_TEXT = {
    PURCHASE_STATUS_NOT_APPLICABLE: "No purchase required",
    PURCHASE_STATUS_PENDING_PURCHASE: "Awaiting purchase order",
    PURCHASE_STATUS_ORDERED: "Ordered from supplier",
    PURCHASE_STATUS_IN_TRANSIT: "In transit",
    PURCHASE_STATUS_RECEIVED: "Received",
    PURCHASE_STATUS_COMPLETED: "Completed",
    PURCHASE_STATUS_CANCELLED: "Cancelled",
}

TRANSFER_STATUS_TEXT = {
    TRANSFER_STATUS_PENDING: "Transfer pending",
    TRANSFER_STATUS_IN_TRANSIT: "Transfer in transit",
    TRANSFER_STATUS_COMPLETED: "Transfer completed",
    TRANSFER_STATUS_CANCELLED: "Transfer cancelled",
}

INTEGRATED_STATUS_TEXT = {
    INTEGRATED_PENDING_PURCHASE: "Awaiting purchase order",
    "purchase_ordered_from_supplier": "Ordered from supplier",
    "purchase_in_transit": "Supplier shipment in transit",
    "purchase_received": "Received from supplier",
    "purchase_completed": "Purchase completed",
    "purchase_cancelled": "Purchase cancelled",
    "transfer_pending": "Inventory transfer pending",
    "transfer_in_transit": "Inventory transfer in progress",
    "transfer_completed": "Inventory transfer completed",
    "transfer_cancelled": "Inventory transfer cancelled",
}

PARTIALLY_TRANSFERRED_SUFFIX = " (partially transferred)"

SUMMARY_STATUS_TEXT = {
    SUMMARY_IN_PROGRESS: "Transfer in progress",
    SUMMARY_RESOLVED: "Resolved",
    SUMMARY_PENDING: "Pending",
}

IN_PROGRESS_KEYS = frozenset({"transfer_in_transit", "purchase_in_transit"})
COMPLETED_KEYS = frozenset({"purchase_completed", "transfer_completed"})


def derive_purchase_status(purchase_state: Optional[str], *, is_backorder: bool = True) -> str:
    """Raw Purchase.status (None = no linked purchase line) -> derived key."""
    if purchase_state is None:
        return PURCHASE_STATUS_PENDING_PURCHASE if is_backorder else PURCHASE_STATUS_NOT_APPLICABLE
    try:
        return _PURCHASE_STATE_TO_STATUS[purchase_state]
    except KeyError:
        raise StatusDerivationError(f"Unknown purchase state: {purchase_state!r}") from None


def derive_transfer_status(transfer_state: Optional[str]) -> Optional[str]:
    if transfer_state is None:
        return None
    if transfer_state not in TRANSFER_STATUSES:
        raise StatusDerivationError(f"Unknown transfer state: {transfer_state!r}")
    return transfer_state


def purchase_status_text(status_key: str) -> str:
    return PURCHASE_STATUS_TEXT[status_key]


@dataclass(frozen=True)
class IntegratedStatus:
    """Which source drives a line's status, and that source's status key."""
    source: str
    status: str
    transfer_completed: bool = False

    @property
    def key(self) -> str:
        if self.source == SOURCE_NONE:
            return INTEGRATED_PENDING_PURCHASE
        return f"{self.source}_{self.status}"

    @property
    def text(self) -> str:
        text = INTEGRATED_STATUS_TEXT[self.key]
        if self.source == SOURCE_PURCHASE and self.transfer_completed:
            text += PARTIALLY_TRANSFERRED_SUFFIX
        return text


def integrate_status(purchase_state: Optional[str], transfer_state: Optional[str]) -> IntegratedStatus:
    """
    Decision table over (purchase linked?, purchase completed?, transfer present?,
    transfer completed?). purchase_state is the raw Purchase.status of the
    linked line's purchase, or None when no purchase line is linked.
    """
    transfer_status = derive_transfer_status(transfer_state)
    transfer_done = transfer_status == TRANSFER_STATUS_COMPLETED

    if purchase_state is not None:
        purchase_status = derive_purchase_status(purchase_state)
        if purchase_status != PURCHASE_STATUS_COMPLETED:
            return IntegratedStatus(SOURCE_PURCHASE, purchase_status, transfer_completed=transfer_done)
        if transfer_status is not None and not transfer_done:
            return IntegratedStatus(SOURCE_TRANSFER, transfer_status)
        return IntegratedStatus(SOURCE_PURCHASE, purchase_status, transfer_completed=transfer_done)

    if transfer_status is not None:
        return IntegratedStatus(SOURCE_TRANSFER, transfer_status)

    return IntegratedStatus(SOURCE_NONE, PURCHASE_STATUS_PENDING_PURCHASE)


def integrated_status_text(status_key: str) -> str:
    return INTEGRATED_STATUS_TEXT[status_key]


def is_line_resolved(status_key: str, *, is_fulfilled: bool = False, is_cancelled: bool = False) -> bool:
    """A line is resolved once fulfilled, cancelled, or its driving source completed."""
    return is_fulfilled or is_cancelled or status_key in COMPLETED_KEYS


def summarize_order_status(lines: Iterable[tuple[str, bool]]) -> str:
    """
    Order-level summary from (integrated_status_key, is_resolved) pairs.

    transfer_in_progress wins over everything; resolved needs every line resolved
    (and at least one line); otherwise pending.
    """
    lines = list(lines)
    if any(key in IN_PROGRESS_KEYS for key, _ in lines):
        return SUMMARY_IN_PROGRESS
    if lines and all(resolved for _, resolved in lines):
        return SUMMARY_RESOLVED
    return SUMMARY_PENDING


def summary_status_text(summary_key: str) -> str:
    return SUMMARY_STATUS_TEXT[summary_key]
