# backend/fulfillment/services/fulfillment_resolver.py
"""
Locate the fulfillment sources of a backordered order line.

- Purchase line: the line's own purchase_line_id reference.
- Inventory transfer: derived, not owned. The transfer whose order_id AND
  product_variant_id match the line. There is no foreign key from the
  line to the transfer.

"Not found" is a normal outcome (None), distinct from a lookup fault
(database errors propagate unchanged).

AMBIGUITY:
More than one transfer for one (order, variant) pair breaks the
one-transfer-per-line invariant upstream. The most recently created
transfer (highest id) is chosen deterministically and the conflict is
logged and recorded on the result. With strict=True the resolver raises
DomainInconsistencyError instead.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Optional

from flask import current_app
from sqlalchemy.orm import joinedload

from ..extensions import db
from ..models import InventoryTransfer, OrderLine, PurchaseLine
from .concurrency import lock_for_update


class DomainInconsistencyError(Exception):
    """More than one inventory transfer matches a single (order, variant) pair."""

    def __init__(self, order_id: int, product_variant_id: int, transfer_ids: Iterable[int]):
        self.order_id = order_id
        self.product_variant_id = product_variant_id
        self.transfer_ids = tuple(transfer_ids)
        super().__init__(
            f"Order {order_id} variant {product_variant_id} matches "
            f"{len(self.transfer_ids)} transfers: {list(self.transfer_ids)}"
        )


@dataclass(frozen=True)
class FulfillmentSources:
    order_line: OrderLine
    purchase_line: Optional[PurchaseLine] = None
    transfer: Optional[InventoryTransfer] = None
    # Other transfers that matched the same (order, variant); empty when consistent
    transfer_conflict_ids: tuple = ()

    @property
    def purchase_state(self) -> Optional[str]:
        if self.purchase_line is None or self.purchase_line.purchase is None:
            return None
        return self.purchase_line.purchase.status

    @property
    def transfer_state(self) -> Optional[str]:
        return self.transfer.status if self.transfer is not None else None

    @property
    def has_conflict(self) -> bool:
        return bool(self.transfer_conflict_ids)


class FulfillmentSourceResolver:
    """Read-only lookups of purchase and transfer context for order lines."""

    def __init__(self, session=None, *, strict: bool = False):
        self._session = session
        self.strict = strict

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    def find_purchase_line(self, line: OrderLine) -> Optional[PurchaseLine]:
        if line.purchase_line_id is None:
            return None
        return self.session.get(PurchaseLine, line.purchase_line_id)

    def find_transfer(self, line: OrderLine, *, for_update: bool = False) -> Optional[InventoryTransfer]:
        transfer, _ = self._match_transfer(line, for_update=for_update)
        return transfer

    def resolve(self, line: OrderLine) -> FulfillmentSources:
        transfer, conflicts = self._match_transfer(line)
        return FulfillmentSources(
            order_line=line,
            purchase_line=self.find_purchase_line(line),
            transfer=transfer,
            transfer_conflict_ids=conflicts,
        )

    def resolve_many(self, lines: Iterable[OrderLine]) -> list[FulfillmentSources]:
        """
        Resolve a batch against one snapshot: all purchase lines and all
        candidate transfers are read before any result is built.
        """
        lines = list(lines)
        if not lines:
            return []

        purchase_line_ids = {line.purchase_line_id for line in lines if line.purchase_line_id is not None}
        purchase_lines = {}
        if purchase_line_ids:
            rows = (
                self.session.query(PurchaseLine)
                .options(joinedload(PurchaseLine.purchase))
                .filter(PurchaseLine.id.in_(purchase_line_ids))
                .all()
            )
            purchase_lines = {row.id: row for row in rows}

        order_ids = {line.order_id for line in lines}
        variant_ids = {line.product_variant_id for line in lines if line.product_variant_id is not None}
        candidates = defaultdict(list)
        if variant_ids:
            transfers = (
                self.session.query(InventoryTransfer)
                .filter(
                    InventoryTransfer.order_id.in_(order_ids),
                    InventoryTransfer.product_variant_id.in_(variant_ids),
                )
                .order_by(InventoryTransfer.id.desc())
                .all()
            )
            for transfer in transfers:
                candidates[(transfer.order_id, transfer.product_variant_id)].append(transfer)

        results = []
        for line in lines:
            transfer, conflicts = self._pick(
                line.order_id,
                line.product_variant_id,
                candidates.get((line.order_id, line.product_variant_id), []),
            )
            results.append(
                FulfillmentSources(
                    order_line=line,
                    purchase_line=purchase_lines.get(line.purchase_line_id),
                    transfer=transfer,
                    transfer_conflict_ids=conflicts,
                )
            )
        return results

    def _match_transfer(self, line: OrderLine, *, for_update: bool = False):
        if line.product_variant_id is None:
            return None, ()
        query = (
            self.session.query(InventoryTransfer)
            .filter(
                InventoryTransfer.order_id == line.order_id,
                InventoryTransfer.product_variant_id == line.product_variant_id,
            )
            .order_by(InventoryTransfer.id.desc())
        )
        if for_update:
            query = lock_for_update(query)
        return self._pick(line.order_id, line.product_variant_id, query.all())

    def _pick(self, order_id, product_variant_id, candidates):
        """candidates are ordered newest first."""
        if not candidates:
            return None, ()
        if len(candidates) == 1:
            return candidates[0], ()

        transfer_ids = [t.id for t in candidates]
        if self.strict:
            raise DomainInconsistencyError(order_id, product_variant_id, transfer_ids)

        chosen = candidates[0]
        current_app.logger.warning(
            "Ambiguous transfer match for order %s variant %s: transfers %s; using %s",
            order_id, product_variant_id, transfer_ids, chosen.id,
        )
        return chosen, tuple(transfer_ids[1:])
