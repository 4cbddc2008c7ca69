"""
Tests for handing received stock to waiting backorders (FIFO), dry runs
and the allocation report.
"""

from datetime import timedelta

import pytest
from fulfillment.models import OrderLine, Purchase
from fulfillment.services import backorder_allocation_service
from fulfillment.services.backorder_allocation_service import (
    AllocationError,
    PurchaseLineNotFoundError,
    allocate_receipt_to_backorders,
    allocate_stock_to_backorders,
    get_allocation_report,
    receive_and_allocate,
)
from fulfillment.services.purchase_service import PurchaseValidationError
from fulfillment.time_utils import utcnow


@pytest.fixture
def now():
    return utcnow()


@pytest.fixture
def waiting_lines(db_session, make_order, make_line, now):
    """Three backordered lines of the same variant, 10, 5 and 1 days old."""
    old = make_line(make_order(), quantity=2, created_at=now - timedelta(days=10))
    mid = make_line(make_order(), quantity=3, created_at=now - timedelta(days=5))
    new = make_line(make_order(), quantity=4, created_at=now - timedelta(days=1))
    return old, mid, new


class TestAllocateStock:
    def test_oldest_line_is_served_first(self, db_session, variant, waiting_lines, now):
        old, mid, new = waiting_lines

        result = allocate_stock_to_backorders(variant.id, 4, now=now)
        db_session.commit()

        assert [(item["order_line_id"], item["allocated_quantity"]) for item in result["allocated_items"]] == [
            (old.id, 2), (mid.id, 2),
        ]
        assert result["total_allocated"] == 4
        assert result["remaining_quantity"] == 0
        assert result["allocated_items"][0]["fulfillment_status"] == "fully_fulfilled"
        assert result["allocated_items"][1]["fulfillment_status"] == "partially_fulfilled"
        assert result["allocation_summary"] == {
            "total_candidates": 3,
            "allocated_orders": 2,
            "fully_fulfilled_orders": 1,
            "allocation_efficiency": 100.0,
        }

        old, mid, new = (db_session.get(OrderLine, line.id) for line in (old, mid, new))
        assert (old.fulfilled_quantity, old.is_fulfilled) == (2, True)
        assert (mid.fulfilled_quantity, mid.is_fulfilled) == (2, False)
        assert new.fulfilled_quantity == 0

    def test_surplus_is_left_over(self, db_session, variant, waiting_lines, now):
        result = allocate_stock_to_backorders(variant.id, 20, now=now)

        assert result["total_allocated"] == 9
        assert result["remaining_quantity"] == 11
        assert result["allocation_summary"]["fully_fulfilled_orders"] == 3
        assert result["allocation_summary"]["allocation_efficiency"] == 45.0

    def test_partially_fulfilled_line_only_gets_what_it_still_needs(
        self, db_session, variant, make_order, make_line, now,
    ):
        line = make_line(make_order(), quantity=5, fulfilled_quantity=3)

        result = allocate_stock_to_backorders(variant.id, 10, now=now)

        assert result["allocated_items"][0]["allocated_quantity"] == 2
        assert line.fulfilled_quantity == 5
        assert line.is_fulfilled is True

    def test_record_details(self, db_session, variant, waiting_lines, now):
        old = waiting_lines[0]

        item = allocate_stock_to_backorders(variant.id, 1, now=now)["allocated_items"][0]

        assert item["order_line_id"] == old.id
        assert item["order_number"] == old.order.order_number
        assert item["customer_name"] == "Chen Mei-Ling"
        assert item["waiting_days"] == 10
        assert item["priority_score"] == 990
        assert item["allocation_reason"] == "fifo"

    def test_dry_run_matches_real_run_and_changes_nothing(self, db_session, variant, waiting_lines, now):
        preview = allocate_stock_to_backorders(variant.id, 4, dry_run=True, now=now)

        assert preview["dry_run"] is True
        assert all(db_session.get(OrderLine, line.id).fulfilled_quantity == 0 for line in waiting_lines)

        result = allocate_stock_to_backorders(variant.id, 4, now=now)

        assert result["allocated_items"] == preview["allocated_items"]
        assert result["allocation_summary"] == preview["allocation_summary"]

    def test_closed_and_unrelated_lines_are_skipped(
        self, db_session, variant, make_variant, make_order, make_line,
    ):
        wanted = make_line(make_order())
        make_line(make_order(shipping_status="cancelled"))
        make_line(make_order(shipping_status="delivered"))
        make_line(make_order(), is_backorder=False)
        make_line(make_order(), fulfilled_quantity=1)
        make_line(make_order(), is_fulfilled=True)
        make_line(make_order(), line_variant=make_variant())

        result = allocate_stock_to_backorders(variant.id, 10)

        assert [item["order_line_id"] for item in result["allocated_items"]] == [wanted.id]
        assert result["allocation_summary"]["total_candidates"] == 1

    def test_store_filter(self, db_session, variant, store_b, make_order, make_line):
        other_store_order = make_order()
        other_store_order.store_id = store_b.id
        db_session.commit()
        remote = make_line(other_store_order)
        make_line(make_order())

        result = allocate_stock_to_backorders(variant.id, 5, store_id=store_b.id)

        assert [item["order_line_id"] for item in result["allocated_items"]] == [remote.id]
        assert result["allocation_summary"]["total_candidates"] == 1

    def test_max_waiting_days(self, db_session, variant, waiting_lines, now):
        result = allocate_stock_to_backorders(variant.id, 10, max_waiting_days=7, dry_run=True, now=now)

        assert [item["order_line_id"] for item in result["allocated_items"]] == [
            waiting_lines[1].id, waiting_lines[2].id,
        ]

    def test_nothing_waiting(self, db_session, variant):
        result = allocate_stock_to_backorders(variant.id, 3)

        assert result["allocated_items"] == []
        assert result["remaining_quantity"] == 3
        assert result["allocation_summary"]["allocation_efficiency"] == 0.0

    @pytest.mark.parametrize("quantity", [0, -2, 1.5, True])
    def test_rejects_bad_quantity(self, db_session, variant, quantity):
        with pytest.raises(AllocationError):
            allocate_stock_to_backorders(variant.id, quantity)

    def test_rejects_unknown_strategy(self, db_session, variant):
        with pytest.raises(AllocationError):
            allocate_stock_to_backorders(variant.id, 1, strategy="smart_priority")

    def test_logs_each_allocation(self, app, db_session, variant, waiting_lines, caplog):
        with caplog.at_level("INFO"):
            allocate_stock_to_backorders(variant.id, 3)

        assert caplog.text.count(f"of variant {variant.id} to order line") == 2


class TestReceiptAllocation:
    def test_defaults_to_received_quantity(self, db_session, variant, waiting_lines, make_purchase):
        purchase = make_purchase(status="in_transit")
        purchase_line = purchase.lines[0]
        purchase_line.received_quantity = 3
        db_session.commit()

        result = allocate_receipt_to_backorders(purchase_line.id)

        assert result["purchase_line_id"] == purchase_line.id
        assert result["total_allocated"] == 3

    def test_unknown_purchase_line(self, db_session):
        with pytest.raises(PurchaseLineNotFoundError):
            allocate_receipt_to_backorders(999999, 1)

    def test_purchase_line_without_variant(self, db_session, make_purchase):
        purchase = make_purchase(lines=[(None, 2, 500)])

        with pytest.raises(AllocationError):
            allocate_receipt_to_backorders(purchase.lines[0].id, 2)

    def test_receive_and_allocate(self, db_session, variant, waiting_lines, make_purchase):
        purchase = make_purchase(status="in_transit")
        line_id = purchase.lines[0].id

        purchase, results = receive_and_allocate(purchase.id, {line_id: 3})
        db_session.commit()

        assert db_session.get(Purchase, purchase.id).status == "partially_received"
        assert results[line_id]["total_allocated"] == 3
        assert db_session.get(OrderLine, waiting_lines[0].id).is_fulfilled is True

    def test_receipt_error_allocates_nothing(self, db_session, variant, waiting_lines, make_purchase, monkeypatch):
        purchase = make_purchase(status="in_transit")
        calls = []
        monkeypatch.setattr(
            backorder_allocation_service, "allocate_receipt_to_backorders",
            lambda *args, **kwargs: calls.append(args),
        )

        with pytest.raises(PurchaseValidationError):
            receive_and_allocate(purchase.id, {purchase.lines[0].id: 50})

        assert calls == []


class TestAllocationReport:
    def test_report(self, db_session, variant, make_order, make_line, now):
        recent = make_line(make_order(), quantity=2, created_at=now - timedelta(days=3))
        month = make_line(make_order(), quantity=5, fulfilled_quantity=1, created_at=now - timedelta(days=20))
        ancient = make_line(make_order(), quantity=1, created_at=now - timedelta(days=100))

        report = get_allocation_report(variant.id, now=now)

        assert report["total_pending_orders"] == 3
        assert report["total_pending_quantity"] == 2 + 4 + 1
        assert [row["order_line_id"] for row in report["top_priority_orders"]] == [ancient.id, month.id, recent.id]
        assert report["top_priority_orders"][0]["priority_score"] == 900
        assert report["top_priority_orders"][1]["pending_quantity"] == 4
        assert report["waiting_time_analysis"] == {
            "1_week": {"count": 1, "total_quantity": 2, "avg_waiting_days": 3.0},
            "1_month": {"count": 1, "total_quantity": 4, "avg_waiting_days": 20.0},
            "over_3_months": {"count": 1, "total_quantity": 1, "avg_waiting_days": 100.0},
        }
        assert report["priority_distribution"]["very_high"]["count"] == 3

    def test_report_does_not_change_lines(self, db_session, variant, waiting_lines):
        get_allocation_report(variant.id)

        assert all(db_session.get(OrderLine, line.id).fulfilled_quantity == 0 for line in waiting_lines)

    def test_top_list_is_capped(self, db_session, variant, make_order, make_line):
        order = make_order()
        for _ in range(12):
            make_line(order)

        report = get_allocation_report(variant.id)

        assert report["total_pending_orders"] == 12
        assert len(report["top_priority_orders"]) == 10
