"""
Tests for row locking and retry around transfer status updates.

The file-backed tests use a second engine as the concurrent writer, so the
two sides really hold separate connections to the same database.
"""

import logging

import pytest
from fulfillment import create_app
from fulfillment.config import TestConfig
from fulfillment.extensions import db
from fulfillment.models import InventoryTransfer, Order, OrderLine, ProductVariant, Store
from fulfillment.services import backorder_service
from fulfillment.services.backorder_service import (
    list_pending_backorders_with_context,
    update_backorder_transfer_status,
)
from fulfillment.services.concurrency import run_with_retry
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError


@pytest.fixture(scope='function')
def file_app(tmp_path):
    """App bound to an on-disk SQLite file instead of the shared in-memory DB."""
    uri = f"sqlite:///{tmp_path / 'concurrency.sqlite3'}"

    class FileConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = uri

    app = create_app(FileConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.engine.dispose()


@pytest.fixture(scope='function')
def other_engine(file_app):
    """A second writer with its own connection pool."""
    engine = create_engine(file_app.config["SQLALCHEMY_DATABASE_URI"])
    yield engine
    engine.dispose()


def _seed_transfer_backorder():
    store_a = Store(name="Store A", code="A")
    store_b = Store(name="Store B", code="B")
    variant = ProductVariant(
        sku="IPHONE-15-PRO-GOLD-512",
        product_name="iPhone 15 Pro Gold 512GB",
        price_cents=4590000,
        cost_price_cents=3800000,
    )
    db.session.add_all([store_a, store_b, variant])
    db.session.flush()

    order = Order(order_number="SO-20250717-0001", store_id=store_a.id, shipping_status="pending")
    db.session.add(order)
    db.session.flush()

    line = OrderLine(
        order_id=order.id,
        product_variant_id=variant.id,
        product_name=variant.product_name,
        sku=variant.sku,
        quantity=2,
        fulfilled_quantity=0,
        price_cents=variant.price_cents,
        cost_cents=variant.cost_price_cents,
        is_backorder=True,
    )
    transfer = InventoryTransfer(
        from_store_id=store_b.id,
        to_store_id=store_a.id,
        product_variant_id=variant.id,
        order_id=order.id,
        quantity=2,
        status="pending",
    )
    db.session.add_all([line, transfer])
    db.session.commit()
    return line.id, transfer.id


class TestConcurrentTransferUpdate:
    def test_committed_note_from_other_writer_survives(self, file_app, other_engine):
        line_id, transfer_id = _seed_transfer_backorder()

        # Caller reads the transfer into its session (version 1, no notes)
        data = list_pending_backorders_with_context()
        assert [item["id"] for item in data] == [line_id]
        assert data[0]["integrated_status"] == "transfer_pending"

        # Another process commits a note in between
        with other_engine.begin() as conn:
            conn.execute(
                text("UPDATE inventory_transfers SET version_id = version_id + 1, notes = :notes WHERE id = :id"),
                {"notes": "Packed at store B", "id": transfer_id},
            )

        # Caller's own work in the same transaction, then the status update
        line = db.session.get(OrderLine, line_id)
        line.fulfilled_quantity = 1
        assert update_backorder_transfer_status(line_id, "in_transit", "Picked up by courier") is True
        db.session.commit()

        with other_engine.connect() as conn:
            transfer_row = conn.execute(
                text("SELECT status, notes, version_id FROM inventory_transfers WHERE id = :id"),
                {"id": transfer_id},
            ).one()
            fulfilled = conn.execute(
                text("SELECT fulfilled_quantity FROM order_lines WHERE id = :id"),
                {"id": line_id},
            ).scalar_one()

        assert transfer_row.status == "in_transit"
        assert transfer_row.notes == "Packed at store B\nPicked up by courier"
        assert transfer_row.version_id == 3
        assert fulfilled == 1

    def test_locked_read_replaces_stale_snapshot(self, file_app, other_engine):
        line_id, transfer_id = _seed_transfer_backorder()
        transfer = db.session.get(InventoryTransfer, transfer_id)
        assert transfer.version_id == 1

        with other_engine.begin() as conn:
            conn.execute(
                text("UPDATE inventory_transfers SET version_id = 2, notes = 'Packed at store B' WHERE id = :id"),
                {"id": transfer_id},
            )

        update_backorder_transfer_status(line_id, "completed")

        assert transfer.version_id == 3
        assert transfer.notes == "Packed at store B"
        assert transfer.status == "completed"
        db.session.commit()


class TestRetryOnConflict:
    def test_stale_version_is_retried_and_caller_work_kept(
        self, app, db_session, make_order, make_line, make_transfer, monkeypatch, caplog,
    ):
        order = make_order()
        line = make_line(order, quantity=2)
        transfer = make_transfer(order, quantity=2)

        line.fulfilled_quantity = 1
        db_session.flush()

        real_append = backorder_service.append_transfer_note
        calls = []

        def append_after_concurrent_bump(target, note):
            calls.append(note)
            if len(calls) == 1:
                # Version moves under the loaded object, so the flush matches no row
                db_session.execute(
                    text("UPDATE inventory_transfers SET version_id = version_id + 1 WHERE id = :id"),
                    {"id": target.id},
                )
            real_append(target, note)

        monkeypatch.setattr(backorder_service, "append_transfer_note", append_after_concurrent_bump)

        with caplog.at_level(logging.WARNING):
            assert update_backorder_transfer_status(line.id, "in_transit", "Picked up") is True
        db_session.commit()

        assert len(calls) == 2
        assert "Concurrent update conflict" in caplog.text

        refreshed = db_session.get(InventoryTransfer, transfer.id)
        assert refreshed.status == "in_transit"
        assert refreshed.notes == "Picked up"
        assert refreshed.version_id == 2
        assert db_session.get(OrderLine, line.id).fulfilled_quantity == 1


class TestRunWithRetry:
    def test_failed_attempt_rolls_back_to_savepoint_only(self, app, db_session, make_order, make_line):
        line = make_line(make_order(), quantity=3)
        line.fulfilled_quantity = 2
        db_session.flush()

        attempts = []

        def op():
            attempts.append(1)
            db_session.execute(
                text("UPDATE order_lines SET quantity = 99 WHERE id = :id"), {"id": line.id}
            )
            if len(attempts) == 1:
                raise StaleDataError("conflict")
            return "done"

        assert run_with_retry(op, backoff_base=0) == "done"
        db_session.commit()

        refreshed = db_session.get(OrderLine, line.id)
        assert len(attempts) == 2
        assert refreshed.fulfilled_quantity == 2
        assert refreshed.quantity == 99

    def test_gives_up_after_configured_attempts(self, app, db_session, monkeypatch, caplog):
        monkeypatch.setitem(app.config, "CONCURRENCY_RETRY_ATTEMPTS", 2)
        calls = []

        def op():
            calls.append(1)
            raise OperationalError("UPDATE inventory_transfers", {}, Exception("database is locked"))

        with caplog.at_level(logging.WARNING):
            with pytest.raises(OperationalError):
                run_with_retry(op, backoff_base=0)

        assert len(calls) == 2
        assert caplog.text.count("Concurrent update conflict") == 1

    def test_other_errors_are_not_retried(self, app, db_session):
        calls = []

        def op():
            calls.append(1)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            run_with_retry(op, attempts=3, backoff_base=0)

        assert calls == [1]
