from datetime import datetime

import pytest

from stockbook.models import InventoryAdjustment, InventoryLog, InventoryRecord, PurchaseBatch
from stockbook.services import inventory_service
from stockbook.services.fifo_service import InsufficientInventoryError
from stockbook.validation import NotFoundError, ValidationError


def _record(db_session, product_id):
    return db_session.query(InventoryRecord).filter_by(product_id=product_id).one()


class TestReceiveStock:
    def test_receive_creates_batch_and_log(self, db_session, product):
        batch = inventory_service.receive_stock(
            product.id, 100, 500, received_at="2024-02-01T09:00:00Z", reference="PO-17", user_id=2
        )

        assert batch.received_quantity == 100
        assert batch.unit_cost_cents == 500
        assert batch.source == PurchaseBatch.SOURCE_RECEIVE
        assert batch.received_at == datetime(2024, 2, 1, 9, 0, 0)
        record = _record(db_session, product.id)
        assert record.quantity == 100
        assert record.avg_cost_cents == 500
        assert record.last_received_at is not None

        log = db_session.query(InventoryLog).filter_by(product_id=product.id).one()
        assert log.transaction_type == InventoryLog.TYPE_PURCHASE
        assert log.reference_id == batch.id
        assert (log.quantity_before, log.quantity_after) == (0, 100)
        assert log.user_id == 2

    def test_running_average_rounds_half_up(self, db_session, product):
        inventory_service.receive_stock(product.id, 1, 100)
        inventory_service.receive_stock(product.id, 1, 101)

        record = _record(db_session, product.id)
        assert record.quantity == 2
        assert record.avg_cost_cents == 101

    @pytest.mark.parametrize("quantity,cost", [(0, 100), (-1, 100), (5, -1), (2.5, 100)])
    def test_invalid_receipt(self, db_session, product, quantity, cost):
        with pytest.raises(ValidationError):
            inventory_service.receive_stock(product.id, quantity, cost)

    def test_unknown_product(self, db_session):
        with pytest.raises(NotFoundError):
            inventory_service.receive_stock(31337, 1, 100)


class TestAdjustInventory:
    def test_addition_creates_adjustment_batch(self, db_session, product):
        inventory_service.receive_stock(product.id, 10, 200)

        adjustment = inventory_service.adjust_inventory(
            product.id, "addition", 5, "Found in back room", unit_cost_cents=260
        )

        assert (adjustment.quantity_before, adjustment.quantity_after) == (10, 15)
        assert adjustment.total_cost_cents == 5 * 260
        batches = inventory_service.list_batches(product.id)
        assert [b.source for b in batches] == [PurchaseBatch.SOURCE_RECEIVE, PurchaseBatch.SOURCE_ADJUSTMENT]
        assert _record(db_session, product.id).avg_cost_cents == 220

    def test_addition_requires_cost(self, db_session, product):
        with pytest.raises(ValidationError):
            inventory_service.adjust_inventory(product.id, "addition", 5, "recount")

    def test_return_defaults_to_latest_cost(self, db_session, product):
        inventory_service.receive_stock(product.id, 10, 200)
        adjustment = inventory_service.adjust_inventory(product.id, "return", 2, "Customer brought back")
        assert adjustment.unit_cost_cents == 200
        assert _record(db_session, product.id).quantity == 12

    def test_damage_allocates_fifo(self, db_session, product, add_batch):
        old = add_batch(product.id, 3, 100)
        add_batch(product.id, 10, 400)

        adjustment = inventory_service.adjust_inventory(product.id, "damage", 5, "Water damage")

        assert adjustment.total_cost_cents == 3 * 100 + 2 * 400
        assert adjustment.quantity_after == 8
        assert db_session.get(PurchaseBatch, old.id).fully_consumed is True
        log = (
            db_session.query(InventoryLog)
            .filter_by(product_id=product.id, transaction_type=InventoryLog.TYPE_ADJUSTMENT_OUT)
            .one()
        )
        assert log.reference_id == adjustment.id

    def test_reduction_beyond_stock_fails_cleanly(self, db_session, product, add_batch):
        add_batch(product.id, 3, 100)

        with pytest.raises(InsufficientInventoryError):
            inventory_service.adjust_inventory(product.id, "loss", 4, "Theft")

        assert _record(db_session, product.id).quantity == 3
        assert db_session.query(InventoryAdjustment).count() == 0

    def test_invalid_type_and_reason(self, db_session, product):
        with pytest.raises(ValidationError):
            inventory_service.adjust_inventory(product.id, "teleport", 1, "x")
        with pytest.raises(ValidationError):
            inventory_service.adjust_inventory(product.id, "loss", 1, "  ")


class TestReadModels:
    def test_summary_reports_drift(self, db_session, product, add_batch, set_inventory):
        add_batch(product.id, 10, 100)
        add_batch(product.id, 5, 200)
        set_inventory(product.id, 18)

        summary = inventory_service.get_inventory_summary(product.id)

        assert summary["quantity"] == 18
        assert summary["batch_quantity"] == 15
        assert summary["fifo_value_cents"] == 10 * 100 + 5 * 200
        assert summary["drift_quantity"] == 3
        assert summary["has_drift"] is True
        assert summary["is_low_stock"] is False

    def test_summary_without_stock(self, db_session, product):
        summary = inventory_service.get_inventory_summary(product.id)
        assert summary["quantity"] == 0
        assert summary["has_drift"] is False
        assert summary["is_low_stock"] is True

    def test_list_batches_hides_consumed(self, db_session, product, add_batch):
        inventory_service.receive_stock(product.id, 2, 100, received_at="2024-01-01")
        inventory_service.receive_stock(product.id, 2, 100, received_at="2024-01-02")
        inventory_service.adjust_inventory(product.id, "reduction", 2, "Sample")

        assert len(inventory_service.list_batches(product.id)) == 1
        assert len(inventory_service.list_batches(product.id, include_consumed=True)) == 2

    def test_list_logs_newest_first(self, db_session, product):
        inventory_service.receive_stock(product.id, 2, 100)
        inventory_service.adjust_inventory(product.id, "reduction", 1, "Sample")

        logs = inventory_service.list_inventory_logs(product.id)
        assert [log.transaction_type for log in logs] == [
            InventoryLog.TYPE_ADJUSTMENT_OUT,
            InventoryLog.TYPE_PURCHASE,
        ]
