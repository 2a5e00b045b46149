import pytest

from stockbook.models import (
    InventoryAdjustment,
    InventoryCount,
    InventoryLog,
    InventoryRecord,
    PurchaseBatch,
)
from stockbook.services import count_service, inventory_service
from stockbook.services.count_service import CountError
from stockbook.services.fifo_service import allocate
from stockbook.validation import ValidationError


def _record(db_session, product_id):
    return db_session.query(InventoryRecord).filter_by(product_id=product_id).one()


def _available(db_session, product_id):
    return sum(
        b.available_quantity
        for b in db_session.query(PurchaseBatch).filter_by(product_id=product_id)
    )


def test_create_snapshots_system_quantity(db_session, product, add_batch):
    add_batch(product.id, 10, 100)

    count = count_service.create_count(
        "Monthly shelf count", [{"product_id": product.id, "counted_quantity": 7, "notes": "Aisle 3"}], user_id=4
    )

    assert count.count_number == "CNT-000001"
    assert count.status == InventoryCount.STATUS_DRAFT
    item = count.items[0]
    assert item.system_quantity == 10
    assert item.variance_quantity == -3
    assert count.discrepancy_count == 1


def test_finalize_shortage_writes_off_oldest_batches(db_session, product, add_batch):
    old = add_batch(product.id, 6, 100)
    new = add_batch(product.id, 4, 200)
    count = count_service.create_count("Cycle", [{"product_id": product.id, "counted_quantity": 7}])

    finalized = count_service.finalize_count(count.id, user_id=9)

    assert finalized.status == InventoryCount.STATUS_FINALIZED
    assert finalized.finalized_at is not None
    assert _record(db_session, product.id).quantity == 7
    assert db_session.get(PurchaseBatch, old.id).consumed_quantity == 3
    assert db_session.get(PurchaseBatch, new.id).consumed_quantity == 0

    adjustment = db_session.query(InventoryAdjustment).one()
    assert adjustment.adjustment_type == InventoryAdjustment.TYPE_COUNT
    assert (adjustment.quantity, adjustment.quantity_before, adjustment.quantity_after) == (3, 10, 7)
    assert finalized.items[0].adjustment_id == adjustment.id

    log = db_session.query(InventoryLog).filter_by(reference_type=InventoryLog.REF_INVENTORY_COUNT).one()
    assert log.transaction_type == InventoryLog.TYPE_ADJUSTMENT_OUT
    assert log.reference_id == count.id


def test_finalize_surplus_adds_batch_at_latest_cost(db_session, product, add_batch):
    add_batch(product.id, 5, 100)
    add_batch(product.id, 5, 200)
    count = count_service.create_count("Cycle", [{"product_id": product.id, "counted_quantity": 12}])

    count_service.finalize_count(count.id)

    assert _record(db_session, product.id).quantity == 12
    extra = db_session.query(PurchaseBatch).filter_by(source=PurchaseBatch.SOURCE_ADJUSTMENT).one()
    assert extra.received_quantity == 2
    assert extra.unit_cost_cents == 200
    assert extra.reference == count.count_number
    log = db_session.query(InventoryLog).filter_by(reference_type=InventoryLog.REF_INVENTORY_COUNT).one()
    assert log.transaction_type == InventoryLog.TYPE_ADJUSTMENT_IN


def test_finalize_clears_drift_and_recount_flag(db_session, product, add_batch, set_inventory):
    add_batch(product.id, 2, 100)
    set_inventory(product.id, 5)
    allocate(db_session, product.id, 5)
    db_session.commit()
    assert _record(db_session, product.id).recount_needed is True

    count = count_service.create_count("Drift check", [{"product_id": product.id, "counted_quantity": 4}])
    count_service.finalize_count(count.id)

    record = _record(db_session, product.id)
    assert record.quantity == 4
    assert record.recount_needed is False
    assert _available(db_session, product.id) == 4
    summary = inventory_service.get_inventory_summary(product.id)
    assert summary["has_drift"] is False
    assert summary["recount_needed"] is False


def test_matching_count_posts_no_adjustment(db_session, product, add_batch):
    add_batch(product.id, 8, 100)
    count = count_service.create_count("Cycle", [{"product_id": product.id, "counted_quantity": 8}])

    count_service.finalize_count(count.id)

    assert db_session.query(InventoryAdjustment).count() == 0
    assert _record(db_session, product.id).quantity == 8


def test_update_replaces_lines_and_moves_in_progress(db_session, product, make_product, add_batch):
    other = make_product(sku="BOLT-1")
    add_batch(product.id, 10, 100)
    add_batch(other.id, 3, 50)
    count = count_service.create_count("Cycle", [{"product_id": product.id, "counted_quantity": 9}])

    updated = count_service.update_count(
        count.id,
        name="Cycle (recount)",
        items=[{"product_id": other.id, "counted_quantity": 5}],
    )

    assert updated.status == InventoryCount.STATUS_IN_PROGRESS
    assert updated.name == "Cycle (recount)"
    assert [(i.product_id, i.system_quantity, i.counted_quantity) for i in updated.items] == [(other.id, 3, 5)]


def test_closed_counts_cannot_change(db_session, product, add_batch):
    add_batch(product.id, 1, 100)
    finalized = count_service.create_count("A", [{"product_id": product.id, "counted_quantity": 1}])
    count_service.finalize_count(finalized.id)
    cancelled = count_service.cancel_count(
        count_service.create_count("B", [{"product_id": product.id, "counted_quantity": 0}]).id
    )

    assert cancelled.status == InventoryCount.STATUS_CANCELLED
    for count_id in (finalized.id, cancelled.id):
        with pytest.raises(CountError):
            count_service.finalize_count(count_id)
        with pytest.raises(CountError):
            count_service.update_count(count_id, name="again")
        with pytest.raises(CountError):
            count_service.cancel_count(count_id)
    assert _record(db_session, product.id).quantity == 1
    assert [c.id for c in count_service.list_counts(status=InventoryCount.STATUS_CANCELLED)] == [cancelled.id]


def test_invalid_count_input(db_session, product):
    with pytest.raises(ValidationError):
        count_service.create_count("", [])
    with pytest.raises(ValidationError):
        count_service.create_count("X", [{"product_id": product.id, "counted_quantity": -1}])
    with pytest.raises(ValidationError):
        count_service.create_count("X", [
            {"product_id": product.id, "counted_quantity": 1},
            {"product_id": product.id, "counted_quantity": 2},
        ])
    with pytest.raises(CountError):
        count_service.create_count("X", [{"product_id": 999999, "counted_quantity": 1}])

    empty = count_service.create_count("Empty")
    with pytest.raises(CountError):
        count_service.finalize_count(empty.id)
