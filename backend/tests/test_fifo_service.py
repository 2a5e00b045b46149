"""
FIFO batch cost allocation tests.

Covers oldest-first consumption, conservation between batches and the
inventory record, reversal round-trips, insufficient inventory and the
degraded (ledger drift) paths.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from stockbook.models import InventoryRecord, PurchaseBatch
from stockbook.services.fifo_service import (
    InsufficientInventoryError,
    allocate,
    estimate_cost,
    reverse,
)
from stockbook.validation import ValidationError


def _on_hand(db_session, product_id):
    return db_session.query(InventoryRecord).filter_by(product_id=product_id).one().quantity


def _consumed(db_session, product_id):
    return {
        b.id: b.consumed_quantity
        for b in db_session.query(PurchaseBatch).filter_by(product_id=product_id)
    }


def test_example_two_batches(db_session, product, add_batch):
    """100 @ 5.00 then 50 @ 6.00; allocating 120 costs 620.00 at 5.1667/unit."""
    batch_a = add_batch(product.id, 100, 500)
    batch_b = add_batch(product.id, 50, 600)

    allocation = allocate(db_session, product.id, 120)
    db_session.commit()

    assert allocation.total_cost_cents == 62000
    assert allocation.unit_cost == Decimal("5.1667")
    assert allocation.unit_cost_cents == 517
    assert allocation.exact
    assert [(s.batch_id, s.quantity) for s in allocation.slices] == [(batch_a.id, 100), (batch_b.id, 20)]

    db_session.refresh(batch_a)
    db_session.refresh(batch_b)
    assert batch_a.fully_consumed is True
    assert batch_a.consumed_quantity == 100
    assert batch_b.consumed_quantity == 20
    assert batch_b.fully_consumed is False
    assert _on_hand(db_session, product.id) == 30


def test_fifo_order_across_three_batches(db_session, product, add_batch):
    """Allocating q1 + k consumes batch 1 fully and k units of batch 2."""
    b1 = add_batch(product.id, 10, 100)
    b2 = add_batch(product.id, 20, 200)
    b3 = add_batch(product.id, 30, 300)

    allocation = allocate(db_session, product.id, 15)

    assert allocation.total_cost_cents == 10 * 100 + 5 * 200
    consumed = _consumed(db_session, product.id)
    assert consumed[b1.id] == 10
    assert consumed[b2.id] == 5
    assert consumed[b3.id] == 0


def test_fifo_order_uses_received_at_not_insert_order(db_session, product, add_batch):
    late = add_batch(product.id, 5, 900, received_at=datetime(2024, 1, 10))
    early = add_batch(product.id, 5, 100, received_at=datetime(2024, 1, 2))

    allocation = allocate(db_session, product.id, 5)

    assert allocation.total_cost_cents == 500
    assert allocation.slices[0].batch_id == early.id
    assert _consumed(db_session, product.id)[late.id] == 0


def test_conservation_of_quantity(db_session, product, add_batch):
    add_batch(product.id, 7, 100)
    add_batch(product.id, 8, 110)
    add_batch(product.id, 9, 120)
    before_batches = sum(_consumed(db_session, product.id).values())
    before_on_hand = _on_hand(db_session, product.id)

    allocate(db_session, product.id, 19)

    assert sum(_consumed(db_session, product.id).values()) - before_batches == 19
    assert before_on_hand - _on_hand(db_session, product.id) == 19


def test_reverse_restores_allocation(db_session, product, add_batch):
    add_batch(product.id, 100, 500)
    add_batch(product.id, 50, 600)
    add_batch(product.id, 10, 700)
    allocate(db_session, product.id, 30)
    db_session.commit()
    consumed_before = _consumed(db_session, product.id)
    on_hand_before = _on_hand(db_session, product.id)

    allocate(db_session, product.id, 95)
    reversal = reverse(db_session, product.id, 95)
    db_session.commit()

    assert reversal.unrestored == 0
    assert not reversal.degraded
    assert _consumed(db_session, product.id) == consumed_before
    assert _on_hand(db_session, product.id) == on_hand_before
    flags = {b.id: b.fully_consumed for b in db_session.query(PurchaseBatch).filter_by(product_id=product.id)}
    assert not any(flags.values())


def test_insufficient_inventory_leaves_rows_unchanged(db_session, product, add_batch):
    add_batch(product.id, 10, 100)
    consumed_before = _consumed(db_session, product.id)

    with pytest.raises(InsufficientInventoryError) as exc_info:
        allocate(db_session, product.id, 11)

    assert exc_info.value.requested == 11
    assert exc_info.value.on_hand == 10
    assert exc_info.value.details["product_id"] == product.id
    assert _consumed(db_session, product.id) == consumed_before
    assert _on_hand(db_session, product.id) == 10


def test_missing_inventory_record_is_insufficient(db_session, product):
    with pytest.raises(InsufficientInventoryError) as exc_info:
        allocate(db_session, product.id, 1)
    assert exc_info.value.on_hand == 0


@pytest.mark.parametrize("quantity", [0, -3])
def test_non_positive_quantity_rejected(db_session, product, add_batch, quantity):
    add_batch(product.id, 10, 100)
    with pytest.raises(ValidationError):
        allocate(db_session, product.id, quantity)
    with pytest.raises(ValidationError):
        reverse(db_session, product.id, quantity)


def test_drift_prices_shortfall_at_latest_batch(db_session, product, add_batch, set_inventory):
    """Inventory says 20 but batches hold 12: 8 units fall back to the newest batch cost."""
    add_batch(product.id, 5, 100)
    add_batch(product.id, 7, 300)
    set_inventory(product.id, 20)

    allocation = allocate(db_session, product.id, 20)

    assert allocation.degraded
    assert allocation.shortfall == 8
    assert allocation.fallback_unit_cost_cents == 300
    assert allocation.total_cost_cents == 5 * 100 + 7 * 300 + 8 * 300
    assert _on_hand(db_session, product.id) == 0


def test_drift_with_no_batches_costs_zero(db_session, product, set_inventory):
    set_inventory(product.id, 4)

    allocation = allocate(db_session, product.id, 4)

    assert allocation.degraded
    assert allocation.fallback_unit_cost_cents == 0
    assert allocation.total_cost_cents == 0
    assert allocation.unit_cost == Decimal("0.0000")


def test_reverse_after_drift_reports_unrestored(db_session, product, add_batch, set_inventory):
    add_batch(product.id, 5, 100)
    set_inventory(product.id, 8)
    allocate(db_session, product.id, 8)

    reversal = reverse(db_session, product.id, 8)

    assert reversal.degraded
    assert reversal.unrestored == 3
    assert reversal.restored == 5
    assert _on_hand(db_session, product.id) == 8


def test_reverse_creates_missing_inventory_record(db_session, product):
    reversal = reverse(db_session, product.id, 3)
    db_session.commit()

    assert reversal.unrestored == 3
    assert _on_hand(db_session, product.id) == 3


def test_estimate_cost_does_not_mutate(db_session, product, add_batch):
    add_batch(product.id, 100, 500)
    add_batch(product.id, 50, 600)

    estimate = estimate_cost(db_session, product.id, 120)

    assert estimate.total_cost_cents == 62000
    assert sum(_consumed(db_session, product.id).values()) == 0
    assert _on_hand(db_session, product.id) == 150


def test_allocation_to_dict_exposes_cost(db_session, product, add_batch):
    add_batch(product.id, 3, 333)
    data = allocate(db_session, product.id, 3).to_dict()
    assert data["unit_cost"] == "3.3300"
    assert data["degraded"] is False
    assert data["slices"][0]["quantity"] == 3


def test_reverse_follows_consumption_order_with_backdated_receipt(db_session, product, add_batch):
    """A backdated batch consumed last is the first one given back."""
    may = add_batch(product.id, 10, 500, received_at=datetime(2024, 5, 1))
    allocate(db_session, product.id, 5)
    db_session.commit()
    january = add_batch(product.id, 10, 400, received_at=datetime(2024, 1, 1))

    allocation = allocate(db_session, product.id, 3)
    assert [s.batch_id for s in allocation.slices] == [january.id]

    reversal = reverse(db_session, product.id, 3)
    db_session.commit()

    assert [(s.batch_id, s.quantity) for s in reversal.slices] == [(january.id, 3)]
    assert _consumed(db_session, product.id) == {may.id: 5, january.id: 0}


def test_drift_flags_record_for_recount(db_session, product, add_batch, set_inventory):
    add_batch(product.id, 2, 100)
    set_inventory(product.id, 5)
    record = db_session.query(InventoryRecord).filter_by(product_id=product.id).one()
    assert record.recount_needed is False

    allocate(db_session, product.id, 5)
    db_session.commit()

    assert db_session.query(InventoryRecord).filter_by(product_id=product.id).one().recount_needed is True
