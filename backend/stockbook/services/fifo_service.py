# Overview: FIFO batch cost allocation and its reversal.

"""
Batch cost allocator.

Invariants:
- Batches are consumed oldest first: (received_at, id) ascending.
- Reversal restores the most recently consumed batches first
  (consume_seq descending), so an allocate immediately followed by a reverse
  of the same quantity restores every touched batch exactly, even when a
  backdated receipt was consumed after a newer one.
- InventoryRecord.quantity moves by exactly the requested quantity on every
  successful allocate/reverse, whether or not the batches could cover it.
- A batch shortfall ("ledger drift": the aggregate quantity says there is
  stock but the batches disagree) is never raised. It is returned as a
  degraded Allocation/Reversal, logged at WARNING, and flags the inventory
  record with recount_needed until a physical count is finalized.

Nothing here commits. Callers pass their session, hold product_locks for the
product and commit (or roll back) the whole unit of work.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP

from flask import current_app
from sqlalchemy import func

from ..models import InventoryRecord, Product, PurchaseBatch
from ..validation import NotFoundError, require_positive_quantity
from .concurrency import lock_for_update


UNIT_COST_QUANTUM = Decimal("0.0001")


class InsufficientInventoryError(Exception):
    """Raised when the aggregate on-hand quantity cannot cover a request."""
    def __init__(self, product_id: int, requested: int, on_hand: int):
        super().__init__(
            f"Insufficient inventory for product {product_id}: "
            f"requested {requested}, on hand {on_hand}"
        )
        self.product_id = product_id
        self.requested = requested
        self.on_hand = on_hand
        self.details = {
            "product_id": product_id,
            "requested_quantity": requested,
            "on_hand": on_hand,
        }


@dataclass(frozen=True)
class BatchSlice:
    batch_id: int
    quantity: int
    unit_cost_cents: int

    @property
    def total_cost_cents(self) -> int:
        return self.quantity * self.unit_cost_cents


def _half_up_div(numerator: int, denominator: int) -> int:
    return (2 * numerator + denominator) // (2 * denominator)


@dataclass(frozen=True)
class Allocation:
    """
    Outcome of allocating quantity units of a product.

    exact: every unit came from a batch.
    degraded: `shortfall` units were priced at `fallback_unit_cost_cents`
    (the most recently received batch's cost, 0 when no batch exists).
    """
    product_id: int
    quantity: int
    total_cost_cents: int
    slices: tuple[BatchSlice, ...] = ()
    shortfall: int = 0
    fallback_unit_cost_cents: int | None = None

    @property
    def degraded(self) -> bool:
        return self.shortfall > 0

    @property
    def exact(self) -> bool:
        return not self.degraded

    @property
    def unit_cost(self) -> Decimal:
        """Average unit cost in currency units, 4 decimal places."""
        if not self.quantity:
            return Decimal("0").quantize(UNIT_COST_QUANTUM)
        value = Decimal(self.total_cost_cents) / Decimal(self.quantity) / Decimal(100)
        return value.quantize(UNIT_COST_QUANTUM, rounding=ROUND_HALF_UP)

    @property
    def unit_cost_cents(self) -> int:
        if not self.quantity:
            return 0
        return _half_up_div(self.total_cost_cents, self.quantity)

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "quantity": self.quantity,
            "total_cost_cents": self.total_cost_cents,
            "unit_cost": str(self.unit_cost),
            "unit_cost_cents": self.unit_cost_cents,
            "degraded": self.degraded,
            "shortfall": self.shortfall,
            "fallback_unit_cost_cents": self.fallback_unit_cost_cents,
            "slices": [
                {
                    "batch_id": s.batch_id,
                    "quantity": s.quantity,
                    "unit_cost_cents": s.unit_cost_cents,
                }
                for s in self.slices
            ],
        }


@dataclass(frozen=True)
class Reversal:
    """Outcome of returning quantity units to a product's batches."""
    product_id: int
    quantity: int
    slices: tuple[BatchSlice, ...] = field(default_factory=tuple)
    unrestored: int = 0

    @property
    def degraded(self) -> bool:
        return self.unrestored > 0

    @property
    def restored(self) -> int:
        return self.quantity - self.unrestored


# =============================================================================
# Queries
# =============================================================================

def _lock_inventory(session, product_id: int) -> InventoryRecord | None:
    query = session.query(InventoryRecord).filter_by(product_id=product_id)
    return lock_for_update(query).first()


def _open_batches(session, product_id: int, *, lock: bool):
    query = (
        session.query(PurchaseBatch)
        .filter(
            PurchaseBatch.product_id == product_id,
            PurchaseBatch.consumed_quantity < PurchaseBatch.received_quantity,
        )
        .order_by(PurchaseBatch.received_at.asc(), PurchaseBatch.id.asc())
    )
    if lock:
        query = lock_for_update(query)
    return query.all()


def _consumed_batches(session, product_id: int):
    query = (
        session.query(PurchaseBatch)
        .filter(
            PurchaseBatch.product_id == product_id,
            PurchaseBatch.consumed_quantity > 0,
        )
        .order_by(
            func.coalesce(PurchaseBatch.consume_seq, 0).desc(),
            PurchaseBatch.received_at.desc(),
            PurchaseBatch.id.desc(),
        )
    )
    return lock_for_update(query).all()


def _last_consume_seq(session, product_id: int) -> int:
    value = (
        session.query(func.max(PurchaseBatch.consume_seq))
        .filter(PurchaseBatch.product_id == product_id)
        .scalar()
    )
    return int(value or 0)


def latest_unit_cost_cents(session, product_id: int) -> int:
    """Unit cost of the most recently received batch, 0 when there is none."""
    cost = (
        session.query(PurchaseBatch.unit_cost_cents)
        .filter(PurchaseBatch.product_id == product_id)
        .order_by(PurchaseBatch.received_at.desc(), PurchaseBatch.id.desc())
        .limit(1)
        .scalar()
    )
    return int(cost or 0)


def _walk(session, product_id: int, quantity: int, batches, *, consume: bool) -> Allocation:
    remaining = quantity
    seq = _last_consume_seq(session, product_id) if consume else 0
    total = 0
    slices: list[BatchSlice] = []

    for batch in batches:
        if remaining <= 0:
            break
        take = min(batch.available_quantity, remaining)
        if take <= 0:
            continue
        if consume:
            seq += 1
            batch.consumed_quantity += take
            batch.consume_seq = seq
            batch.sync_consumed_flag()
        total += take * batch.unit_cost_cents
        slices.append(BatchSlice(batch.id, take, batch.unit_cost_cents))
        remaining -= take

    fallback = None
    if remaining > 0:
        fallback = latest_unit_cost_cents(session, product_id)
        total += remaining * fallback

    return Allocation(
        product_id=product_id,
        quantity=quantity,
        total_cost_cents=total,
        slices=tuple(slices),
        shortfall=remaining,
        fallback_unit_cost_cents=fallback,
    )


# =============================================================================
# Operations
# =============================================================================

def allocate(session, product_id: int, quantity: int) -> Allocation:
    """
    Consume quantity units of a product from its batches, oldest first.

    Args:
        session: SQLAlchemy session owning the caller's transaction
        product_id: Product to allocate
        quantity: Units to allocate (> 0)

    Returns:
        Allocation with the FIFO cost. Degraded when the batches held fewer
        units than the inventory record.

    Raises:
        ValidationError: quantity is not a positive integer
        InsufficientInventoryError: on-hand quantity is below quantity; no
            row has been modified
    """
    quantity = require_positive_quantity(quantity)

    record = _lock_inventory(session, product_id)
    on_hand = record.quantity if record is not None else 0
    if on_hand < quantity:
        raise InsufficientInventoryError(product_id, quantity, on_hand)

    batches = _open_batches(session, product_id, lock=True)
    allocation = _walk(session, product_id, quantity, batches, consume=True)

    record.quantity -= quantity
    if allocation.degraded:
        record.recount_needed = True
    session.flush()

    if allocation.degraded:
        current_app.logger.warning(
            "FIFO drift for product %s: %d of %d units had no batch, priced at %d cents",
            product_id, allocation.shortfall, quantity, allocation.fallback_unit_cost_cents,
        )
    else:
        current_app.logger.info(
            "Allocated %d units of product %s across %d batches, cost %d cents",
            quantity, product_id, len(allocation.slices), allocation.total_cost_cents,
        )
    return allocation


def reverse(session, product_id: int, quantity: int) -> Reversal:
    """
    Return quantity units to a product's batches, newest consumption first.

    The inventory record is created at zero when missing and always grows by
    quantity. Units no batch can absorb are reported as Reversal.unrestored.

    Raises:
        ValidationError: quantity is not a positive integer
        NotFoundError: product does not exist
    """
    quantity = require_positive_quantity(quantity)

    record = _lock_inventory(session, product_id)
    if record is None:
        if session.get(Product, product_id) is None:
            raise NotFoundError("Product not found")
        record = InventoryRecord(product_id=product_id, quantity=0, avg_cost_cents=0)
        session.add(record)

    remaining = quantity
    slices: list[BatchSlice] = []
    for batch in _consumed_batches(session, product_id):
        if remaining <= 0:
            break
        give_back = min(batch.consumed_quantity, remaining)
        batch.consumed_quantity -= give_back
        batch.sync_consumed_flag()
        slices.append(BatchSlice(batch.id, give_back, batch.unit_cost_cents))
        remaining -= give_back

    record.quantity += quantity
    if remaining:
        record.recount_needed = True
    session.flush()

    reversal = Reversal(
        product_id=product_id,
        quantity=quantity,
        slices=tuple(slices),
        unrestored=remaining,
    )
    if reversal.degraded:
        current_app.logger.warning(
            "FIFO drift on reversal for product %s: %d of %d units not restored to any batch",
            product_id, remaining, quantity,
        )
    else:
        current_app.logger.info(
            "Reversed %d units of product %s across %d batches",
            quantity, product_id, len(slices),
        )
    return reversal


def estimate_cost(session, product_id: int, quantity: int) -> Allocation:
    """FIFO cost of quantity units as allocate would compute it, without mutating anything."""
    quantity = require_positive_quantity(quantity)
    batches = _open_batches(session, product_id, lock=False)
    return _walk(session, product_id, quantity, batches, consume=False)


def batch_quantity(session, product_id: int) -> int:
    """Units still available across the product's batches."""
    value = (
        session.query(func.sum(PurchaseBatch.received_quantity - PurchaseBatch.consumed_quantity))
        .filter(PurchaseBatch.product_id == product_id)
        .scalar()
    )
    return int(value or 0)


def write_off_batches(session, product_id: int, quantity: int) -> Allocation:
    """
    Consume batches oldest first without touching the inventory record.

    Used when a physical count shows the batches hold more units than are on
    the shelf. The caller sets InventoryRecord.quantity itself.
    """
    quantity = require_positive_quantity(quantity)
    batches = _open_batches(session, product_id, lock=True)
    allocation = _walk(session, product_id, quantity, batches, consume=True)
    session.flush()
    return allocation
