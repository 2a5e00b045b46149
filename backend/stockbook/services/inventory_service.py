# Overview: Goods receipt, manual adjustments and inventory read models.

"""
Inventory invariants:
- InventoryRecord.quantity is the authoritative on-hand figure and never goes
  negative.
- Every inbound movement creates a PurchaseBatch; every outbound movement
  goes through fifo_service.allocate.
- Each movement appends an InventoryLog row in the same DB transaction.
- avg_cost_cents is a running average over receipts (half-up cents);
  outbound movements do not change it.
"""

from __future__ import annotations

from sqlalchemy import func

from ..extensions import db
from ..models import InventoryAdjustment, InventoryLog, InventoryRecord, Product, PurchaseBatch
from ..validation import (
    NotFoundError,
    ValidationError,
    coerce_price_cents,
    require_positive_quantity,
)
from stockbook.time_utils import coerce_datetime, to_utc_z, utcnow
from .concurrency import lock_for_update, product_locks, run_with_retry
from .fifo_service import allocate, latest_unit_cost_cents
from .inventory_log_service import append_inventory_log


def get_or_create_inventory(session, product_id: int) -> InventoryRecord:
    """Locked inventory row for the product, created at zero if missing."""
    record = lock_for_update(
        session.query(InventoryRecord).filter_by(product_id=product_id)
    ).first()
    if record is not None:
        return record

    if session.get(Product, product_id) is None:
        raise NotFoundError("Product not found")
    record = InventoryRecord(product_id=product_id, quantity=0, avg_cost_cents=0)
    session.add(record)
    session.flush()
    return record


def receive_stock(
    product_id: int,
    quantity: int,
    unit_cost_cents: int,
    received_at=None,
    reference: str | None = None,
    user_id: int | None = None,
) -> PurchaseBatch:
    """
    Receive goods into a new purchase batch.

    Args:
        product_id: Product received
        quantity: Units received (> 0)
        unit_cost_cents: Cost per unit
        received_at: FIFO timestamp (defaults to now)
        reference: Supplier / PO reference
        user_id: Receiver

    Returns:
        The created PurchaseBatch
    """
    qty = require_positive_quantity(quantity)
    cost = coerce_price_cents(unit_cost_cents, "unit_cost_cents")
    try:
        received = coerce_datetime(received_at, field="received_at") or utcnow()
    except ValueError as exc:
        raise ValidationError(str(exc))

    def _op():
        record = get_or_create_inventory(db.session, product_id)
        before = record.quantity

        batch = PurchaseBatch(
            product_id=product_id,
            received_quantity=qty,
            consumed_quantity=0,
            unit_cost_cents=cost,
            fully_consumed=False,
            received_at=received,
            source=PurchaseBatch.SOURCE_RECEIVE,
            reference=reference,
        )
        db.session.add(batch)
        record.apply_receipt(qty, cost)
        db.session.flush()

        append_inventory_log(
            db.session,
            product_id=product_id,
            transaction_type=InventoryLog.TYPE_PURCHASE,
            reference_type=InventoryLog.REF_RECEIVE,
            reference_id=batch.id,
            quantity=qty,
            quantity_before=before,
            quantity_after=record.quantity,
            cost_cents=cost,
            user_id=user_id,
            notes=reference,
        )
        db.session.commit()
        return batch

    with product_locks(product_id):
        return run_with_retry(_op)


def adjust_inventory(
    product_id: int,
    adjustment_type: str,
    quantity: int,
    reason: str,
    notes: str | None = None,
    unit_cost_cents: int | None = None,
    user_id: int | None = None,
) -> InventoryAdjustment:
    """
    Manual stock correction.

    Additions and returns create a batch and raise the on-hand quantity
    (additions need a unit cost; returns default to the latest batch cost).
    Reductions, damage and loss are allocated FIFO.

    Raises:
        ValidationError: bad type, quantity, cost or missing reason
        InsufficientInventoryError: outbound quantity exceeds on-hand
    """
    if adjustment_type not in InventoryAdjustment.INBOUND_TYPES + InventoryAdjustment.OUTBOUND_TYPES:
        raise ValidationError(f"Invalid adjustment type: {adjustment_type}")
    qty = require_positive_quantity(quantity)
    if not reason or not str(reason).strip():
        raise ValidationError("reason is required")
    if adjustment_type == InventoryAdjustment.TYPE_ADDITION and unit_cost_cents is None:
        raise ValidationError("unit_cost_cents is required for additions")
    cost = None
    if unit_cost_cents is not None:
        cost = coerce_price_cents(unit_cost_cents, "unit_cost_cents")

    def _op():
        record = get_or_create_inventory(db.session, product_id)
        before = record.quantity
        inbound = adjustment_type in InventoryAdjustment.INBOUND_TYPES

        if inbound:
            unit_cost = cost if cost is not None else latest_unit_cost_cents(db.session, product_id)
            db.session.add(PurchaseBatch(
                product_id=product_id,
                received_quantity=qty,
                consumed_quantity=0,
                unit_cost_cents=unit_cost,
                fully_consumed=False,
                received_at=utcnow(),
                source=(
                    PurchaseBatch.SOURCE_ADJUSTMENT
                    if adjustment_type == InventoryAdjustment.TYPE_ADDITION
                    else PurchaseBatch.SOURCE_RETURN
                ),
                reference=str(reason)[:128],
            ))
            if adjustment_type == InventoryAdjustment.TYPE_ADDITION:
                record.apply_receipt(qty, unit_cost)
            else:
                record.quantity += qty
            total_cost = qty * unit_cost
        else:
            allocation = allocate(db.session, product_id, qty)
            unit_cost = allocation.unit_cost_cents
            total_cost = allocation.total_cost_cents

        adjustment = InventoryAdjustment(
            product_id=product_id,
            user_id=user_id,
            adjustment_type=adjustment_type,
            quantity=qty,
            quantity_before=before,
            quantity_after=record.quantity,
            unit_cost_cents=unit_cost,
            total_cost_cents=total_cost,
            reason=str(reason).strip()[:255],
            notes=notes,
        )
        db.session.add(adjustment)
        db.session.flush()

        append_inventory_log(
            db.session,
            product_id=product_id,
            transaction_type=(
                InventoryLog.TYPE_ADJUSTMENT_IN if inbound else InventoryLog.TYPE_ADJUSTMENT_OUT
            ),
            reference_type=InventoryLog.REF_ADJUSTMENT,
            reference_id=adjustment.id,
            quantity=qty,
            quantity_before=before,
            quantity_after=record.quantity,
            cost_cents=unit_cost,
            user_id=user_id,
            notes=f"{adjustment_type}: {reason}",
        )
        db.session.commit()
        return adjustment

    with product_locks(product_id):
        return run_with_retry(_op)


def get_inventory_summary(product_id: int) -> dict:
    """
    On-hand quantity next to what the batches account for.

    drift_quantity = record quantity - unconsumed batch quantity; non-zero
    means FIFO costing will degrade for some units.
    """
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found")

    record = db.session.query(InventoryRecord).filter_by(product_id=product_id).first()
    available = PurchaseBatch.received_quantity - PurchaseBatch.consumed_quantity
    batch_qty, fifo_value = db.session.query(
        func.coalesce(func.sum(available), 0),
        func.coalesce(func.sum(available * PurchaseBatch.unit_cost_cents), 0),
    ).filter(PurchaseBatch.product_id == product_id).one()

    quantity = record.quantity if record else 0
    drift = quantity - int(batch_qty)
    return {
        "product_id": product_id,
        "sku": product.sku,
        "quantity": quantity,
        "avg_cost_cents": record.avg_cost_cents if record else 0,
        "batch_quantity": int(batch_qty),
        "fifo_value_cents": int(fifo_value),
        "drift_quantity": drift,
        "has_drift": drift != 0,
        "is_low_stock": record.is_low_stock() if record else True,
        "recount_needed": record.recount_needed if record else False,
        "last_received_at": to_utc_z(record.last_received_at) if record else None,
    }


def list_batches(product_id: int, include_consumed: bool = False) -> list[PurchaseBatch]:
    query = db.session.query(PurchaseBatch).filter_by(product_id=product_id)
    if not include_consumed:
        query = query.filter(PurchaseBatch.consumed_quantity < PurchaseBatch.received_quantity)
    return query.order_by(PurchaseBatch.received_at.asc(), PurchaseBatch.id.asc()).all()


def list_inventory_logs(product_id: int, limit: int = 200) -> list[InventoryLog]:
    return (
        db.session.query(InventoryLog)
        .filter_by(product_id=product_id)
        .order_by(InventoryLog.created_at.desc(), InventoryLog.id.desc())
        .limit(limit)
        .all()
    )
