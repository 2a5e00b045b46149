# Overview: Physical inventory counts that reset on-hand stock and its batches.

"""
Physical inventory count service.

A count snapshots the system quantity of each counted product. Finalizing it
makes the counted quantity authoritative:
- InventoryRecord.quantity becomes the counted quantity (logged as an
  adjustment when it changes);
- the product's batches are brought to the same total, by writing off the
  oldest units or by adding an ADJUSTMENT batch at the latest batch cost;
- recount_needed is cleared.

LIFECYCLE:
1. DRAFT: created
2. IN_PROGRESS: lines edited
3. FINALIZED: posted
4. CANCELLED: abandoned before finalizing
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import (
    InventoryAdjustment,
    InventoryCount,
    InventoryCountItem,
    InventoryLog,
    InventoryRecord,
    Product,
    PurchaseBatch,
)
from ..validation import ValidationError, coerce_int
from stockbook.time_utils import utcnow
from .concurrency import lock_for_update, product_locks, run_with_retry
from .document_service import DOC_COUNT, next_document_number
from .fifo_service import batch_quantity, latest_unit_cost_cents, write_off_batches
from .inventory_log_service import append_inventory_log
from .inventory_service import get_or_create_inventory


class CountError(Exception):
    """Raised when count operations fail."""
    pass


def _clean_lines(items) -> list[dict]:
    if not isinstance(items, list):
        raise ValidationError("items must be a list")
    cleaned = []
    seen = set()
    for index, raw in enumerate(items):
        if not isinstance(raw, dict) or raw.get("product_id") is None:
            raise ValidationError(f"items[{index}]: Missing required field: product_id")
        product_id = coerce_int(raw["product_id"], f"items[{index}].product_id")
        if product_id in seen:
            raise ValidationError(f"items[{index}]: product {product_id} is listed twice")
        seen.add(product_id)
        counted = coerce_int(raw.get("counted_quantity"), f"items[{index}].counted_quantity")
        if counted < 0:
            raise ValidationError(f"items[{index}].counted_quantity cannot be negative")
        cleaned.append({
            "product_id": product_id,
            "counted_quantity": counted,
            "notes": raw.get("notes"),
        })
    return cleaned


def _system_quantity(product_id: int) -> int:
    if db.session.get(Product, product_id) is None:
        raise CountError("Product not found")
    record = db.session.query(InventoryRecord).filter_by(product_id=product_id).first()
    return record.quantity if record else 0


def _lock_count(count_id: int) -> InventoryCount:
    count = lock_for_update(db.session.query(InventoryCount).filter_by(id=count_id)).first()
    if count is None:
        raise CountError("Inventory count not found")
    return count


def get_count(count_id: int) -> InventoryCount:
    count = db.session.get(InventoryCount, count_id)
    if count is None:
        raise CountError("Inventory count not found")
    return count


def list_counts(status: str | None = None) -> list[InventoryCount]:
    query = db.session.query(InventoryCount)
    if status:
        query = query.filter(InventoryCount.status == status)
    return query.order_by(InventoryCount.created_at.desc(), InventoryCount.id.desc()).all()


def create_count(
    name: str,
    items: list[dict] | None = None,
    description: str | None = None,
    user_id: int | None = None,
) -> InventoryCount:
    """
    Create a DRAFT count.

    Args:
        name: Label for the count
        items: [{"product_id", "counted_quantity", "notes"?}]
        description: Free text
        user_id: Counter

    Raises:
        ValidationError: missing name or malformed items
        CountError: unknown product
    """
    if not name or not str(name).strip():
        raise ValidationError("name is required")
    lines = _clean_lines(items or [])

    def _op():
        count = InventoryCount(
            count_number=next_document_number(db.session, DOC_COUNT),
            name=str(name).strip()[:128],
            description=description,
            status=InventoryCount.STATUS_DRAFT,
            created_by_user_id=user_id,
        )
        for line in lines:
            count.items.append(InventoryCountItem(
                product_id=line["product_id"],
                system_quantity=_system_quantity(line["product_id"]),
                counted_quantity=line["counted_quantity"],
                notes=line["notes"],
            ))
        db.session.add(count)
        db.session.commit()
        return count

    return run_with_retry(_op)


def update_count(
    count_id: int,
    name: str | None = None,
    description: str | None = None,
    items: list[dict] | None = None,
) -> InventoryCount:
    """
    Edit an open count; the count moves to IN_PROGRESS.

    When items is given it replaces the line set: lines for listed products
    are updated (their system snapshot is kept), new products are added with
    a fresh snapshot and unlisted lines are removed.
    """
    lines = _clean_lines(items) if items is not None else None

    def _op():
        count = _lock_count(count_id)
        if not count.is_editable:
            raise CountError(
                "Inventory count cannot be updated because it has been finalized or cancelled"
            )
        if name is not None:
            if not str(name).strip():
                raise ValidationError("name cannot be empty")
            count.name = str(name).strip()[:128]
        if description is not None:
            count.description = description

        if lines is not None:
            existing = {item.product_id: item for item in count.items}
            keep = set()
            for line in lines:
                item = existing.get(line["product_id"])
                if item is None:
                    count.items.append(InventoryCountItem(
                        product_id=line["product_id"],
                        system_quantity=_system_quantity(line["product_id"]),
                        counted_quantity=line["counted_quantity"],
                        notes=line["notes"],
                    ))
                else:
                    item.counted_quantity = line["counted_quantity"]
                    if line["notes"] is not None:
                        item.notes = line["notes"]
                keep.add(line["product_id"])
            for product_id, item in existing.items():
                if product_id not in keep:
                    count.items.remove(item)

        count.status = InventoryCount.STATUS_IN_PROGRESS
        db.session.commit()
        return count

    return run_with_retry(_op)


def _post_item(count: InventoryCount, item: InventoryCountItem, user_id: int | None) -> None:
    record = get_or_create_inventory(db.session, item.product_id)
    before = record.quantity
    counted = item.counted_quantity
    item.posted_quantity_before = before

    in_batches = batch_quantity(db.session, item.product_id)
    unit_cost = latest_unit_cost_cents(db.session, item.product_id) or record.avg_cost_cents
    if in_batches > counted:
        write_off_batches(db.session, item.product_id, in_batches - counted)
    elif in_batches < counted:
        db.session.add(PurchaseBatch(
            product_id=item.product_id,
            received_quantity=counted - in_batches,
            consumed_quantity=0,
            unit_cost_cents=unit_cost,
            fully_consumed=False,
            received_at=utcnow(),
            source=PurchaseBatch.SOURCE_ADJUSTMENT,
            reference=count.count_number,
        ))

    record.quantity = counted
    record.recount_needed = False
    db.session.flush()

    if counted == before:
        return

    difference = counted - before
    adjustment = InventoryAdjustment(
        product_id=item.product_id,
        user_id=user_id,
        adjustment_type=InventoryAdjustment.TYPE_COUNT,
        quantity=abs(difference),
        quantity_before=before,
        quantity_after=counted,
        unit_cost_cents=unit_cost,
        total_cost_cents=abs(difference) * unit_cost,
        reason="Inventory count adjustment",
        notes=f"Count {count.count_number}: {item.notes or 'No notes'}",
    )
    db.session.add(adjustment)
    db.session.flush()
    item.adjustment_id = adjustment.id

    append_inventory_log(
        db.session,
        product_id=item.product_id,
        transaction_type=(
            InventoryLog.TYPE_ADJUSTMENT_IN if difference > 0 else InventoryLog.TYPE_ADJUSTMENT_OUT
        ),
        reference_type=InventoryLog.REF_INVENTORY_COUNT,
        reference_id=count.id,
        quantity=abs(difference),
        quantity_before=before,
        quantity_after=counted,
        cost_cents=unit_cost,
        user_id=user_id,
        notes=f"Inventory count {count.count_number}",
    )


def finalize_count(count_id: int, user_id: int | None = None) -> InventoryCount:
    """
    Post a count.

    The counted quantity replaces whatever is on hand at finalize time;
    posted_quantity_before keeps the figure it overwrote.

    Raises:
        CountError: count not editable or has no lines
    """
    product_ids = [item.product_id for item in get_count(count_id).items]

    def _op():
        count = _lock_count(count_id)
        if not count.is_editable:
            raise CountError(
                "Inventory count cannot be finalized because it has already been finalized or cancelled"
            )
        if not count.items:
            raise CountError("Cannot finalize a count with no items")

        for item in count.items:
            _post_item(count, item, user_id)

        count.status = InventoryCount.STATUS_FINALIZED
        count.finalized_by_user_id = user_id
        count.finalized_at = utcnow()

        db.session.commit()
        current_app.logger.info(
            "Inventory count %s finalized: %d items, %d discrepancies",
            count.count_number, len(count.items), count.discrepancy_count,
        )
        return count

    with product_locks(*product_ids):
        return run_with_retry(_op)


def cancel_count(count_id: int) -> InventoryCount:
    def _op():
        count = _lock_count(count_id)
        if not count.is_editable:
            raise CountError(
                "Inventory count cannot be cancelled because it has already been finalized or cancelled"
            )
        count.status = InventoryCount.STATUS_CANCELLED
        count.cancelled_at = utcnow()
        db.session.commit()
        return count

    return run_with_retry(_op)
