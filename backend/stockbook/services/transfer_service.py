# Overview: Outbound warehouse transfers costed through the FIFO allocator.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import InventoryLog, InventoryRecord, Transfer, TransferItem, Warehouse
from ..validation import ValidationError, coerce_int
from stockbook.time_utils import coerce_datetime, utcnow
from .concurrency import lock_for_update, product_locks, run_with_retry
from .document_service import DOC_TRANSFER, next_document_number
from .fifo_service import InsufficientInventoryError, allocate, reverse
from .inventory_log_service import append_inventory_log


class TransferError(Exception):
    """Raised for transfer operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def _on_hand(product_id: int) -> int:
    record = db.session.query(InventoryRecord).filter_by(product_id=product_id).first()
    return record.quantity if record else 0


def _lock_transfer(transfer_id: int) -> Transfer:
    transfer = lock_for_update(db.session.query(Transfer).filter_by(id=transfer_id)).first()
    if transfer is None:
        raise TransferError("Transfer not found")
    return transfer


def get_transfer(transfer_id: int) -> Transfer:
    transfer = db.session.get(Transfer, transfer_id)
    if transfer is None:
        raise TransferError("Transfer not found")
    return transfer


def create_transfer(
    to_warehouse_id: int,
    items: list[dict],
    user_id: int | None = None,
    notes: str | None = None,
) -> Transfer:
    """
    Ship stock to a warehouse.

    Each item is allocated FIFO immediately; the transfer starts IN_TRANSIT.

    Args:
        to_warehouse_id: Active destination warehouse
        items: [{"product_id", "quantity", "notes"?}]
        user_id: Creator
        notes: Free text

    Raises:
        ValidationError: malformed items
        TransferError: inactive/unknown warehouse or insufficient inventory
    """
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")
    lines = []
    for index, raw in enumerate(items):
        if not isinstance(raw, dict) or raw.get("product_id") is None:
            raise ValidationError(f"items[{index}]: Missing required field: product_id")
        qty = coerce_int(raw.get("quantity"), f"items[{index}].quantity")
        if qty <= 0:
            raise ValidationError(f"items[{index}].quantity must be > 0")
        lines.append({
            "product_id": coerce_int(raw["product_id"], f"items[{index}].product_id"),
            "quantity": qty,
            "notes": raw.get("notes"),
        })

    def _op():
        warehouse = db.session.get(Warehouse, to_warehouse_id)
        if warehouse is None:
            raise TransferError("Warehouse not found")
        if not warehouse.is_active:
            raise TransferError("Destination warehouse is inactive")

        transfer = Transfer(
            transfer_number=next_document_number(db.session, DOC_TRANSFER),
            to_warehouse_id=warehouse.id,
            status=Transfer.STATUS_IN_TRANSIT,
            notes=notes,
            created_by_user_id=user_id,
        )
        db.session.add(transfer)
        db.session.flush()

        total_value = 0
        for line in lines:
            try:
                allocation = allocate(db.session, line["product_id"], line["quantity"])
            except InsufficientInventoryError as exc:
                raise TransferError("Insufficient inventory for transfer", details=exc.details) from exc

            db.session.add(TransferItem(
                transfer_id=transfer.id,
                product_id=line["product_id"],
                quantity=line["quantity"],
                unit_cost_cents=allocation.unit_cost_cents,
                total_cost_cents=allocation.total_cost_cents,
                cost_degraded=allocation.degraded,
                notes=line["notes"],
            ))
            after = _on_hand(line["product_id"])
            append_inventory_log(
                db.session,
                product_id=line["product_id"],
                transaction_type=InventoryLog.TYPE_TRANSFER_OUT,
                reference_type=InventoryLog.REF_TRANSFER,
                reference_id=transfer.id,
                quantity=line["quantity"],
                quantity_before=after + line["quantity"],
                quantity_after=after,
                cost_cents=allocation.unit_cost_cents,
                user_id=user_id,
                notes=f"Transfer {transfer.transfer_number} to {warehouse.name}",
            )
            total_value += allocation.total_cost_cents

        transfer.total_value_cents = total_value
        db.session.commit()
        current_app.logger.info(
            "Transfer %s created: %d items, value %d cents",
            transfer.transfer_number, len(lines), total_value,
        )
        return transfer

    with product_locks(*(line["product_id"] for line in lines)):
        return run_with_retry(_op)


def complete_transfer(transfer_id: int, delivery_date=None) -> Transfer:
    """Mark an in-transit transfer delivered. No inventory effect."""
    try:
        delivered = coerce_datetime(delivery_date, field="delivery_date") or utcnow()
    except ValueError as exc:
        raise ValidationError(str(exc))

    def _op():
        transfer = _lock_transfer(transfer_id)
        if transfer.status != Transfer.STATUS_IN_TRANSIT:
            raise TransferError(f"Cannot complete transfer with status {transfer.status}")
        transfer.status = Transfer.STATUS_COMPLETED
        transfer.delivery_date = delivered
        db.session.commit()
        return transfer

    return run_with_retry(_op)


def cancel_transfer(transfer_id: int, reason: str, user_id: int | None = None) -> Transfer:
    """
    Cancel an in-transit transfer and return its stock to the batches.

    Raises:
        TransferError: transfer is not in transit (already cancelled or completed)
    """
    if not reason or not str(reason).strip():
        raise ValidationError("reason is required")
    product_ids = [item.product_id for item in get_transfer(transfer_id).items]

    def _op():
        transfer = _lock_transfer(transfer_id)
        if transfer.status == Transfer.STATUS_CANCELLED:
            raise TransferError("Transfer is already cancelled")
        if transfer.status != Transfer.STATUS_IN_TRANSIT:
            raise TransferError(f"Cannot cancel transfer with status {transfer.status}")

        for item in transfer.items:
            reverse(db.session, item.product_id, item.quantity)
            after = _on_hand(item.product_id)
            append_inventory_log(
                db.session,
                product_id=item.product_id,
                transaction_type=InventoryLog.TYPE_TRANSFER_IN,
                reference_type=InventoryLog.REF_TRANSFER,
                reference_id=transfer.id,
                quantity=item.quantity,
                quantity_before=after - item.quantity,
                quantity_after=after,
                cost_cents=item.unit_cost_cents,
                user_id=user_id,
                notes=f"Cancelled transfer {transfer.transfer_number}",
            )

        transfer.status = Transfer.STATUS_CANCELLED
        transfer.cancelled_at = utcnow()
        transfer.cancelled_by_user_id = user_id
        transfer.cancellation_reason = str(reason).strip()
        db.session.commit()
        current_app.logger.info("Transfer %s cancelled", transfer.transfer_number)
        return transfer

    with product_locks(*product_ids):
        return run_with_retry(_op)
