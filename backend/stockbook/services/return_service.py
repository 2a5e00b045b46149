# Overview: Sale returns (credit memos) with restocking into RETURN batches.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import InventoryLog, PurchaseBatch, Sale, SaleItem, SaleReturn, SaleReturnItem
from ..validation import ValidationError, coerce_int, coerce_price_cents
from stockbook.time_utils import utcnow
from .concurrency import lock_for_update, product_locks, run_with_retry
from .document_service import DOC_CREDIT_MEMO, next_document_number
from .fifo_service import InsufficientInventoryError, allocate
from .inventory_log_service import append_inventory_log
from .inventory_service import get_or_create_inventory


class ReturnError(Exception):
    """Raised for return operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


# =============================================================================
# Helpers
# =============================================================================

def _clean_items(items) -> list[dict]:
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")
    cleaned = []
    for index, raw in enumerate(items):
        if not isinstance(raw, dict) or raw.get("sale_item_id") is None:
            raise ValidationError(f"items[{index}]: Missing required field: sale_item_id")
        qty = coerce_int(raw.get("quantity"), f"items[{index}].quantity")
        if qty <= 0:
            raise ValidationError(f"items[{index}].quantity must be > 0")
        condition = raw.get("condition", SaleReturnItem.CONDITION_GOOD)
        if condition not in SaleReturnItem.CONDITIONS:
            raise ValidationError(
                f"items[{index}].condition must be one of: {', '.join(SaleReturnItem.CONDITIONS)}"
            )
        cleaned.append({
            "sale_item_id": coerce_int(raw["sale_item_id"], f"items[{index}].sale_item_id"),
            "quantity": qty,
            "condition": condition,
            "return_reason": str(raw.get("return_reason") or "other")[:32],
        })
    return cleaned


def _sold_share_cents(sale_item: SaleItem, units: int) -> int:
    """
    Net (after discount) amount charged for `units` of a line, half-up cents.

    Refunds are the difference between the share of units unreturned before
    and after a return, so returning a whole line in any number of pieces
    adds up to exactly total_sold_cents.
    """
    if units <= 0:
        return 0
    return (2 * sale_item.total_sold_cents * units + sale_item.quantity) // (2 * sale_item.quantity)


def _refresh_sale_status(sale: Sale) -> None:
    returned = sum(item.returned_quantity for item in sale.items)
    if returned == 0:
        sale.status = Sale.STATUS_COMPLETED
    elif all(item.returned_quantity >= item.quantity for item in sale.items):
        sale.status = Sale.STATUS_RETURNED
    else:
        sale.status = Sale.STATUS_PARTIALLY_RETURNED


def _lock_return(return_id: int) -> SaleReturn:
    sale_return = lock_for_update(db.session.query(SaleReturn).filter_by(id=return_id)).first()
    if sale_return is None:
        raise ReturnError("Return not found")
    return sale_return


def get_return(return_id: int) -> SaleReturn:
    sale_return = db.session.get(SaleReturn, return_id)
    if sale_return is None:
        raise ReturnError("Return not found")
    return sale_return


# =============================================================================
# Operations
# =============================================================================

def create_return(
    sale_id: int,
    items: list[dict],
    refund_method: str = SaleReturn.REFUND_NONE,
    refund_amount_cents: int | None = None,
    user_id: int | None = None,
    remarks: str | None = None,
) -> SaleReturn:
    """
    Record a return against a sale. The return is created APPROVED.

    Items in new or good condition go back into stock as a RETURN batch at
    the sale item's FIFO unit cost; damaged, expired and defective items are
    recorded only.

    Args:
        sale_id: Sale being returned against
        items: [{"sale_item_id", "quantity", "condition"?, "return_reason"?}]
        refund_method: none, cash or store_credit
        refund_amount_cents: Defaults to the return total when a refund
            method is given
        user_id: Processor

    Raises:
        ReturnError: cancelled sale, foreign item, or quantity above what is
            still returnable
    """
    if refund_method not in SaleReturn.REFUND_METHODS:
        raise ValidationError(f"refund_method must be one of: {', '.join(SaleReturn.REFUND_METHODS)}")
    lines = _clean_items(items)
    refund_override = None
    if refund_amount_cents is not None:
        refund_override = coerce_price_cents(refund_amount_cents, "refund_amount_cents")

    sale_items = {
        item.id: item
        for item in db.session.query(SaleItem).filter(
            SaleItem.id.in_([line["sale_item_id"] for line in lines])
        )
    }
    product_ids = [item.product_id for item in sale_items.values()]

    def _op():
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if sale is None:
            raise ReturnError("Sale not found")
        if sale.status == Sale.STATUS_CANCELLED:
            raise ReturnError("Cannot process return for a cancelled sale")

        sale_return = SaleReturn(
            credit_memo_number=next_document_number(db.session, DOC_CREDIT_MEMO),
            sale_id=sale.id,
            customer_id=sale.customer_id,
            user_id=user_id,
            status=SaleReturn.STATUS_APPROVED,
            refund_method=refund_method,
            remarks=remarks,
        )
        db.session.add(sale_return)
        db.session.flush()

        total = 0
        for line in lines:
            sale_item = db.session.get(SaleItem, line["sale_item_id"])
            if sale_item is None or sale_item.sale_id != sale.id:
                raise ReturnError(
                    "Sale item does not belong to this sale",
                    details={"sale_item_id": line["sale_item_id"]},
                )
            if line["quantity"] > sale_item.returnable_quantity:
                raise ReturnError(
                    f"Cannot return {line['quantity']} units; "
                    f"maximum available for return: {sale_item.returnable_quantity}",
                    details={
                        "sale_item_id": sale_item.id,
                        "requested_quantity": line["quantity"],
                        "returnable_quantity": sale_item.returnable_quantity,
                    },
                )

            still_out = sale_item.returnable_quantity
            subtotal = (
                _sold_share_cents(sale_item, still_out)
                - _sold_share_cents(sale_item, still_out - line["quantity"])
            )
            return_item = SaleReturnItem(
                return_id=sale_return.id,
                sale_item_id=sale_item.id,
                product_id=sale_item.product_id,
                quantity=line["quantity"],
                price_cents=sale_item.sold_price_cents,
                discount_bps=sale_item.discount_bps,
                subtotal_cents=subtotal,
                unit_cost_cents=sale_item.unit_cost_cents,
                return_reason=line["return_reason"],
                condition=line["condition"],
            )
            db.session.add(return_item)
            sale_item.returned_quantity += line["quantity"]
            total += subtotal

            if return_item.is_returnable_to_inventory:
                record = get_or_create_inventory(db.session, sale_item.product_id)
                before = record.quantity
                db.session.add(PurchaseBatch(
                    product_id=sale_item.product_id,
                    received_quantity=line["quantity"],
                    consumed_quantity=0,
                    unit_cost_cents=sale_item.unit_cost_cents,
                    fully_consumed=False,
                    received_at=utcnow(),
                    source=PurchaseBatch.SOURCE_RETURN,
                    reference=sale_return.credit_memo_number,
                ))
                record.quantity += line["quantity"]
                db.session.flush()
                append_inventory_log(
                    db.session,
                    product_id=sale_item.product_id,
                    transaction_type=InventoryLog.TYPE_RETURN,
                    reference_type=InventoryLog.REF_RETURN,
                    reference_id=sale_return.id,
                    quantity=line["quantity"],
                    quantity_before=before,
                    quantity_after=record.quantity,
                    cost_cents=sale_item.unit_cost_cents,
                    user_id=user_id,
                    notes=f"Return {sale_return.credit_memo_number} ({line['condition']})",
                )

        sale_return.total_amount_cents = total
        if refund_method != SaleReturn.REFUND_NONE:
            sale_return.refund_amount_cents = refund_override if refund_override is not None else total
        _refresh_sale_status(sale)

        db.session.commit()
        current_app.logger.info(
            "Return %s against sale %s: %d items, %d cents",
            sale_return.credit_memo_number, sale.invoice_number, len(lines), total,
        )
        return sale_return

    with product_locks(*product_ids):
        return run_with_retry(_op)


def reject_return(return_id: int, reason: str = "") -> SaleReturn:
    """
    Reject an approved return.

    Stock restocked by an approved return is allocated out again and the
    sale items' returned quantities are rolled back.
    """
    product_ids = [item.product_id for item in get_return(return_id).items]

    def _op():
        sale_return = _lock_return(return_id)
        if sale_return.status != SaleReturn.STATUS_APPROVED:
            raise ReturnError(f"Cannot reject a return with status {sale_return.status}")

        for item in sale_return.items:
            if item.is_returnable_to_inventory:
                try:
                    allocation = allocate(db.session, item.product_id, item.quantity)
                except InsufficientInventoryError as exc:
                    raise ReturnError(
                        "Returned stock is no longer on hand", details=exc.details
                    ) from exc
                record = get_or_create_inventory(db.session, item.product_id)
                append_inventory_log(
                    db.session,
                    product_id=item.product_id,
                    transaction_type=InventoryLog.TYPE_ADJUSTMENT_OUT,
                    reference_type=InventoryLog.REF_RETURN_REJECT,
                    reference_id=sale_return.id,
                    quantity=item.quantity,
                    quantity_before=record.quantity + item.quantity,
                    quantity_after=record.quantity,
                    cost_cents=allocation.unit_cost_cents,
                    notes=f"Rejected return {sale_return.credit_memo_number}",
                )
            item.sale_item.returned_quantity = max(0, item.sale_item.returned_quantity - item.quantity)

        sale_return.status = SaleReturn.STATUS_REJECTED
        sale_return.refund_amount_cents = 0
        if reason:
            sale_return.remarks = (
                f"{sale_return.remarks}\nRejected: {reason}" if sale_return.remarks else f"Rejected: {reason}"
            )
        _refresh_sale_status(sale_return.sale)

        db.session.commit()
        current_app.logger.info("Return %s rejected", sale_return.credit_memo_number)
        return sale_return

    with product_locks(*product_ids):
        return run_with_retry(_op)


def complete_return(return_id: int) -> SaleReturn:
    """Settle an approved return."""
    def _op():
        sale_return = _lock_return(return_id)
        if sale_return.status != SaleReturn.STATUS_APPROVED:
            raise ReturnError("Cannot complete a return that is not in approved status")
        sale_return.status = SaleReturn.STATUS_COMPLETED
        sale_return.completed_at = utcnow()
        db.session.commit()
        return sale_return

    return run_with_retry(_op)
