"""
Sales Service - priced, FIFO-costed sale documents

WHY: A sale resolves each line's price (override -> bracket -> flat),
allocates its cost FIFO and decrements inventory in one transaction, so the
recorded COGS always matches the batches consumed. Cancelling reverses the
allocations.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Customer, InventoryLog, InventoryRecord, Product, Sale, SaleItem, SaleReturn
from ..validation import ValidationError, coerce_int, coerce_price_cents, validate_price_tier
from stockbook.time_utils import utcnow
from .concurrency import lock_for_update, product_locks, run_with_retry
from .document_service import DOC_SALE, next_document_number
from .fifo_service import InsufficientInventoryError, allocate, reverse
from .inventory_log_service import append_inventory_log
from .pricing_service import PricingError, require_price, resolve_price


MAX_DISCOUNT_BPS = 10_000


class SaleError(Exception):
    """Raised for sale operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def _clean_items(items) -> list[dict]:
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")

    cleaned = []
    for index, raw in enumerate(items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object")
        if raw.get("product_id") is None:
            raise ValidationError(f"items[{index}]: Missing required field: product_id")
        qty = coerce_int(raw.get("quantity"), f"items[{index}].quantity")
        if qty <= 0:
            raise ValidationError(f"items[{index}].quantity must be > 0")
        discount = coerce_int(raw.get("discount_bps", 0), f"items[{index}].discount_bps")
        if discount < 0 or discount > MAX_DISCOUNT_BPS:
            raise ValidationError(f"items[{index}].discount_bps must be between 0 and {MAX_DISCOUNT_BPS}")
        sold_price = raw.get("sold_price_cents")
        if sold_price is not None:
            sold_price = coerce_price_cents(sold_price, f"items[{index}].sold_price_cents")
        cleaned.append({
            "product_id": coerce_int(raw["product_id"], f"items[{index}].product_id"),
            "quantity": qty,
            "discount_bps": discount,
            "sold_price_cents": sold_price,
        })
    return cleaned


def _discount_cents(gross_cents: int, discount_bps: int) -> int:
    # Half-up to the cent
    return (gross_cents * discount_bps + MAX_DISCOUNT_BPS // 2) // MAX_DISCOUNT_BPS


def _on_hand(product_id: int) -> int:
    record = db.session.query(InventoryRecord).filter_by(product_id=product_id).first()
    return record.quantity if record else 0


def create_sale(
    items: list[dict],
    price_tier: str | None = None,
    customer_id: int | None = None,
    user_id: int | None = None,
    delivery_fee_cents: int = 0,
    other_charges_cents: int = 0,
    remarks: str | None = None,
) -> Sale:
    """
    Create a completed sale.

    Args:
        items: [{"product_id", "quantity", "sold_price_cents"?, "discount_bps"?}]
        price_tier: regular, wholesale or walk_in (defaults to DEFAULT_PRICE_TIER)
        customer_id: Buyer; valued customers get their override prices
        user_id: Cashier
        delivery_fee_cents: Added to the total
        other_charges_cents: Added to the total
        remarks: Free text

    Returns:
        The committed Sale with items

    Raises:
        ValidationError: malformed items or charges
        SaleError: unknown customer/product, no price, insufficient inventory
    """
    tier = validate_price_tier(price_tier or current_app.config.get("DEFAULT_PRICE_TIER", "regular"))
    lines = _clean_items(items)
    delivery = coerce_price_cents(delivery_fee_cents, "delivery_fee_cents")
    other = coerce_price_cents(other_charges_cents, "other_charges_cents")

    def _op():
        if customer_id is not None and db.session.get(Customer, customer_id) is None:
            raise SaleError("Customer not found")

        sale = Sale(
            invoice_number=next_document_number(db.session, DOC_SALE),
            customer_id=customer_id,
            user_id=user_id,
            status=Sale.STATUS_COMPLETED,
            price_tier=tier,
            delivery_fee_cents=delivery,
            other_charges_cents=other,
            remarks=remarks,
        )
        db.session.add(sale)
        db.session.flush()

        subtotal = 0
        cogs = 0
        for line in lines:
            product_id = line["product_id"]
            qty = line["quantity"]
            if db.session.get(Product, product_id) is None:
                raise SaleError("Product not found", details={"product_id": product_id})

            if line["sold_price_cents"] is not None:
                price = line["sold_price_cents"]
                source = "manual"
            else:
                quote = resolve_price(db.session, product_id, qty, tier, customer_id)
                try:
                    price = require_price(quote)
                except PricingError as exc:
                    raise SaleError(str(exc), details=exc.details) from exc
                source = quote.source

            try:
                allocation = allocate(db.session, product_id, qty)
            except InsufficientInventoryError as exc:
                raise SaleError("Insufficient inventory to post sale", details=exc.details) from exc

            gross = price * qty
            total_sold = gross - _discount_cents(gross, line["discount_bps"])
            db.session.add(SaleItem(
                sale_id=sale.id,
                product_id=product_id,
                quantity=qty,
                returned_quantity=0,
                price_tier=tier,
                price_source=source,
                sold_price_cents=price,
                discount_bps=line["discount_bps"],
                total_sold_cents=total_sold,
                unit_cost_cents=allocation.unit_cost_cents,
                total_cost_cents=allocation.total_cost_cents,
                cost_degraded=allocation.degraded,
                cost_shortfall=allocation.shortfall,
            ))

            after = _on_hand(product_id)
            append_inventory_log(
                db.session,
                product_id=product_id,
                transaction_type=InventoryLog.TYPE_SALES,
                reference_type=InventoryLog.REF_SALE,
                reference_id=sale.id,
                quantity=qty,
                quantity_before=after + qty,
                quantity_after=after,
                cost_cents=allocation.unit_cost_cents,
                user_id=user_id,
                notes=f"Sale {sale.invoice_number}",
            )
            subtotal += total_sold
            cogs += allocation.total_cost_cents

        sale.subtotal_cents = subtotal
        sale.total_cents = subtotal + delivery + other
        sale.cogs_cents = cogs
        sale.profit_cents = sale.total_cents - cogs

        db.session.commit()
        current_app.logger.info(
            "Sale %s: %d items, total %d cents, COGS %d cents",
            sale.invoice_number, len(lines), sale.total_cents, cogs,
        )
        return sale

    with product_locks(*(line["product_id"] for line in lines)):
        return run_with_retry(_op)


def get_sale(sale_id: int) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise SaleError("Sale not found")
    return sale


def cancel_sale(sale_id: int, reason: str = "", user_id: int | None = None) -> Sale:
    """
    Cancel a completed sale and put its stock back into the batches.

    Sales with returns (other than rejected ones) cannot be cancelled.
    """
    sale = get_sale(sale_id)
    product_ids = [item.product_id for item in sale.items]

    def _op():
        locked = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if locked is None:
            raise SaleError("Sale not found")
        if locked.status == Sale.STATUS_CANCELLED:
            raise SaleError("Sale is already cancelled")

        open_returns = (
            db.session.query(SaleReturn)
            .filter(SaleReturn.sale_id == locked.id, SaleReturn.status != SaleReturn.STATUS_REJECTED)
            .count()
        )
        if open_returns:
            raise SaleError(
                "Cannot cancel a sale with returns",
                details={"sale_id": locked.id, "returns": open_returns},
            )

        for item in locked.items:
            reversal = reverse(db.session, item.product_id, item.quantity)
            after = _on_hand(item.product_id)
            append_inventory_log(
                db.session,
                product_id=item.product_id,
                transaction_type=InventoryLog.TYPE_RETURN,
                reference_type=InventoryLog.REF_SALE_CANCEL,
                reference_id=locked.id,
                quantity=item.quantity,
                quantity_before=after - item.quantity,
                quantity_after=after,
                cost_cents=item.unit_cost_cents,
                user_id=user_id,
                notes=(
                    f"Cancel {locked.invoice_number}"
                    + (f" ({reversal.unrestored} unrestored)" if reversal.degraded else "")
                ),
            )

        locked.status = Sale.STATUS_CANCELLED
        locked.cancelled_at = utcnow()
        locked.cancelled_by_user_id = user_id
        if reason:
            locked.remarks = f"{locked.remarks}\nCancelled: {reason}" if locked.remarks else f"Cancelled: {reason}"

        db.session.commit()
        current_app.logger.info("Sale %s cancelled", locked.invoice_number)
        return locked

    with product_locks(*product_ids):
        return run_with_retry(_op)
