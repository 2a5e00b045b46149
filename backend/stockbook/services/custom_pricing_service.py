# Overview: Valued-customer status and customer-specific price overrides.

from __future__ import annotations

from sqlalchemy import or_

from ..extensions import db
from ..models import Customer, CustomerPriceOverride, Product
from ..validation import ConflictError, NotFoundError, ValidationError, clean_override_payload
from stockbook.time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry


def _get_customer(customer_id: int, *, lock: bool = False) -> Customer:
    query = db.session.query(Customer).filter_by(id=customer_id)
    if lock:
        query = lock_for_update(query)
    customer = query.first()
    if customer is None:
        raise NotFoundError("Customer not found")
    return customer


def _overlapping(customer_id: int, product_id: int, min_qty: int, max_qty: int | None):
    """Active overrides of customer+product whose range intersects [min_qty, max_qty]."""
    query = db.session.query(CustomerPriceOverride).filter(
        CustomerPriceOverride.customer_id == customer_id,
        CustomerPriceOverride.product_id == product_id,
        CustomerPriceOverride.is_active.is_(True),
        or_(
            CustomerPriceOverride.max_quantity.is_(None),
            CustomerPriceOverride.max_quantity >= min_qty,
        ),
    )
    if max_qty is not None:
        query = query.filter(CustomerPriceOverride.min_quantity <= max_qty)
    return query.all()


def mark_valued_customer(customer_id: int, notes: str | None = None) -> Customer:
    def _op():
        customer = _get_customer(customer_id, lock=True)
        if not customer.is_valued_customer:
            customer.is_valued_customer = True
            customer.valued_since = utcnow()
        if notes is not None:
            customer.valued_customer_notes = notes
        db.session.commit()
        return customer

    return run_with_retry(_op)


def remove_valued_customer(customer_id: int) -> int:
    """
    Drop valued status and deactivate every override of the customer.

    Returns:
        Number of overrides deactivated
    """
    def _op():
        customer = _get_customer(customer_id, lock=True)
        overrides = (
            db.session.query(CustomerPriceOverride)
            .filter_by(customer_id=customer.id, is_active=True)
            .all()
        )
        for override in overrides:
            override.is_active = False

        customer.is_valued_customer = False
        customer.valued_since = None
        db.session.commit()
        return len(overrides)

    return run_with_retry(_op)


def set_custom_prices(customer_id: int, prices: list[dict], user_id: int | None = None) -> list[CustomerPriceOverride]:
    """
    Write custom prices for a valued customer.

    Each entry: product_id, min_quantity, max_quantity?, price_cents, label?,
    effective_from?, effective_to?, notes?. Active overrides for the same
    product whose range overlaps the new one are deactivated first, so at
    most one active override covers any quantity after each write.

    Raises:
        ConflictError: customer is not a valued customer
        ValidationError: an entry is invalid (nothing is written)
        NotFoundError: customer or product does not exist
    """
    def _op():
        customer = _get_customer(customer_id, lock=True)
        if not customer.is_valued_customer:
            raise ConflictError("Customer must be marked as valued customer first")
        if not isinstance(prices, list) or not prices:
            raise ValidationError("prices must be a non-empty list")

        created = []
        for index, raw in enumerate(prices):
            try:
                entry = clean_override_payload(raw)
            except ValidationError as exc:
                raise ValidationError(f"prices[{index}]: {exc}")
            if db.session.get(Product, entry["product_id"]) is None:
                raise NotFoundError(f"Product {entry['product_id']} not found")

            for existing in _overlapping(
                customer.id, entry["product_id"], entry["min_quantity"], entry["max_quantity"]
            ):
                existing.is_active = False
            db.session.flush()

            override = CustomerPriceOverride(
                customer_id=customer.id,
                product_id=entry["product_id"],
                min_quantity=entry["min_quantity"],
                max_quantity=entry["max_quantity"],
                price_cents=entry["price_cents"],
                label=entry["label"],
                is_active=True,
                effective_from=entry["effective_from"] or utcnow(),
                effective_to=entry["effective_to"],
                notes=entry["notes"],
                created_by_user_id=user_id,
            )
            db.session.add(override)
            db.session.flush()
            created.append(override)

        db.session.commit()
        return created

    return run_with_retry(_op)


def get_custom_prices(customer_id: int, product_id: int) -> list[CustomerPriceOverride]:
    """Active overrides for customer+product by min_quantity; empty unless valued."""
    customer = _get_customer(customer_id)
    if not customer.is_valued_customer:
        return []
    return (
        db.session.query(CustomerPriceOverride)
        .filter_by(customer_id=customer.id, product_id=product_id, is_active=True)
        .order_by(CustomerPriceOverride.min_quantity.asc(), CustomerPriceOverride.id.asc())
        .all()
    )
