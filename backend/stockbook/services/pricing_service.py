# Overview: Price resolution (customer override -> quantity bracket -> flat price).

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy import or_

from ..models import BracketTier, Customer, CustomerPriceOverride, PriceBracket, Product, ProductPrice
from ..validation import NotFoundError, ValidationError, coerce_int, validate_price_tier
from stockbook.time_utils import coerce_datetime, utcnow


SOURCE_OVERRIDE = "override"
SOURCE_BRACKET = "bracket"
SOURCE_FLAT = "flat"
SOURCE_NONE = "none"


class PricingError(Exception):
    """Raised when a price is required but none resolves."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


@dataclass(frozen=True)
class PriceQuote:
    """
    Resolved unit price for (product, quantity, price tier, customer).

    price_cents is None with source "none" when nothing matched; callers must
    check is_set rather than treating the absence as zero.
    """
    product_id: int
    quantity: int
    price_tier: str
    price_cents: int | None
    source: str
    customer_id: int | None = None
    bracket_id: int | None = None
    reference_id: int | None = None

    @property
    def is_set(self) -> bool:
        return self.price_cents is not None

    @property
    def unit_price(self) -> Decimal | None:
        if self.price_cents is None:
            return None
        return Decimal(self.price_cents) / Decimal(100)

    @property
    def total_cents(self) -> int | None:
        if self.price_cents is None:
            return None
        return self.price_cents * self.quantity

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "quantity": self.quantity,
            "price_tier": self.price_tier,
            "customer_id": self.customer_id,
            "price_cents": self.price_cents,
            "total_cents": self.total_cents,
            "source": self.source,
            "bracket_id": self.bracket_id,
            "reference_id": self.reference_id,
        }


def require_price(quote: PriceQuote) -> int:
    if not quote.is_set:
        raise PricingError(
            "Product has no price",
            details={
                "product_id": quote.product_id,
                "quantity": quote.quantity,
                "price_tier": quote.price_tier,
            },
        )
    return quote.price_cents


def _as_of(value) -> datetime:
    try:
        return coerce_datetime(value, field="as_of") or utcnow()
    except ValueError as exc:
        raise ValidationError(str(exc))


def _effective_filter(model, as_of: datetime):
    return [
        model.effective_from <= as_of,
        or_(model.effective_to.is_(None), model.effective_to >= as_of),
    ]


def get_active_bracket(session, product_id: int, as_of=None) -> PriceBracket | None:
    """Selected bracket effective at as_of; latest effective_from wins if several."""
    as_of = _as_of(as_of)
    return (
        session.query(PriceBracket)
        .filter(
            PriceBracket.product_id == product_id,
            PriceBracket.is_selected.is_(True),
            *_effective_filter(PriceBracket, as_of),
        )
        .order_by(PriceBracket.effective_from.desc(), PriceBracket.id.desc())
        .first()
    )


def get_flat_price(session, product_id: int, as_of=None) -> ProductPrice | None:
    as_of = _as_of(as_of)
    return (
        session.query(ProductPrice)
        .filter(
            ProductPrice.product_id == product_id,
            ProductPrice.is_active.is_(True),
            *_effective_filter(ProductPrice, as_of),
        )
        .order_by(ProductPrice.effective_from.desc(), ProductPrice.id.desc())
        .first()
    )


def _find_override(session, customer_id: int, product_id: int, quantity: int, as_of: datetime):
    customer = session.get(Customer, customer_id)
    if customer is None or not customer.is_valued_customer:
        return None
    # Most specific range from below, then newest window, then newest row.
    return (
        session.query(CustomerPriceOverride)
        .filter(
            CustomerPriceOverride.customer_id == customer_id,
            CustomerPriceOverride.product_id == product_id,
            CustomerPriceOverride.is_active.is_(True),
            CustomerPriceOverride.covering(quantity),
            *_effective_filter(CustomerPriceOverride, as_of),
        )
        .order_by(
            CustomerPriceOverride.min_quantity.desc(),
            CustomerPriceOverride.effective_from.desc(),
            CustomerPriceOverride.id.desc(),
        )
        .first()
    )


def _find_bracket_tier(session, bracket: PriceBracket, quantity: int, price_tier: str):
    return (
        session.query(BracketTier)
        .filter(
            BracketTier.bracket_id == bracket.id,
            BracketTier.is_active.is_(True),
            BracketTier.price_tier == price_tier,
            BracketTier.covering(quantity),
        )
        .order_by(BracketTier.price_cents.asc(), BracketTier.id.asc())
        .first()
    )


def resolve_price(
    session,
    product_id: int,
    quantity: int,
    price_tier: str,
    customer_id: int | None = None,
    as_of=None,
) -> PriceQuote:
    """
    Resolve the unit price for a sale line.

    Precedence:
    1. Active, effective override of a valued customer covering quantity
    2. Lowest active tier of the selected bracket covering quantity, when the
       product uses bracket pricing
    3. Flat price for price_tier
    4. No price (source "none")

    Raises:
        ValidationError: quantity < 1 or unknown price tier
        NotFoundError: product does not exist
    """
    quantity = coerce_int(quantity, "quantity")
    if quantity < 1:
        raise ValidationError("quantity must be at least 1")
    price_tier = validate_price_tier(price_tier)
    as_of = _as_of(as_of)

    product = session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found")

    base = {
        "product_id": product_id,
        "quantity": quantity,
        "price_tier": price_tier,
        "customer_id": customer_id,
    }

    if customer_id is not None:
        override = _find_override(session, customer_id, product_id, quantity, as_of)
        if override is not None:
            return PriceQuote(
                price_cents=override.price_cents,
                source=SOURCE_OVERRIDE,
                reference_id=override.id,
                **base,
            )

    if product.use_bracket_pricing:
        bracket = get_active_bracket(session, product_id, as_of)
        if bracket is not None:
            tier = _find_bracket_tier(session, bracket, quantity, price_tier)
            if tier is not None:
                return PriceQuote(
                    price_cents=tier.price_cents,
                    source=SOURCE_BRACKET,
                    bracket_id=bracket.id,
                    reference_id=tier.id,
                    **base,
                )

    flat = get_flat_price(session, product_id, as_of)
    if flat is not None:
        price = flat.price_for_tier(price_tier)
        if price is not None:
            return PriceQuote(price_cents=price, source=SOURCE_FLAT, reference_id=flat.id, **base)

    current_app.logger.debug(
        "No price for product %s qty %d tier %s", product_id, quantity, price_tier
    )
    return PriceQuote(price_cents=None, source=SOURCE_NONE, **base)


def pricing_breakdown(session, product_id: int, price_tier: str, quantities=None) -> dict:
    """
    Price ladder for a product: unit price, total and savings against the
    single-unit price at each quantity.
    """
    if quantities is None:
        quantities = current_app.config.get("PRICE_BREAKDOWN_QUANTITIES", [1, 5, 10, 25, 50, 100])
    quantities = sorted({coerce_int(q, "quantity") for q in quantities})
    if not quantities or quantities[0] < 1:
        raise ValidationError("quantities must be positive integers")

    product = session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found")

    base_quote = resolve_price(session, product_id, 1, price_tier)
    bracket = get_active_bracket(session, product_id)

    rows = []
    for qty in quantities:
        quote = resolve_price(session, product_id, qty, price_tier)
        unit_savings = None
        total_savings = None
        if quote.is_set and base_quote.is_set:
            unit_savings = base_quote.price_cents - quote.price_cents
            total_savings = unit_savings * qty
        rows.append({
            "quantity": qty,
            "price_cents": quote.price_cents,
            "total_cents": quote.total_cents,
            "source": quote.source,
            "unit_savings_cents": unit_savings,
            "total_savings_cents": total_savings,
        })

    return {
        "product_id": product_id,
        "price_tier": price_tier,
        "use_bracket_pricing": product.use_bracket_pricing,
        "active_bracket_id": bracket.id if bracket is not None else None,
        "base_price_cents": base_quote.price_cents,
        "breakdown": rows,
    }
