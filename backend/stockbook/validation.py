from __future__ import annotations

from typing import Any

from stockbook.time_utils import coerce_datetime


# Maximum price: 9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_PRICE_CENTS = 999_999_999

PRICE_TIER_REGULAR = "regular"
PRICE_TIER_WHOLESALE = "wholesale"
PRICE_TIER_WALK_IN = "walk_in"
PRICE_TIERS = (PRICE_TIER_REGULAR, PRICE_TIER_WHOLESALE, PRICE_TIER_WALK_IN)


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., pricing a non-valued customer)."""


class NotFoundError(LookupError):
    """404-level missing entity (product, bracket, customer, ...)."""


def coerce_int(value: Any, field: str) -> int:
    """
    Strict integer coercion for payload values.

    Rejects floats, booleans, decimals-in-strings and scientific notation.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def coerce_price_cents(value: Any, field: str = "price_cents") -> int:
    if value is None:
        raise ValidationError(f"{field} is required")
    price = coerce_int(value, field)
    if price < 0:
        raise ValidationError(f"{field} must be >= 0")
    if price > MAX_PRICE_CENTS:
        raise ValidationError(f"{field} cannot exceed {MAX_PRICE_CENTS}")
    return price


def require_positive_quantity(value: Any, field: str = "quantity") -> int:
    qty = coerce_int(value, field)
    if qty <= 0:
        raise ValidationError(f"{field} must be > 0")
    return qty


def validate_price_tier(value: Any) -> str:
    if value not in PRICE_TIERS:
        raise ValidationError(f"price_tier must be one of: {', '.join(PRICE_TIERS)}")
    return value


def validate_quantity_range(data: dict) -> tuple[int, int | None]:
    """
    Validate a [min_quantity, max_quantity] pair.

    max_quantity may be omitted or null (unbounded). When present it must be
    strictly greater than min_quantity.
    """
    if data.get("min_quantity") is None:
        raise ValidationError("min_quantity is required")
    min_qty = coerce_int(data["min_quantity"], "min_quantity")
    if min_qty < 1:
        raise ValidationError("min_quantity must be at least 1")

    max_qty = data.get("max_quantity")
    if max_qty is not None and max_qty != "":
        max_qty = coerce_int(max_qty, "max_quantity")
        if max_qty <= min_qty:
            raise ValidationError("max_quantity must be greater than min_quantity")
    else:
        max_qty = None

    return min_qty, max_qty


def range_label(min_quantity: int, max_quantity: int | None) -> str:
    if max_quantity is None:
        return f"({min_quantity}+)"
    return f"({min_quantity}-{max_quantity})"


def clean_tier_payload(data: dict) -> dict:
    """Validate and normalize one bracket tier payload."""
    if not isinstance(data, dict):
        raise ValidationError("tier must be an object")
    min_qty, max_qty = validate_quantity_range(data)
    price = coerce_price_cents(data.get("price_cents"))
    tier = validate_price_tier(data.get("price_tier"))

    label = data.get("label")
    label = str(label).strip() if label else range_label(min_qty, max_qty)

    return {
        "min_quantity": min_qty,
        "max_quantity": max_qty,
        "price_cents": price,
        "price_tier": tier,
        "is_active": bool(data.get("is_active", True)),
        "label": label[:64],
    }


def clean_override_payload(data: dict) -> dict:
    """Validate and normalize one customer custom price payload."""
    if not isinstance(data, dict):
        raise ValidationError("custom price must be an object")
    if data.get("product_id") is None:
        raise ValidationError("Missing required field: product_id")
    product_id = coerce_int(data["product_id"], "product_id")
    min_qty, max_qty = validate_quantity_range(data)
    price = coerce_price_cents(data.get("price_cents"))

    try:
        effective_from = coerce_datetime(data.get("effective_from"), field="effective_from")
        effective_to = coerce_datetime(data.get("effective_to"), field="effective_to")
    except ValueError as exc:
        raise ValidationError(str(exc))
    if effective_from and effective_to and effective_to < effective_from:
        raise ValidationError("effective_to must not be before effective_from")

    label = data.get("label")
    return {
        "product_id": product_id,
        "min_quantity": min_qty,
        "max_quantity": max_qty,
        "price_cents": price,
        "label": (str(label).strip() if label else range_label(min_qty, max_qty))[:64],
        "effective_from": effective_from,
        "effective_to": effective_to,
        "notes": data.get("notes"),
    }


def clean_effective_window(data: dict, *, partial: bool) -> dict:
    """Validate effective_from/effective_to on a bracket payload."""
    patch: dict = {}
    try:
        if "effective_from" in data or not partial:
            patch["effective_from"] = coerce_datetime(data.get("effective_from"), field="effective_from")
        if "effective_to" in data:
            patch["effective_to"] = coerce_datetime(data.get("effective_to"), field="effective_to")
    except ValueError as exc:
        raise ValidationError(str(exc))

    start = patch.get("effective_from")
    end = patch.get("effective_to")
    if start and end and end < start:
        raise ValidationError("effective_to must not be before effective_from")
    return patch
