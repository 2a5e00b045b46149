# Overview: Bracket pricing administration; every write is one transaction.

from __future__ import annotations

import csv
import io
from decimal import Decimal, ROUND_HALF_UP

from flask import current_app

from ..extensions import db
from ..models import BracketTier, PriceBracket, Product, PurchaseBatch
from ..validation import (
    ConflictError,
    NotFoundError,
    ValidationError,
    clean_effective_window,
    clean_tier_payload,
    coerce_int,
)
from stockbook.time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry
from .fifo_service import latest_unit_cost_cents


CSV_COLUMNS = ("min_quantity", "max_quantity", "price_cents", "price_tier", "is_active", "label")
TRUTHY = {"1", "true", "yes", "y"}


class BracketImportError(ValidationError):
    """CSV import rejected; `errors` lists one message per bad row."""
    def __init__(self, errors: list[str]):
        super().__init__("Import failed with errors: " + "; ".join(errors))
        self.errors = errors


# =============================================================================
# Helpers
# =============================================================================

def _get_product(product_id: int, *, lock: bool = False) -> Product:
    query = db.session.query(Product).filter_by(id=product_id)
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if product is None:
        raise NotFoundError("Product not found")
    return product


def _get_bracket(bracket_id: int) -> PriceBracket:
    bracket = lock_for_update(db.session.query(PriceBracket).filter_by(id=bracket_id)).first()
    if bracket is None:
        raise NotFoundError("Bracket not found")
    return bracket


def _clean_tiers(tiers) -> list[dict]:
    if not isinstance(tiers, list) or not tiers:
        raise ValidationError("tiers must be a non-empty list")
    cleaned = []
    for index, raw in enumerate(tiers):
        try:
            tier = clean_tier_payload(raw)
        except ValidationError as exc:
            raise ValidationError(f"tiers[{index}]: {exc}")
        if raw.get("id") is not None:
            tier["id"] = coerce_int(raw["id"], f"tiers[{index}].id")
        cleaned.append(tier)
    return cleaned


def _select(product: Product, bracket: PriceBracket | None) -> None:
    """
    Deselect every bracket of the product, then select `bracket` (or none).

    Runs on the ORM objects inside the caller's transaction so version
    counters move and no intermediate state with two selected brackets is
    ever flushed.
    """
    brackets = lock_for_update(
        db.session.query(PriceBracket).filter_by(product_id=product.id)
    ).all()
    for other in brackets:
        wanted = bracket is not None and other.id == bracket.id
        if other.is_selected != wanted:
            other.is_selected = wanted
    product.use_bracket_pricing = bracket is not None
    db.session.flush()


def _add_tiers(bracket: PriceBracket, tiers: list[dict]) -> None:
    for tier in tiers:
        tier.pop("id", None)
        bracket.tiers.append(BracketTier(**tier))


# =============================================================================
# Queries
# =============================================================================

def list_brackets(product_id: int) -> list[PriceBracket]:
    _get_product(product_id)
    return (
        db.session.query(PriceBracket)
        .filter_by(product_id=product_id)
        .order_by(PriceBracket.effective_from.desc(), PriceBracket.id.desc())
        .all()
    )


def get_bracket(bracket_id: int) -> PriceBracket:
    bracket = db.session.get(PriceBracket, bracket_id)
    if bracket is None:
        raise NotFoundError("Bracket not found")
    return bracket


# =============================================================================
# Writes
# =============================================================================

def create_bracket(product_id: int, data: dict, user_id: int | None = None) -> PriceBracket:
    """
    Create a bracket with its tiers.

    Args:
        product_id: Owning product
        data: {"tiers": [...], "effective_from"?, "effective_to"?, "is_selected"?}
        user_id: Creator

    Returns:
        Persisted PriceBracket; selected (and bracket pricing enabled) when
        data["is_selected"] is true.
    """
    def _op():
        product = _get_product(product_id, lock=True)
        window = clean_effective_window(data, partial=False)
        tiers = _clean_tiers(data.get("tiers"))

        bracket = PriceBracket(
            product_id=product.id,
            is_selected=False,
            effective_from=window.get("effective_from") or utcnow(),
            effective_to=window.get("effective_to"),
            created_by_user_id=user_id,
        )
        db.session.add(bracket)
        _add_tiers(bracket, tiers)
        db.session.flush()

        if data.get("is_selected"):
            _select(product, bracket)

        db.session.commit()
        current_app.logger.info(
            "Created bracket %s for product %s with %d tiers",
            bracket.id, product.id, len(tiers),
        )
        return bracket

    return run_with_retry(_op)


def update_bracket(bracket_id: int, data: dict) -> PriceBracket:
    """
    Update a bracket's window, selection and tiers.

    When "tiers" is present it is the complete new tier list: entries with an
    id update that tier, entries without one are created, and existing tiers
    missing from the list are deleted.
    """
    def _op():
        bracket = _get_bracket(bracket_id)
        for key, value in clean_effective_window(data, partial=True).items():
            if key == "effective_from" and value is None:
                continue
            setattr(bracket, key, value)
        if bracket.effective_to and bracket.effective_to < bracket.effective_from:
            raise ValidationError("effective_to must not be before effective_from")

        if "tiers" in data:
            tiers = _clean_tiers(data["tiers"])
            existing = {t.id: t for t in bracket.tiers}
            keep_ids = set()
            for tier in tiers:
                tier_id = tier.pop("id", None)
                if tier_id is None:
                    bracket.tiers.append(BracketTier(**tier))
                    continue
                row = existing.get(tier_id)
                if row is None:
                    raise ValidationError(f"Tier {tier_id} does not belong to bracket {bracket.id}")
                for key, value in tier.items():
                    setattr(row, key, value)
                keep_ids.add(tier_id)
            for tier_id, row in existing.items():
                if tier_id not in keep_ids:
                    bracket.tiers.remove(row)

        if "is_selected" in data:
            product = _get_product(bracket.product_id, lock=True)
            if data["is_selected"]:
                _select(product, bracket)
            elif bracket.is_selected:
                _select(product, None)

        db.session.flush()
        db.session.commit()
        return bracket

    return run_with_retry(_op)


def clone_bracket(bracket_id: int, data: dict | None = None, user_id: int | None = None) -> PriceBracket:
    """Copy a bracket and its tiers into a new, by default unselected, bracket."""
    data = data or {}

    def _op():
        source = _get_bracket(bracket_id)
        product = _get_product(source.product_id, lock=True)
        window = clean_effective_window(data, partial=False)

        clone = PriceBracket(
            product_id=product.id,
            is_selected=False,
            effective_from=window.get("effective_from") or utcnow(),
            effective_to=window.get("effective_to"),
            created_by_user_id=user_id,
        )
        db.session.add(clone)
        for tier in source.tiers:
            clone.tiers.append(BracketTier(
                min_quantity=tier.min_quantity,
                max_quantity=tier.max_quantity,
                price_cents=tier.price_cents,
                price_tier=tier.price_tier,
                is_active=tier.is_active,
                label=tier.label,
            ))
        db.session.flush()

        if data.get("is_selected"):
            _select(product, clone)

        db.session.commit()
        return clone

    return run_with_retry(_op)


def activate_bracket(bracket_id: int) -> PriceBracket:
    """Make this the product's only selected bracket and turn bracket pricing on."""
    def _op():
        bracket = _get_bracket(bracket_id)
        product = _get_product(bracket.product_id, lock=True)
        _select(product, bracket)
        db.session.commit()
        current_app.logger.info("Activated bracket %s for product %s", bracket.id, product.id)
        return bracket

    return run_with_retry(_op)


def deactivate_bracket_pricing(product_id: int) -> Product:
    """Deselect every bracket of the product and fall back to flat pricing."""
    def _op():
        product = _get_product(product_id, lock=True)
        _select(product, None)
        db.session.commit()
        current_app.logger.info("Bracket pricing disabled for product %s", product.id)
        return product

    return run_with_retry(_op)


def delete_bracket(bracket_id: int) -> bool:
    """
    Delete a bracket and its tiers.

    Returns:
        True when the deleted bracket was selected and bracket pricing was
        therefore switched off for the product.
    """
    def _op():
        bracket = _get_bracket(bracket_id)
        product = _get_product(bracket.product_id, lock=True)
        was_selected = bracket.is_selected

        db.session.delete(bracket)
        db.session.flush()
        if was_selected:
            _select(product, None)

        db.session.commit()
        return was_selected

    return run_with_retry(_op)


def _parse_csv_rows(csv_text: str) -> list[dict]:
    reader = csv.DictReader(io.StringIO(csv_text.strip()))
    if reader.fieldnames is None:
        raise ValidationError("CSV is empty")
    missing = {"min_quantity", "price_cents", "price_tier"} - {f.strip() for f in reader.fieldnames}
    if missing:
        raise ValidationError(f"CSV is missing columns: {', '.join(sorted(missing))}")

    rows = []
    for raw in reader:
        row = {(k or "").strip(): (v or "").strip() for k, v in raw.items() if k}
        row = {k: v for k, v in row.items() if k in CSV_COLUMNS}
        if row.get("is_active", "") != "":
            row["is_active"] = row["is_active"].lower() in TRUTHY
        else:
            row.pop("is_active", None)
        rows.append(row)
    return rows


def import_brackets_from_csv(product_id: int, csv_text: str, user_id: int | None = None) -> PriceBracket:
    """
    Create one new, unselected bracket from CSV text.

    Columns: min_quantity, max_quantity, price_cents, price_tier and the
    optional is_active and label. Every row is validated before anything is
    written; a single bad row rejects the whole import.

    Raises:
        BracketImportError: one or more rows are invalid
    """
    def _op():
        product = _get_product(product_id, lock=True)
        rows = _parse_csv_rows(csv_text)
        if not rows:
            raise ValidationError("CSV has no data rows")

        tiers = []
        errors = []
        for index, row in enumerate(rows, start=1):
            try:
                tiers.append(clean_tier_payload(row))
            except ValidationError as exc:
                errors.append(f"Row {index}: {exc}")
        if errors:
            raise BracketImportError(errors)

        bracket = PriceBracket(
            product_id=product.id,
            is_selected=False,
            effective_from=utcnow(),
            created_by_user_id=user_id,
        )
        db.session.add(bracket)
        _add_tiers(bracket, tiers)
        db.session.flush()
        db.session.commit()
        current_app.logger.info(
            "Imported bracket %s for product %s (%d tiers)", bracket.id, product.id, len(tiers)
        )
        return bracket

    return run_with_retry(_op)


def suggest_pricing(
    product_id: int,
    target_margin: float = 0.3,
    quantities=(1, 10, 25, 50),
) -> dict:
    """
    Margin-based tier suggestions from the latest batch cost.

    The margin shrinks by 2% of the target per tier and never drops below 10%.
    Each suggestion covers [quantity, next quantity - 1]; the last is open.
    """
    margin = Decimal(str(target_margin))
    if margin <= 0 or margin >= 1:
        raise ValidationError("target_margin must be between 0 and 1")
    quantities = sorted({coerce_int(q, "quantity") for q in quantities})
    if not quantities or quantities[0] < 1:
        raise ValidationError("quantities must be positive integers")

    _get_product(product_id)
    has_batch = db.session.query(PurchaseBatch.id).filter_by(product_id=product_id).first()
    if has_batch is None:
        raise ConflictError("No cost information available for this product")
    cost = latest_unit_cost_cents(db.session, product_id)

    suggestions = []
    for index, qty in enumerate(quantities):
        adjusted = max(margin * (1 - Decimal("0.02") * index), Decimal("0.1"))
        price = (Decimal(cost) / (1 - adjusted)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        suggestions.append({
            "min_quantity": qty,
            "max_quantity": quantities[index + 1] - 1 if index + 1 < len(quantities) else None,
            "suggested_price_cents": int(price),
            "margin_percentage": float((adjusted * 100).quantize(Decimal("0.1"))),
            "profit_per_unit_cents": int(price) - cost,
        })

    return {
        "product_id": product_id,
        "cost_price_cents": cost,
        "target_margin": float(margin),
        "suggestions": suggestions,
    }
