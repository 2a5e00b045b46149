# Overview: Append-only inventory movement log.

from __future__ import annotations

from ..models import InventoryLog


def append_inventory_log(
    session,
    *,
    product_id: int,
    transaction_type: str,
    reference_type: str,
    quantity: int,
    quantity_before: int,
    quantity_after: int,
    reference_id: int | None = None,
    cost_cents: int | None = None,
    user_id: int | None = None,
    notes: str | None = None,
) -> InventoryLog:
    """
    Append a movement row.

    NOTE: Does not commit. Caller must commit within the same transaction as
    the movement being recorded.
    """
    entry = InventoryLog(
        product_id=product_id,
        transaction_type=transaction_type,
        reference_type=reference_type,
        reference_id=reference_id,
        quantity=quantity,
        quantity_before=quantity_before,
        quantity_after=quantity_after,
        cost_cents=cost_cents,
        user_id=user_id,
        notes=(notes[:255] if notes else None),
    )
    session.add(entry)
    session.flush()
    return entry
