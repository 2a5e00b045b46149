import pytest

from stockbook.models import InventoryLog, InventoryRecord, PurchaseBatch, Sale
from stockbook.services import bracket_service, custom_pricing_service
from stockbook.services.sales_service import SaleError, cancel_sale, create_sale
from stockbook.validation import ValidationError


def _on_hand(db_session, product_id):
    return db_session.query(InventoryRecord).filter_by(product_id=product_id).one().quantity


def test_sale_uses_fifo_cost_and_resolved_price(db_session, product, add_batch, flat_price):
    add_batch(product.id, 100, 500)
    add_batch(product.id, 50, 600)
    flat_price(product.id, 800)

    sale = create_sale([{"product_id": product.id, "quantity": 120}], user_id=9)

    assert sale.invoice_number == "INV-000001"
    assert sale.status == Sale.STATUS_COMPLETED
    item = sale.items[0]
    assert item.price_source == "flat"
    assert item.sold_price_cents == 800
    assert item.total_cost_cents == 62000
    assert item.unit_cost_cents == 517
    assert item.cost_degraded is False
    assert sale.total_cents == 96000
    assert sale.cogs_cents == 62000
    assert sale.profit_cents == 34000
    assert _on_hand(db_session, product.id) == 30

    log = db_session.query(InventoryLog).filter_by(transaction_type=InventoryLog.TYPE_SALES).one()
    assert log.reference_id == sale.id
    assert (log.quantity_before, log.quantity_after) == (150, 30)


def test_invoice_numbers_increase(db_session, product, add_batch, flat_price):
    add_batch(product.id, 10, 100)
    flat_price(product.id, 200)

    first = create_sale([{"product_id": product.id, "quantity": 1}])
    second = create_sale([{"product_id": product.id, "quantity": 1}])

    assert first.invoice_number == "INV-000001"
    assert second.invoice_number == "INV-000002"


def test_discount_and_charges(db_session, product, add_batch, flat_price):
    add_batch(product.id, 10, 100)
    flat_price(product.id, 1000)

    sale = create_sale(
        [{"product_id": product.id, "quantity": 3, "discount_bps": 1000}],
        delivery_fee_cents=500,
        other_charges_cents=250,
    )

    assert sale.subtotal_cents == 2700
    assert sale.total_cents == 3450
    assert sale.profit_cents == 3450 - 300


def test_bracket_and_override_prices(db_session, product, add_batch, flat_price, valued_customer):
    add_batch(product.id, 100, 100)
    flat_price(product.id, 1000)
    bracket_service.create_bracket(product.id, {
        "is_selected": True,
        "tiers": [{"min_quantity": 10, "price_cents": 900, "price_tier": "regular"}],
    })
    custom_pricing_service.set_custom_prices(valued_customer.id, [
        {"product_id": product.id, "min_quantity": 20, "price_cents": 750},
    ])

    sale = create_sale(
        [
            {"product_id": product.id, "quantity": 5},
            {"product_id": product.id, "quantity": 12},
            {"product_id": product.id, "quantity": 20},
        ],
        customer_id=valued_customer.id,
    )

    assert [(i.price_source, i.sold_price_cents) for i in sale.items] == [
        ("flat", 1000), ("bracket", 900), ("override", 750),
    ]


def test_manual_price_skips_resolution(db_session, product, add_batch):
    add_batch(product.id, 5, 100)
    sale = create_sale([{"product_id": product.id, "quantity": 1, "sold_price_cents": 333}])
    assert sale.items[0].price_source == "manual"
    assert sale.total_cents == 333


def test_no_price_fails_without_side_effects(db_session, product, add_batch):
    add_batch(product.id, 5, 100)

    with pytest.raises(SaleError, match="no price"):
        create_sale([{"product_id": product.id, "quantity": 1}])

    assert db_session.query(Sale).count() == 0
    assert _on_hand(db_session, product.id) == 5


def test_insufficient_stock_rolls_back_whole_sale(db_session, make_product, add_batch, flat_price):
    a = make_product()
    b = make_product()
    add_batch(a.id, 10, 100)
    add_batch(b.id, 1, 100)
    flat_price(a.id, 200)
    flat_price(b.id, 200)

    with pytest.raises(SaleError) as exc_info:
        create_sale([
            {"product_id": a.id, "quantity": 4},
            {"product_id": b.id, "quantity": 2},
        ])

    assert exc_info.value.details["product_id"] == b.id
    assert _on_hand(db_session, a.id) == 10
    assert db_session.query(PurchaseBatch).filter_by(product_id=a.id).one().consumed_quantity == 0
    assert db_session.query(Sale).count() == 0


def test_degraded_cost_is_recorded(db_session, product, add_batch, set_inventory, flat_price):
    add_batch(product.id, 2, 100)
    set_inventory(product.id, 5)
    flat_price(product.id, 300)

    sale = create_sale([{"product_id": product.id, "quantity": 5}])

    item = sale.items[0]
    assert item.cost_degraded is True
    assert item.cost_shortfall == 3
    assert sale.has_cost_drift


def test_invalid_items(db_session, product):
    with pytest.raises(ValidationError):
        create_sale([])
    with pytest.raises(ValidationError):
        create_sale([{"product_id": product.id, "quantity": 0}])
    with pytest.raises(ValidationError):
        create_sale([{"product_id": product.id, "quantity": 1, "discount_bps": 20000}])
    with pytest.raises(ValidationError):
        create_sale([{"product_id": product.id, "quantity": 1}], price_tier="vip")


def test_cancel_restores_batches(db_session, product, add_batch, flat_price):
    a = add_batch(product.id, 100, 500)
    b = add_batch(product.id, 50, 600)
    flat_price(product.id, 800)
    sale = create_sale([{"product_id": product.id, "quantity": 120}])

    cancelled = cancel_sale(sale.id, reason="Customer changed mind", user_id=1)

    assert cancelled.status == Sale.STATUS_CANCELLED
    assert cancelled.cancelled_at is not None
    assert "Customer changed mind" in cancelled.remarks
    assert db_session.get(PurchaseBatch, a.id).consumed_quantity == 0
    assert db_session.get(PurchaseBatch, b.id).consumed_quantity == 0
    assert _on_hand(db_session, product.id) == 150
    log = db_session.query(InventoryLog).filter_by(reference_type=InventoryLog.REF_SALE_CANCEL).one()
    assert (log.quantity_before, log.quantity_after) == (30, 150)

    with pytest.raises(SaleError, match="already cancelled"):
        cancel_sale(sale.id)


def test_cancel_unknown_sale(db_session):
    with pytest.raises(SaleError):
        cancel_sale(123456)
