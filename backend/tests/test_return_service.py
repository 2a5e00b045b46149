import pytest

from stockbook.models import InventoryLog, InventoryRecord, PurchaseBatch, Sale, SaleItem, SaleReturn
from stockbook.services.return_service import (
    ReturnError,
    complete_return,
    create_return,
    reject_return,
)
from stockbook.services.sales_service import SaleError, cancel_sale, create_sale
from stockbook.validation import ValidationError


def _on_hand(db_session, product_id):
    return db_session.query(InventoryRecord).filter_by(product_id=product_id).one().quantity


@pytest.fixture
def sale(db_session, product, add_batch, flat_price):
    add_batch(product.id, 20, 400)
    flat_price(product.id, 1000)
    return create_sale([{"product_id": product.id, "quantity": 10, "discount_bps": 500}])


def test_good_condition_restocks(db_session, product, sale):
    item = sale.items[0]

    sale_return = create_return(
        sale.id,
        [{"sale_item_id": item.id, "quantity": 4, "condition": "good", "return_reason": "wrong_size"}],
        refund_method="cash",
        user_id=6,
    )

    assert sale_return.credit_memo_number == "CM-000001"
    assert sale_return.status == SaleReturn.STATUS_APPROVED
    assert sale_return.total_amount_cents == 3800
    assert sale_return.refund_amount_cents == 3800
    assert _on_hand(db_session, product.id) == 14
    batch = db_session.query(PurchaseBatch).filter_by(source=PurchaseBatch.SOURCE_RETURN).one()
    assert batch.received_quantity == 4
    assert batch.unit_cost_cents == item.unit_cost_cents
    assert db_session.get(SaleItem, item.id).returned_quantity == 4
    assert db_session.get(Sale, sale.id).status == Sale.STATUS_PARTIALLY_RETURNED
    assert db_session.query(InventoryLog).filter_by(reference_type=InventoryLog.REF_RETURN).count() == 1


def test_damaged_items_not_restocked(db_session, product, sale):
    item = sale.items[0]

    create_return(sale.id, [{"sale_item_id": item.id, "quantity": 10, "condition": "damaged"}])

    assert _on_hand(db_session, product.id) == 10
    assert db_session.query(PurchaseBatch).filter_by(source=PurchaseBatch.SOURCE_RETURN).count() == 0
    assert db_session.get(Sale, sale.id).status == Sale.STATUS_RETURNED


def test_cannot_return_more_than_sold(db_session, sale):
    item = sale.items[0]
    create_return(sale.id, [{"sale_item_id": item.id, "quantity": 8}])

    with pytest.raises(ReturnError) as exc_info:
        create_return(sale.id, [{"sale_item_id": item.id, "quantity": 3}])

    assert exc_info.value.details["returnable_quantity"] == 2
    assert db_session.query(SaleReturn).count() == 1


def test_return_against_cancelled_sale(db_session, sale):
    item_id = sale.items[0].id
    cancel_sale(sale.id)
    with pytest.raises(ReturnError):
        create_return(sale.id, [{"sale_item_id": item_id, "quantity": 1}])


def test_sale_with_return_cannot_be_cancelled(db_session, sale):
    create_return(sale.id, [{"sale_item_id": sale.items[0].id, "quantity": 1}])
    with pytest.raises(SaleError):
        cancel_sale(sale.id)


def test_reject_takes_stock_back_out(db_session, product, sale):
    item = sale.items[0]
    sale_return = create_return(sale.id, [{"sale_item_id": item.id, "quantity": 4}], refund_method="store_credit")

    rejected = reject_return(sale_return.id, reason="Used item")

    assert rejected.status == SaleReturn.STATUS_REJECTED
    assert rejected.refund_amount_cents == 0
    assert _on_hand(db_session, product.id) == 10
    assert db_session.get(SaleItem, item.id).returned_quantity == 0
    assert db_session.get(Sale, sale.id).status == Sale.STATUS_COMPLETED
    with pytest.raises(ReturnError):
        reject_return(sale_return.id)


def test_complete_return(db_session, sale):
    sale_return = create_return(sale.id, [{"sale_item_id": sale.items[0].id, "quantity": 1}])

    completed = complete_return(sale_return.id)

    assert completed.status == SaleReturn.STATUS_COMPLETED
    assert completed.completed_at is not None
    with pytest.raises(ReturnError):
        complete_return(sale_return.id)
    with pytest.raises(ReturnError):
        reject_return(sale_return.id)


def test_invalid_return_payload(db_session, sale):
    item_id = sale.items[0].id
    with pytest.raises(ValidationError):
        create_return(sale.id, [{"sale_item_id": item_id, "quantity": 1, "condition": "melted"}])
    with pytest.raises(ValidationError):
        create_return(sale.id, [{"sale_item_id": item_id, "quantity": 1}], refund_method="bitcoin")


def test_piecewise_returns_refund_exactly_what_was_charged(db_session, make_product, add_batch):
    widget = make_product(sku="ODD-1")
    add_batch(widget.id, 5, 100)
    sale = create_sale([
        {"product_id": widget.id, "quantity": 3, "sold_price_cents": 334, "discount_bps": 100},
    ])
    item = sale.items[0]
    assert item.total_sold_cents == 992

    refunds = [
        create_return(sale.id, [{"sale_item_id": item.id, "quantity": 1}], refund_method="cash")
        .refund_amount_cents
        for _ in range(3)
    ]

    assert refunds == [331, 330, 331]
    assert sum(refunds) == 992
    assert db_session.get(Sale, sale.id).status == Sale.STATUS_RETURNED
