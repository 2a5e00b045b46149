"""
Pytest fixtures for stockbook backend tests.

Provides the application with an in-memory database, a per-test clean
session, and small factories for products, customers, batches and prices.
"""

from datetime import datetime, timedelta

import pytest

from stockbook import create_app
from stockbook.config import TestConfig
from stockbook.extensions import db
from stockbook.models import (
    Customer,
    InventoryRecord,
    Product,
    ProductPrice,
    PurchaseBatch,
    Warehouse,
)


BASE_TIME = datetime(2024, 1, 1, 8, 0, 0)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def cli_runner(app):
    return app.test_cli_runner()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def product(db_session):
    """Create a product with no stock and no price."""
    item = Product(sku="WIDGET-1", name="Widget", reorder_level=5)
    db_session.add(item)
    db_session.commit()
    return item


@pytest.fixture(scope='function')
def make_product(db_session):
    counter = {"n": 0}

    def _make(**kwargs):
        counter["n"] += 1
        item = Product(
            sku=kwargs.pop("sku", f"SKU-{counter['n']:03d}"),
            name=kwargs.pop("name", f"Product {counter['n']}"),
            **kwargs,
        )
        db_session.add(item)
        db_session.commit()
        return item

    return _make


@pytest.fixture(scope='function')
def customer(db_session):
    """Create a regular (non-valued) customer."""
    person = Customer(name="Walk-in Buyer")
    db_session.add(person)
    db_session.commit()
    return person


@pytest.fixture(scope='function')
def valued_customer(db_session):
    """Create a valued customer."""
    person = Customer(name="Acme Hardware", is_valued_customer=True, valued_since=BASE_TIME)
    db_session.add(person)
    db_session.commit()
    return person


@pytest.fixture(scope='function')
def warehouse(db_session):
    site = Warehouse(name="North Depot", location="Dock 4", is_active=True)
    db_session.add(site)
    db_session.commit()
    return site


@pytest.fixture(scope='function')
def add_batch(db_session):
    """
    Add a purchase batch and bump the inventory record to match.

    Batches are spaced one hour apart from BASE_TIME in creation order unless
    received_at is given, so FIFO order is deterministic.
    """
    counter = {"n": 0}

    def _add(product_id, quantity, unit_cost_cents, received_at=None, sync_inventory=True):
        counter["n"] += 1
        batch = PurchaseBatch(
            product_id=product_id,
            received_quantity=quantity,
            consumed_quantity=0,
            unit_cost_cents=unit_cost_cents,
            fully_consumed=False,
            received_at=received_at or BASE_TIME + timedelta(hours=counter["n"]),
            source=PurchaseBatch.SOURCE_RECEIVE,
        )
        db_session.add(batch)
        if sync_inventory:
            record = db_session.query(InventoryRecord).filter_by(product_id=product_id).first()
            if record is None:
                record = InventoryRecord(product_id=product_id, quantity=0, avg_cost_cents=0)
                db_session.add(record)
                db_session.flush()
            record.apply_receipt(quantity, unit_cost_cents)
        db_session.commit()
        return batch

    return _add


@pytest.fixture(scope='function')
def set_inventory(db_session):
    """Force the inventory record quantity (used to simulate ledger drift)."""
    def _set(product_id, quantity):
        record = db_session.query(InventoryRecord).filter_by(product_id=product_id).first()
        if record is None:
            record = InventoryRecord(product_id=product_id, quantity=quantity, avg_cost_cents=0)
            db_session.add(record)
        else:
            record.quantity = quantity
        db_session.commit()
        return record

    return _set


@pytest.fixture(scope='function')
def flat_price(db_session):
    def _price(product_id, regular, wholesale=None, walk_in=None, **kwargs):
        row = ProductPrice(
            product_id=product_id,
            regular_price_cents=regular,
            wholesale_price_cents=wholesale if wholesale is not None else regular,
            walk_in_price_cents=walk_in if walk_in is not None else regular,
            effective_from=kwargs.pop("effective_from", BASE_TIME),
            **kwargs,
        )
        db_session.add(row)
        db_session.commit()
        return row

    return _price
