"""
Pytest fixtures for event stock backend tests.

Provides test database setup, entity factories, and test client.
"""

from datetime import timedelta

import pytest
from eventstock import create_app
from eventstock.extensions import db
from eventstock.models import B2BStock, Client, Event, Product, normalize_item_name
from eventstock.time_utils import utcnow


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LATE_FEE_PER_DAY_CENTS': 10000,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


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
def make_product(db_session):
    """Factory: product with a primary stock pool."""
    counter = {"n": 0}

    def _make(name="Chair", stock_qty=100, rate_cents=500, buy_price_cents=2000, loss_price_cents=None, **kwargs):
        counter["n"] += 1
        product = Product(
            sku=kwargs.pop("sku", f"SKU-{counter['n']:03d}"),
            name=name,
            unit_type=kwargs.pop("unit_type", "pcs"),
            stock_qty=stock_qty,
            rate_cents=rate_cents,
            buy_price_cents=buy_price_cents,
            loss_price_cents=loss_price_cents,
            **kwargs,
        )
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture(scope='function')
def make_b2b(db_session):
    """Factory: B2B pool, linked to a product when one is given."""
    def _make(product=None, quantity=10, item_name=None, supplier_name="Supplier A", unit_price_cents=300):
        name = item_name or (product.name if product else "Generic Item")
        stock = B2BStock(
            item_name=name,
            normalized_item_name=normalize_item_name(name),
            supplier_name=supplier_name,
            quantity_available=quantity,
            unit_price_cents=unit_price_cents,
            product_id=product.id if product else None,
        )
        db_session.add(stock)
        db_session.commit()
        return stock

    return _make


@pytest.fixture(scope='function')
def demo_client(db_session):
    c = Client(name="Acme Weddings", phone="+15550100")
    db_session.add(c)
    db_session.commit()
    return c


@pytest.fixture(scope='function')
def make_event(db_session):
    """Factory: event ending in the future unless date_to is given."""
    def _make(name="Summer Gala", date_to=None, advance_cents=0, security_cents=0, client=None):
        now = utcnow()
        event = Event(
            name=name,
            date_from=now - timedelta(days=2),
            date_to=date_to or now + timedelta(days=1),
            advance_cents=advance_cents,
            security_cents=security_cents,
            client_id=client.id if client else None,
        )
        db_session.add(event)
        db_session.commit()
        return event

    return _make
