"""
Pytest fixtures for the stock ledger backend tests.

Provides an in-memory application, per-test table clearing, and small
factories for users, categories and products.
"""

from datetime import date

import pytest

from liquor_pos import create_app
from liquor_pos.extensions import db
from liquor_pos.models import Category, Product, User
from liquor_pos.services import session_service


DAY1 = date(2025, 9, 18)
DAY2 = date(2025, 9, 19)
DAY3 = date(2025, 9, 20)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'RATE_LIMIT_ENABLED': False,
        'STORE_TIMEZONE': 'Asia/Kolkata',
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
        db.session.remove()


def _make_user(db_session, username: str, role: str) -> User:
    user = User(username=username, email=f"{username}@store.local", role=role)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def counter(db_session):
    """Stock reconciler who enters counts."""
    return _make_user(db_session, "counter", "stock_reconciler")


@pytest.fixture(scope='function')
def manager(db_session):
    """Supervisor who approves counts."""
    return _make_user(db_session, "manager", "manager")


@pytest.fixture(scope='function')
def biller(db_session):
    return _make_user(db_session, "biller", "biller")


@pytest.fixture(scope='function')
def category(db_session):
    category = Category(name="Whisky")
    db_session.add(category)
    db_session.commit()
    return category


@pytest.fixture(scope='function')
def make_product(db_session, category):
    """Factory: make_product(name=..., current_stock=..., cost_price_cents=...)."""
    counter_ = {"n": 0}

    def _make(**overrides) -> Product:
        counter_["n"] += 1
        values = {
            "category_id": category.id,
            "name": f"Product {counter_['n']:02d}",
            "barcode": f"BC-{counter_['n']:04d}",
            "price_cents": 1500,
            "cost_price_cents": 100,
            "current_stock": 0,
            "min_stock_level": 5,
        }
        values.update(overrides)
        product = Product(**values)
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture(scope='function')
def product(make_product):
    """Live stock 20, cost 50 cents."""
    return make_product(name="Old Monk 750ml", current_stock=20, cost_price_cents=50)


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def manager_headers(manager):
    _session, token = session_service.create_session(manager.id)
    return auth_headers(token)


@pytest.fixture(scope='function')
def counter_headers(counter):
    _session, token = session_service.create_session(counter.id)
    return auth_headers(token)


@pytest.fixture(scope='function')
def biller_headers(biller):
    _session, token = session_service.create_session(biller.id)
    return auth_headers(token)
