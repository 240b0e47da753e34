"""
Concurrent writes against a file-backed SQLite database.

Each worker thread gets its own application context, and so its own
session and connection, like separate requests would.
"""

import threading

import pytest

from liquor_pos import create_app
from liquor_pos.extensions import db
from liquor_pos.models import Category, DailyStock, Product, StockReconciliation, StockReference, User
from liquor_pos.services import daily_stock_service, reconciliation_service, stock_service

from conftest import DAY1


@pytest.fixture
def file_app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'concurrency.sqlite3'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30}},
        'RATE_LIMIT_ENABLED': False,
    })
    with app.app_context():
        db.create_all()
        category = Category(name="Rum")
        user = User(username="till", email="till@store.local", role="biller")
        db.session.add_all([category, user])
        db.session.flush()
        product = Product(category_id=category.id, name="Rum 750ml", current_stock=50, cost_price_cents=100)
        db.session.add(product)
        db.session.commit()
        ids = {"product_id": product.id, "user_id": user.id}
        db.session.remove()
    yield app, ids
    with app.app_context():
        db.drop_all()
        db.engine.dispose()


def _run_in_threads(app, worker, count):
    barrier = threading.Barrier(count)
    errors = []

    def _target(index):
        with app.app_context():
            try:
                barrier.wait()
                worker(index)
                db.session.commit()
            except Exception as exc:  # surfaced by the assertion below
                db.session.rollback()
                errors.append(exc)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=_target, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return errors


def test_two_simultaneous_sales_are_both_counted(file_app):
    app, ids = file_app
    results = []

    def worker(_index):
        results.append(
            daily_stock_service.record_sale(ids["product_id"], 1, DAY1, user_id=ids["user_id"])
        )

    errors = _run_in_threads(app, worker, 2)

    assert errors == []
    assert all(result["success"] for result in results)
    with app.app_context():
        entries = db.session.query(DailyStock).filter_by(product_id=ids["product_id"], date=DAY1).all()
        assert len(entries) == 1
        assert entries[0].sold_quantity == 2
        assert entries[0].closing_stock == 48


def test_parallel_sales_keep_live_stock_and_ledger_in_step(file_app):
    app, ids = file_app

    def worker(index):
        result = stock_service.sell_stock(
            [{"product_id": ids["product_id"], "quantity": 1}],
            sale_reference=StockReference.sale(f"S-{index}"),
            user_id=ids["user_id"],
            day=DAY1,
        )
        assert result["success"], result

    errors = _run_in_threads(app, worker, 4)

    assert errors == []
    with app.app_context():
        product = db.session.get(Product, ids["product_id"])
        entry = db.session.query(DailyStock).filter_by(product_id=ids["product_id"], date=DAY1).one()
        assert product.current_stock == 46
        assert entry.opening_stock == 50
        assert entry.sold_quantity == 4
        assert entry.opening_stock - entry.sold_quantity == entry.closing_stock


@pytest.fixture
def open_session(file_app):
    """A second product and an in-progress DAY1 count session over both."""
    app, ids = file_app
    with app.app_context():
        rum = db.session.get(Product, ids["product_id"])
        large = Product(category_id=rum.category_id, name="Rum 1L", current_stock=20, cost_price_cents=200)
        db.session.add(large)
        db.session.commit()
        result = reconciliation_service.create_reconciliation(DAY1, user_id=ids["user_id"])
        db.session.commit()
        ids = {**ids, "large_id": large.id, "number": result["reconciliation_id"]}
        db.session.remove()
    return app, ids


def test_counts_on_different_items_both_land_in_totals(open_session):
    app, ids = open_session
    counts = [(ids["product_id"], 47), (ids["large_id"], 22)]
    results = []

    def worker(index):
        product_id, physical = counts[index]
        results.append(
            reconciliation_service.record_physical_count(
                ids["number"], product_id, physical, user_id=ids["user_id"]
            )
        )

    errors = _run_in_threads(app, worker, 2)

    assert errors == []
    assert all(result["success"] for result in results), results
    with app.app_context():
        session = db.session.query(StockReconciliation).filter_by(reconciliation_number=ids["number"]).one()
        assert session.products_reconciled == 2
        assert session.total_variance == 5
        assert session.variance_value_cents == 100
        assert {item.product_id: item.physical_stock for item in session.items} == {
            ids["product_id"]: 47,
            ids["large_id"]: 22,
        }


def test_racing_session_creation_leaves_one_active(file_app):
    app, ids = file_app
    results = []

    def worker(_index):
        results.append(reconciliation_service.create_reconciliation(DAY1, user_id=ids["user_id"]))

    errors = _run_in_threads(app, worker, 2)

    assert errors == []
    winners = [result for result in results if result["success"]]
    losers = [result for result in results if not result["success"]]
    assert len(winners) == 1
    assert len(losers) == 1
    assert losers[0]["existing_reconciliation_id"] == winners[0]["reconciliation_id"]
    with app.app_context():
        assert db.session.query(StockReconciliation).count() == 1
