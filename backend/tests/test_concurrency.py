"""
Concurrency tests against a file-backed SQLite database.

Verifies:
- Concurrent receipt of one order applies once (single received_at, single event)
- Concurrent checkouts get distinct order numbers
- Concurrent transit marking writes one event
"""

import threading

import pytest

from tierflow import create_app
from tierflow.extensions import db
from tierflow.models import HierarchyNode, Order, Product
from tierflow.services import audit_service, order_service
from tierflow.services.hierarchy_service import Principal
from tierflow.time_utils import business_today


@pytest.fixture
def file_app(tmp_path):
    db_path = tmp_path / "concurrency.db"
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
        "SYNC_SCHEDULER_ENABLED": False,
        "BUSINESS_TIMEZONE": "UTC",
    })

    with app.app_context():
        db.drop_all()
        db.create_all()

        admin = HierarchyNode(name="Admin", email="admin@c.test", role="admin", is_active=True)
        db.session.add(admin)
        db.session.commit()
        distributor = HierarchyNode(
            name="Distributor", email="dist@c.test", role="distributor", parent_id=admin.id, is_active=True
        )
        db.session.add(distributor)
        db.session.commit()
        customer = HierarchyNode(
            name="Customer", email="cust@c.test", role="customer", parent_id=distributor.id, is_active=True
        )
        product = Product(sku="CONCUR-1", name="Concurrent Product", price_cents=1000, is_active=True)
        db.session.add_all([customer, product])
        db.session.commit()

        app.config["TEST_IDS"] = {
            "distributor": Principal(node_id=distributor.id, role="distributor"),
            "customer": Principal(node_id=customer.id, role="customer"),
            "customer_id": customer.id,
            "product_id": product.id,
        }

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.session.remove()
        db.engine.dispose()


def _place(app):
    ids = app.config["TEST_IDS"]
    return order_service.create_order(
        ids["customer"],
        customer_id=ids["customer_id"],
        lines=[{"product_id": ids["product_id"], "quantity": 1}],
        desired_delivery_date=business_today("UTC"),
    )


def _run(threads):
    for t in threads:
        t.start()
    for t in threads:
        t.join()


def test_concurrent_receipt_applies_once(file_app):
    ids = file_app.config["TEST_IDS"]
    with file_app.app_context():
        order = _place(file_app)
        order_id = order.id
        order_service.mark_for_transit(ids["distributor"], [order_id])

    received = []
    errors = []
    lock = threading.Lock()

    def worker(principal):
        with file_app.app_context():
            try:
                result = order_service.mark_received(principal, order_id)
                with lock:
                    received.append(result.received_at)
            except Exception as exc:
                with lock:
                    errors.append(exc)
            finally:
                db.session.remove()

    principals = [ids["customer"], ids["distributor"]] * 3
    _run([threading.Thread(target=worker, args=(p,)) for p in principals])

    assert not errors
    assert len(received) == len(principals)
    assert len(set(received)) == 1

    with file_app.app_context():
        events = audit_service.list_order_events(order_id, event_type=audit_service.EVENT_ORDER_RECEIVED)
        assert len(events) == 1
        order = db.session.get(Order, order_id)
        assert order.received_at == received[0]


def test_concurrent_checkout_order_numbers(file_app):
    created = []
    errors = []
    lock = threading.Lock()

    def worker():
        with file_app.app_context():
            try:
                order = _place(file_app)
                with lock:
                    created.append(order.order_number)
            except Exception as exc:
                with lock:
                    errors.append(exc)
            finally:
                db.session.remove()

    _run([threading.Thread(target=worker) for _ in range(5)])

    assert not errors
    assert len(created) == 5
    assert len(set(created)) == 5


def test_concurrent_mark_for_transit(file_app):
    ids = file_app.config["TEST_IDS"]
    with file_app.app_context():
        order_id = _place(file_app).id

    outcomes = []
    errors = []
    lock = threading.Lock()

    def worker():
        with file_app.app_context():
            try:
                result = order_service.mark_for_transit(ids["distributor"], [order_id])
                with lock:
                    outcomes.append(result["results"][0]["result"])
            except Exception as exc:
                with lock:
                    errors.append(exc)
            finally:
                db.session.remove()

    _run([threading.Thread(target=worker) for _ in range(4)])

    assert not errors
    assert sorted(outcomes) == ["already_marked"] * 3 + ["marked"]

    with file_app.app_context():
        events = audit_service.list_order_events(
            order_id, event_type=audit_service.EVENT_ORDER_MARKED_FOR_TRANSIT
        )
        assert len(events) == 1
