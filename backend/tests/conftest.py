"""
Pytest fixtures for Tierflow backend tests.

Provides test database setup, a small hierarchy, products and a test client.

Tree built by the `tree` fixture:

    root (super-admin)
    └── admin_a
        ├── dist_a1
        │   ├── cust_a1a
        │   └── cust_a1b
        ├── dist_a2
        │   └── cust_a2a
        └── cust_direct        (served by admin_a directly)
    └── admin_b
        └── dist_b1
            └── cust_b1a
"""

from types import SimpleNamespace

import pytest
from tierflow import create_app
from tierflow.extensions import db
from tierflow.models import HierarchyNode, Product
from tierflow.services.hierarchy_service import Principal
from tierflow.time_utils import business_today


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'SYNC_SCHEDULER_ENABLED': False,
        'BUSINESS_TIMEZONE': 'UTC',
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


def _node(session, name, role, parent=None, *, is_super_admin=False):
    node = HierarchyNode(
        name=name,
        email=f"{name}@tierflow.test",
        role=role,
        is_super_admin=is_super_admin,
        parent_id=parent.id if parent is not None else None,
        is_active=True,
    )
    session.add(node)
    session.commit()
    return node


@pytest.fixture(scope='function')
def tree(db_session):
    """Three-tier hierarchy under one super-admin (see module docstring)."""
    root = _node(db_session, "root", "admin", is_super_admin=True)
    admin_a = _node(db_session, "admin_a", "admin", root)
    admin_b = _node(db_session, "admin_b", "admin", root)
    dist_a1 = _node(db_session, "dist_a1", "distributor", admin_a)
    dist_a2 = _node(db_session, "dist_a2", "distributor", admin_a)
    dist_b1 = _node(db_session, "dist_b1", "distributor", admin_b)
    cust_a1a = _node(db_session, "cust_a1a", "customer", dist_a1)
    cust_a1b = _node(db_session, "cust_a1b", "customer", dist_a1)
    cust_a2a = _node(db_session, "cust_a2a", "customer", dist_a2)
    cust_b1a = _node(db_session, "cust_b1a", "customer", dist_b1)
    cust_direct = _node(db_session, "cust_direct", "customer", admin_a)

    return SimpleNamespace(
        root=root,
        admin_a=admin_a,
        admin_b=admin_b,
        dist_a1=dist_a1,
        dist_a2=dist_a2,
        dist_b1=dist_b1,
        cust_a1a=cust_a1a,
        cust_a1b=cust_a1b,
        cust_a2a=cust_a2a,
        cust_b1a=cust_b1a,
        cust_direct=cust_direct,
    )


@pytest.fixture(scope='function')
def principals(tree):
    """Principal for every node in `tree`, keyed the same way."""
    return SimpleNamespace(**{
        key: Principal.from_node(node) for key, node in vars(tree).items()
    })


@pytest.fixture(scope='function')
def product(db_session):
    """Product priced at 500.00 (50000 minor units)."""
    product = Product(sku="MILK-1L", name="Milk 1L", price_cents=50000, is_active=True)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def second_product(db_session):
    product = Product(sku="BREAD", name="Bread", price_cents=4000, is_active=True)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def today():
    return business_today("UTC")


def principal_headers(node_id: int) -> dict:
    """Helper to build principal headers for a node id."""
    return {"X-Principal-Id": str(node_id)}


@pytest.fixture(scope='function')
def root_headers(tree):
    return principal_headers(tree.root.id)


@pytest.fixture(scope='function')
def admin_headers(tree):
    return principal_headers(tree.admin_a.id)


@pytest.fixture(scope='function')
def distributor_headers(tree):
    return principal_headers(tree.dist_a1.id)


@pytest.fixture(scope='function')
def customer_headers(tree):
    return principal_headers(tree.cust_a1a.id)
