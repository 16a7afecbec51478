from pathlib import Path
import os
import tempfile
import uuid

import pytest

# Point the app at a throwaway SQLite file before `marketplace` is imported.
_DB_PATH = Path(tempfile.gettempdir()) / f"marketplace_test_{os.getpid()}.db"
if _DB_PATH.exists():
    _DB_PATH.unlink()
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_PATH}"


@pytest.fixture(scope="session", autouse=True)
def reset_db():
    """Remove the test database once the session is over."""
    yield
    try:
        _DB_PATH.unlink()
    except OSError:
        pass


@pytest.fixture
def signup():
    """Register a fresh user with `role` and return `(user_id, auth_headers, token)`."""
    def _signup(client, role="customer", prefix="user"):
        username = f"{prefix}_{uuid.uuid4().hex[:8]}"
        r = client.post('/auth/register', json={'username': username, 'password': 'pw123', 'role': role})
        assert r.status_code == 200, r.text
        login = client.post('/auth/login', json={'username': username, 'password': 'pw123'})
        assert login.status_code == 200, login.text
        token = login.json()['access_token']
        return r.json()['id'], {'Authorization': f'Bearer {token}'}, token
    return _signup


@pytest.fixture
def place_order():
    """Place a one-item order as the customer behind `headers` and return its JSON."""
    def _place(client, headers, partner_id=None, delivery_type='delivery'):
        body = {
            'partner_id': partner_id,
            'delivery_type': delivery_type,
            'tip_amount': 1.5,
            'items': [{'item_name': 'Pho', 'quantity': 2, 'price': 4.25}],
        }
        r = client.post('/orders', json=body, headers=headers)
        assert r.status_code == 201, r.text
        return r.json()
    return _place


@pytest.fixture
def assigned_delivery(signup, place_order):
    """Customer, partner and courier sharing one assigned delivery."""
    def _setup(client):
        customer_id, customer_h, customer_token = signup(client, 'customer', 'cust')
        partner_id, partner_h, _ = signup(client, 'partner', 'shop')
        courier_id, courier_h, courier_token = signup(client, 'courier', 'rider')
        order = place_order(client, customer_h, partner_id=partner_id)
        r = client.post('/deliveries', json={'order_id': order['id'], 'courier_id': courier_id}, headers=partner_h)
        assert r.status_code == 201, r.text
        return {
            'order': order,
            'delivery': r.json(),
            'customer': (customer_id, customer_h, customer_token),
            'partner': (partner_id, partner_h),
            'courier': (courier_id, courier_h, courier_token),
        }
    return _setup


@pytest.fixture
def make_admin(signup):
    """Register a user and grant it `admin`, which cannot be self-assigned.

    Roles are read from the database per request, so the returned
    headers carry admin rights straight away.
    """
    def _make(client):
        from sqlmodel import Session
        from marketplace import repositories
        from marketplace.database import engine

        user_id, headers, _ = signup(client, 'customer', 'admin')
        with Session(engine) as session:
            roles = repositories.RoleRepository(session)
            roles.assign(user_id, roles.get_by_name('admin'))
        return user_id, headers
    return _make
