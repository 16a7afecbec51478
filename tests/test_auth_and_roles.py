import uuid

import jwt
from fastapi.testclient import TestClient

import marketplace.main as main_module
from marketplace.config import settings
from marketplace.main import app
from marketplace.utils.rate_limit import InMemoryRateLimiter

client = TestClient(app)


def _name(prefix='u'):
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


def test_register_login_and_me():
    username = _name()
    r = client.post('/auth/register', json={'username': username, 'password': 'pass123'})
    assert r.status_code == 200
    assert r.json()['roles'] == ['customer']

    r2 = client.post('/auth/login', json={'username': username, 'password': 'pass123'})
    assert r2.status_code == 200
    token = r2.json()['access_token']
    payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    assert payload['username'] == username
    assert payload['roles'] == ['customer']

    r3 = client.get('/users/me', headers={'Authorization': f'Bearer {token}'})
    assert r3.status_code == 200
    assert r3.json()['username'] == username
    assert r3.headers['X-Request-ID']


def test_register_is_idempotent():
    username = _name()
    first = client.post('/auth/register', json={'username': username, 'password': 'pw', 'role': 'courier'})
    again = client.post('/auth/register', json={'username': username, 'password': 'pw'})
    assert first.status_code == again.status_code == 200
    assert first.json()['id'] == again.json()['id']
    assert again.json()['roles'] == ['courier']


def test_admin_role_cannot_be_self_assigned():
    r = client.post('/auth/register', json={'username': _name(), 'password': 'pw', 'role': 'admin'})
    assert r.status_code == 400
    r = client.post('/auth/register', json={'username': _name(), 'password': 'pw', 'role': 'wizard'})
    assert r.status_code == 400


def test_wrong_password_and_bad_tokens_are_rejected():
    username = _name()
    client.post('/auth/register', json={'username': username, 'password': 'right'})
    r = client.post('/auth/login', json={'username': username, 'password': 'wrong'})
    assert r.status_code == 401

    r = client.get('/users/me', headers={'Authorization': 'Bearer not-a-token'})
    assert r.status_code == 401
    r = client.get('/users/me')
    assert r.status_code in (401, 403)


def test_role_gate_returns_403(signup):
    _, courier_h, _ = signup(client, 'courier')
    r = client.post('/orders', json={'items': [{'item_name': 'x', 'quantity': 1, 'price': 1}]}, headers=courier_h)
    assert r.status_code == 403
    _, customer_h, _ = signup(client, 'customer')
    assert client.get('/courier/deliveries', headers=customer_h).status_code == 403


def test_login_rate_limit(monkeypatch):
    monkeypatch.setattr(main_module, '_login_rate_limiter', InMemoryRateLimiter())
    monkeypatch.setattr(settings, 'LOGIN_RATE_LIMIT_PER_MIN', 2)
    username = _name()
    client.post('/auth/register', json={'username': username, 'password': 'pw'})
    for _ in range(2):
        assert client.post('/auth/login', json={'username': username, 'password': 'bad'}).status_code == 401
    r = client.post('/auth/login', json={'username': username, 'password': 'pw'})
    assert r.status_code == 429
    assert int(r.headers['Retry-After']) >= 1


def test_successful_login_resets_rate_limit(monkeypatch):
    monkeypatch.setattr(main_module, '_login_rate_limiter', InMemoryRateLimiter())
    monkeypatch.setattr(settings, 'LOGIN_RATE_LIMIT_PER_MIN', 2)
    username = _name()
    client.post('/auth/register', json={'username': username, 'password': 'pw'})
    assert client.post('/auth/login', json={'username': username, 'password': 'bad'}).status_code == 401
    assert client.post('/auth/login', json={'username': username, 'password': 'pw'}).status_code == 200
    assert client.post('/auth/login', json={'username': username, 'password': 'bad'}).status_code == 401
    assert client.post('/auth/login', json={'username': username, 'password': 'pw'}).status_code == 200


def test_rate_limiter_window():
    limiter = InMemoryRateLimiter()
    assert limiter.allow('k', 1, 60) == (True, 0)
    allowed, retry_after = limiter.allow('k', 1, 60)
    assert not allowed and 1 <= retry_after <= 60
    assert limiter.allow('other', 1, 60) == (True, 0)
    limiter.reset('k')
    assert limiter.allow('k', 1, 60) == (True, 0)


def test_health_and_root():
    assert client.get('/health').json() == {'status': 'ok'}
    assert client.get('/').json()['health'] == '/health'
