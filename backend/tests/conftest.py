"""
Pytest fixtures for possync backend tests.

Provides test database setup, tenant fixtures (two organizations, three
stores, one device token per store), the Flask test client, and sync
client devices that talk to the same app through an in-process transport
that can be taken offline or made to lose responses.
"""

from dataclasses import dataclass

import httpx
import pytest

from possync import create_app
from possync.client import LocalStore, RemoteClient, SyncClientConfig, SyncEngine
from possync.config import TestConfig
from possync.extensions import db
from possync.models import Organization, Product, Store
from possync.services import token_service


@pytest.fixture(scope='function')
def app(tmp_path):
    """Create application for testing, backed by a throwaway SQLite file."""
    class _Config(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'possync-test.sqlite3'}"

    app = create_app(_Config)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    yield db.session
    db.session.rollback()


@pytest.fixture(scope='function')
def org_a(db_session):
    """Create Organization A (first tenant)."""
    org = Organization(name="Org A - Acme Corp", code="ACME", is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture(scope='function')
def org_b(db_session):
    """Create Organization B (second tenant)."""
    org = Organization(name="Org B - Beta Inc", code="BETA", is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture(scope='function')
def store_a(db_session, org_a):
    """Create Store A1 in Organization A."""
    store = Store(org_id=org_a.id, name="Store A1", code="A1")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def store_a2(db_session, org_a):
    """Create a second store in Organization A (transfer destination)."""
    store = Store(org_id=org_a.id, name="Store A2", code="A2")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def store_b(db_session, org_b):
    """Create Store B in Organization B."""
    store = Store(org_id=org_b.id, name="Store B1", code="B1")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def token_a(store_a):
    _, token = token_service.issue_token(store_a.id, name="Counter A1")
    return token


@pytest.fixture(scope='function')
def token_a2(store_a2):
    _, token = token_service.issue_token(store_a2.id, name="Counter A2")
    return token


@pytest.fixture(scope='function')
def token_b(store_b):
    _, token = token_service.issue_token(store_b.id, name="Counter B1")
    return token


@pytest.fixture(scope='function')
def product_a(db_session, store_a):
    """Create Product in Store A (quantity 10)."""
    product = Product(
        store_id=store_a.id,
        sku="PROD-A-001",
        name="Product A",
        price_cents=1000,
        quantity=10,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def product_b(db_session, store_b):
    """Create Product in Store B."""
    product = Product(
        store_id=store_b.id,
        sku="PROD-B-001",
        name="Product B",
        price_cents=2000,
        quantity=5,
    )
    db_session.add(product)
    db_session.commit()
    return product


def auth_headers(token: str, idempotency_key: str | None = None) -> dict:
    """Helper to create Authorization headers."""
    headers = {'Authorization': f'Bearer {token}'}
    if idempotency_key:
        headers['Idempotency-Key'] = idempotency_key
    return headers


def create_product(client, token: str, **fields) -> dict:
    """POST a product and return its wire record."""
    payload = {"sku": "SKU-1", "name": "Widget", "priceCents": 500, "quantity": 10}
    payload.update(fields)
    response = client.post('/api/products', json=payload, headers=auth_headers(token))
    assert response.status_code == 201, response.get_json()
    return response.get_json()


def get_record(client, token: str, resource: str, server_id: str) -> dict:
    response = client.get(f'/api/{resource}/{server_id}', headers=auth_headers(token))
    assert response.status_code == 200, response.get_json()
    return response.get_json()


# ============================================================================
# Sync client devices
# ============================================================================


class FlakyTransport(httpx.BaseTransport):
    """
    In-process transport to the Flask app with switchable failures.

    online = False                  every request fails with ConnectError
    timeouts_after_delivery = n     the next n requests reach the server,
                                    but their responses are lost (ReadTimeout)
    fail_with_status = [503, ...]   the next requests get these statuses
                                    without reaching the server
    """

    def __init__(self, app):
        self.inner = httpx.WSGITransport(app=app)
        self.online = True
        self.timeouts_after_delivery = 0
        self.fail_with_status: list[int] = []
        self.delivered: list[tuple[str, str]] = []
        self.attempts = 0

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        self.attempts += 1
        if not self.online:
            raise httpx.ConnectError("Network is unreachable", request=request)
        if self.fail_with_status:
            status = self.fail_with_status.pop(0)
            return httpx.Response(status, json={"error": "Service unavailable", "statusCode": status})

        response = self.inner.handle_request(request)
        self.delivered.append((request.method, request.url.path))
        if self.timeouts_after_delivery > 0:
            self.timeouts_after_delivery -= 1
            response.read()
            raise httpx.ReadTimeout("Response lost", request=request)
        return response

    def paths(self, method: str) -> list[str]:
        return [path for m, path in self.delivered if m == method]


@dataclass
class Device:
    """One POS device: an engine over its own LocalStore plus the transport it uses."""
    engine: SyncEngine
    transport: FlakyTransport

    @property
    def store(self) -> LocalStore:
        return self.engine.store


@pytest.fixture(scope='function')
def make_device(app, tmp_path):
    """Factory for sync client devices bound to a token and its store."""
    devices: list[Device] = []

    def factory(token: str, tenant_id: int, name: str = "device", transport_cls=None, **overrides) -> Device:
        options = {"max_attempts": 3, "backoff_base": 0.001, "backoff_max": 0.01}
        options.update(overrides)
        config = SyncClientConfig(
            base_url="http://possync.test",
            token=token,
            tenant_id=tenant_id,
            database_url=f"sqlite:///{tmp_path / f'{name}.sqlite3'}",
            **options,
        )
        transport = (transport_cls or FlakyTransport)(app)
        engine = SyncEngine(
            LocalStore(config.database_url),
            RemoteClient.from_config(config, transport=transport),
            config,
        )
        device = Device(engine=engine, transport=transport)
        devices.append(device)
        return device

    yield factory

    for device in devices:
        device.engine.remote.close()
        device.store.close()


@pytest.fixture(scope='function')
def device_a(make_device, token_a, store_a):
    return make_device(token_a, store_a.id, name="device-a")
