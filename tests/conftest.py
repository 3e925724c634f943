import asyncio
from datetime import datetime, timedelta

import httpx
import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import init_client_db, init_db, make_engine, make_session_factory
from exceptions import VerificationFailed
from license_store import LicenseStore
from license_verifier import PurchaseMetadata
from main import create_app


class FakeClock:
    def __init__(self, start=datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class StubVerifier:
    """Stands in for the purchase platform."""

    def __init__(self, delay=0.0):
        self.delay = delay
        self.rejected = set()
        self.calls = []
        self.permalinks = []

    async def verify(self, license_key, increment_uses=True, product_permalink=None):
        self.calls.append((license_key, increment_uses))
        self.permalinks.append(product_permalink)
        if self.delay:
            await asyncio.sleep(self.delay)
        if license_key in self.rejected:
            raise VerificationFailed("Invalid license key")
        return PurchaseMetadata(
            purchase_id=f"purchase-{license_key}",
            email="owner@example.com",
            created_at="2025-06-01T10:00:00Z",
        )


class SwitchableTransport(httpx.AsyncBaseTransport):
    """Routes to the in-process app, or fails like a dropped network."""

    def __init__(self, app):
        self.inner = httpx.ASGITransport(app=app)
        self.online = True

    async def handle_async_request(self, request):
        if not self.online:
            raise httpx.ConnectError("network unreachable", request=request)
        return await self.inner.handle_async_request(request)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def app_settings(tmp_path):
    return Settings(
        _env_file=None,
        ENVIRONMENT="test",
        JWT_SECRET="test-jwt-secret-0123456789abcdef0123",
        LICENSE_HASH_SALT="test-license-salt",
        DEVICE_HASH_SALT="test-device-salt",
        DATABASE_URL=f"sqlite:///{tmp_path / 'licenses.db'}",
        CLIENT_DATABASE_URL=f"sqlite:///{tmp_path / 'license_cache.db'}",
        LICENSE_VERIFY_URL="https://licensing.test/v2/licenses/verify",
        LICENSE_PRODUCT_ID="product-123",
        LICENSE_PRODUCT_PERMALINK="shop-dashboard",
        LICENSE_API_URL="http://licensing.local/api/license",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_factory(app_settings):
    engine = make_engine(app_settings.DATABASE_URL)
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory, app_settings):
    return LicenseStore(
        session_factory,
        license_salt=app_settings.LICENSE_HASH_SALT,
        device_salt=app_settings.DEVICE_HASH_SALT,
    )


@pytest.fixture
def clocked_store(session_factory, app_settings, clock):
    return LicenseStore(
        session_factory,
        license_salt=app_settings.LICENSE_HASH_SALT,
        device_salt=app_settings.DEVICE_HASH_SALT,
        clock=clock,
    )


@pytest.fixture
def purchase():
    return PurchaseMetadata(purchase_id="purchase-1", email="owner@example.com")


@pytest.fixture
def verifier():
    return StubVerifier()


@pytest.fixture
def app(app_settings, verifier, store):
    return create_app(app_settings, verifier=verifier, store=store)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def client_db(app_settings):
    engine = make_engine(app_settings.CLIENT_DATABASE_URL)
    init_client_db(engine)
    session = make_session_factory(engine)()
    yield session
    session.close()
    engine.dispose()


@pytest.fixture
def transport(app):
    return SwitchableTransport(app)
