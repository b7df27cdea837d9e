import asyncio
import os
import tempfile
from datetime import datetime, timedelta

# Settings and the engine are read at import time, so the environment has to be in place first.
_TEST_DIR = tempfile.mkdtemp(prefix="authgate-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'app.db')}"
os.environ["LOG_FILE"] = os.path.join(_TEST_DIR, "app.log")
os.environ["ENVIRONMENT"] = "test"
os.environ["SECRET_KEY"] = "test-signing-secret-0123456789abcdef0123456789"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["DB_INIT_MODE"] = "off"
os.environ["RUN_EMBEDDED_SWEEPER"] = "false"
os.environ["OTP_DELIVERY_MODE"] = "provider"
os.environ["DELIVERY_TIMEOUT_SECONDS"] = "2"

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from authgate.config import Settings
from authgate.core.database import Base, get_db
from authgate.core.exceptions import DeliveryFailureError
from authgate.core.security import AccessTokenIssuer
from authgate.core.timeutil import utcnow
from authgate.services.registry import build_services


class FakeClock:
    """Callable clock that only moves when told to"""

    def __init__(self, start: datetime = None):
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingSender:
    """Stands in for the email/SMS transports and remembers what it was asked to send"""

    def __init__(self):
        self.sent = []
        self.reset_links = []

    async def send(self, destination, code, ttl_seconds):
        self.sent.append((destination, code, ttl_seconds))

    async def send_password_reset(self, destination, reset_link, ttl_seconds):
        self.reset_links.append((destination, reset_link))

    @property
    def last_code(self):
        return self.sent[-1][1]


class FailingSender:
    def __init__(self):
        self.calls = 0

    async def send(self, destination, code, ttl_seconds):
        self.calls += 1
        raise DeliveryFailureError("provider rejected the message")


class SlowSender:
    def __init__(self, delay: float):
        self.delay = delay

    async def send(self, destination, code, ttl_seconds):
        await asyncio.sleep(self.delay)


def make_settings(**overrides) -> Settings:
    return Settings(**overrides)


@pytest.fixture
def config():
    return make_settings()


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def issuer(config):
    return AccessTokenIssuer.from_settings(config)


@pytest.fixture
def email_sender():
    return RecordingSender()


@pytest.fixture
def sms_sender():
    return RecordingSender()


@pytest.fixture
def services(config, session_factory, issuer, email_sender, sms_sender):
    return build_services(
        config,
        session_factory=session_factory,
        senders={"email": email_sender, "sms": sms_sender},
        issuer=issuer,
    )


@pytest.fixture
def client(config, services, session_factory):
    from authgate.main import create_app

    app = create_app(config, services)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client


GOOGLE_SETTINGS = {
    "GOOGLE_CLIENT_ID": "client-id",
    "GOOGLE_CLIENT_SECRET": "client-secret",
    "GOOGLE_CALLBACK_URL": "http://testserver/api/v1/auth/federated/callback",
}


def google_transport(userinfo, token_status=200, calls=None):
    """Fake Google token and userinfo endpoints"""

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        if request.url.host == "oauth2.googleapis.com":
            if token_status != 200:
                return httpx.Response(token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "provider-token", "token_type": "Bearer"})
        if request.url.host == "www.googleapis.com":
            assert request.headers["Authorization"] == "Bearer provider-token"
            return httpx.Response(200, json=userinfo)
        return httpx.Response(404)

    return httpx.MockTransport(handler)
