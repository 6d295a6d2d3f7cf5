"""
Ecotrack - Test Configuration

Pytest fixtures for authentication testing.
Provides an in-memory database, a controllable clock, an ephemeral
signing key, a recording mail transport, the wired service and a
test client.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Generator, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from ecotrack.app import build_auth_service, build_rate_limiters, create_app
from ecotrack.auth.database import get_session_factory
from ecotrack.auth.models import User
from ecotrack.auth.password import hash_password
from ecotrack.auth.signer import LocalRSASigner
from ecotrack.config import Settings


# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite:///:memory:"

START_TIME = datetime(2025, 1, 15, 12, 0, 0)

ALICE_EMAIL = "alice@example.com"
ALICE_PASSWORD = "Str0ng!Pass"


class FixedClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, now: datetime = START_TIME) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@dataclass
class SentMail:
    to: str
    subject: str
    html_body: str
    text_body: str

    @property
    def token(self) -> Optional[str]:
        match = re.search(r"token=([0-9a-f]{64})", self.text_body)
        return match.group(1) if match else None


class RecordingTransport:
    """Mail transport that keeps messages in memory."""

    def __init__(self) -> None:
        self.sent: list[SentMail] = []
        self.fail = False

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        if self.fail:
            return False
        self.sent.append(SentMail(to, subject, html_body, text_body))
        return True

    @property
    def last(self) -> SentMail:
        return self.sent[-1]


@pytest.fixture(scope="session")
def signer() -> LocalRSASigner:
    """One RSA key for the whole run (generation is slow)."""
    return LocalRSASigner.generate("test-key")


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        DATABASE_URL=TEST_DATABASE_URL,
        TOKEN_PEPPER="test-pepper",
        APP_BASE_URL="https://app.ecotrack.test",
        SMTP_HOST=None,
    )


@pytest.fixture(scope="function")
def test_engine():
    """Create a fresh test database engine for each test."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Import models to register them
    from ecotrack.auth.models import User, RefreshToken, EmailToken  # noqa: F401

    SQLModel.metadata.create_all(engine)

    yield engine

    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return get_session_factory(test_engine)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def service(test_settings, session_factory, signer, transport, clock):
    """Fully wired auth service over the test database."""
    return build_auth_service(
        test_settings,
        session_factory,
        signer=signer,
        key_provider=signer,
        transport=transport,
        clock=clock,
    )


@pytest.fixture
def client(test_settings, service, signer, clock) -> Generator[TestClient, None, None]:
    """Create a test client bound to the test service."""
    app = create_app(
        test_settings,
        auth_service=service,
        key_provider=signer,
        rate_limiters=build_rate_limiters(test_settings, clock),
        run_background_tasks=False,
    )
    with TestClient(app) as c:
        yield c


@pytest.fixture
def alice(service) -> User:
    """A registered, active user."""
    return service.users.create(User(
        email=ALICE_EMAIL,
        password_hash=hash_password(ALICE_PASSWORD),
        first_name="Alice",
        last_name="Green",
    ))


@pytest.fixture
def inactive_user(service) -> User:
    return service.users.create(User(
        email="inactive@example.com",
        password_hash=hash_password("Inact1ve!Pass"),
        first_name="Ina",
        last_name="Active",
        is_active=False,
    ))


def register_user(
    client: TestClient,
    email: str = ALICE_EMAIL,
    password: str = ALICE_PASSWORD,
    first_name: str = "Alice",
    last_name: str = "Green",
):
    """Helper: POST /auth/register."""
    return client.post(
        "/api/v1/auth/register",
        json={
            "email": email,
            "password": password,
            "first_name": first_name,
            "last_name": last_name,
        },
    )


def login_user(client: TestClient, email: str, password: str):
    """Helper: POST /auth/login."""
    return client.post(
        "/api/v1/auth/login",
        json={"email": email, "password": password},
    )


def auth_headers(access_token: str) -> dict:
    """Create authorization headers for authenticated requests."""
    return {"Authorization": f"Bearer {access_token}"}
