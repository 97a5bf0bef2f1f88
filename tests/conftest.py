"""
tests/conftest.py -- Shared test fixtures for Keyway.

This module provides:
  - store: an AuthStore, parametrized over BOTH backends (memory and SQLite)
    so every store-level property is checked against each implementation
  - credentials / ledger / service: the domain objects wired to that store
  - RecordingDispatcher: captures outbound mail instead of sending it
  - client: TestClient over the real FastAPI app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
Each test gets its own uniquely named database.

DEBUG must be set before any settings are read so production-only checks
(BASE_URL, SMTP_HOST) do not fire.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from urllib.parse import parse_qs, urlparse

# CRITICAL: Set DEBUG before any core/api import.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app, wire_services
from auth.credentials import CredentialStore
from auth.ledger import VerificationLedger
from auth.service import AuthService
from auth.sessions import AuthContext, Session
from auth.store import AuthStore, MemoryAuthStore, SQLAuthStore
from core.config import Settings

BASE_URL = "http://testserver"


# ---------------------------------------------------------------------------
# Mail capture
# ---------------------------------------------------------------------------


class RecordingDispatcher:
    """Stands in for MailDispatcher; records (recipient, template, link) tuples."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def dispatch(self, recipient: str, template_name: str, link: str) -> None:
        self.sent.append((recipient, template_name, link))

    def shutdown(self) -> None:
        pass

    def last_token(self) -> str:
        """Return the ?token= value of the most recent link."""
        _, _, link = self.sent[-1]
        return parse_qs(urlparse(link).query)["token"][0]


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_sql_store() -> SQLAuthStore:
    name = f"keyway_test_{uuid.uuid4().hex}"
    return SQLAuthStore(f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true")


@pytest.fixture(params=["memory", "sql"])
def store(request) -> Generator[AuthStore, None, None]:
    """Yield a fresh AuthStore for each backend."""
    s: AuthStore = MemoryAuthStore() if request.param == "memory" else make_sql_store()
    yield s
    s.close()


@pytest.fixture
def credentials(store: AuthStore) -> CredentialStore:
    return CredentialStore(store)


@pytest.fixture
def ledger(store: AuthStore) -> VerificationLedger:
    return VerificationLedger(store)


@pytest.fixture
def mail() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def service(credentials: CredentialStore, ledger: VerificationLedger, mail: RecordingDispatcher) -> AuthService:
    return AuthService(credentials, ledger, mail, base_url=BASE_URL)


@pytest.fixture
def ctx() -> AuthContext:
    """An anonymous request context with an empty, never-persisted session."""
    return AuthContext(session=Session())


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, store: AuthStore, mail: RecordingDispatcher):
    """Return an async context manager that replaces the real lifespan.

    Runs the production wiring (wire_services) against the test store and the
    recording dispatcher. No purge task and no SMTP dial.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, settings, store, mail)
        yield

    return test_lifespan


@pytest.fixture
def client_env() -> Generator[tuple[TestClient, AuthStore, RecordingDispatcher], None, None]:
    """Yield (client, store, mail) for HTTP integration tests.

    Function-scoped: every test starts with an empty store, an empty cookie
    jar and no recorded mail.
    """
    settings = Settings(debug=True, base_url=BASE_URL, storage_backend="memory")
    test_store = MemoryAuthStore()
    recorder = RecordingDispatcher()
    app.router.lifespan_context = _patch_lifespan(settings, test_store, recorder)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, test_store, recorder

    test_store.close()


@pytest.fixture
def client(client_env) -> TestClient:
    return client_env[0]
