"""
tests/test_app.py -- Application-level behaviour in api/main.py.

Covers:
  - storage failures become the generic 500 envelope, detail stays server-side
  - startup releases the store when the SMTP relay is unreachable
"""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

import api.main as api_main
from auth.errors import StoreTimeoutError
from core.config import Settings


def test_storage_failure_returns_internal_error(client_env, monkeypatch, caplog):
    _, store, _ = client_env

    def timed_out(identifier):
        raise StoreTimeoutError("store call exceeded 3.0s on identities")

    monkeypatch.setattr(store, "identifier_exists", timed_out)

    # Lifespan already ran via client_env; this client only changes error propagation.
    client = TestClient(api_main.app, raise_server_exceptions=False)
    with caplog.at_level(logging.ERROR, logger="keyway.api"):
        resp = client.post("/api/v1/auth/signup", json={"email": "new@example.com"})

    assert resp.status_code == 500
    assert resp.json() == {"error": {"code": "internal_error", "message": "An unexpected error occurred."}}
    assert "exceeded" not in resp.text
    assert "StoreTimeoutError" in caplog.text


def test_startup_closes_store_when_smtp_unreachable(monkeypatch):
    settings = Settings(
        debug=False,
        base_url="https://auth.example.com",
        smtp_host="smtp.example.com",
        smtp_sender="noreply@example.com",
        storage_backend="memory",
    )
    store = MagicMock()
    mailer = MagicMock()
    mailer.ping.side_effect = ConnectionRefusedError("smtp down")
    monkeypatch.setattr(api_main, "get_settings", lambda: settings)
    monkeypatch.setattr(api_main, "open_store", lambda s: store)
    monkeypatch.setattr(api_main, "Mailer", lambda *args, **kwargs: mailer)

    async def start() -> None:
        async with api_main.lifespan(api_main.app):
            pass

    with pytest.raises(ConnectionRefusedError):
        asyncio.run(start())
    store.close.assert_called_once()
