"""Unit tests for auth/store.py -- backend selection, timeouts and isolation.

Most store behaviour is covered through CredentialStore and VerificationLedger
(parametrized over both backends). This module covers what only the store
itself owns.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from auth.errors import StoreTimeoutError
from auth.models import Identity, utcnow
from auth.store import AuthStore, MemoryAuthStore, SQLAuthStore, open_store
from core.config import Settings


def test_open_store_memory() -> None:
    store = open_store(Settings(debug=True, storage_backend="memory"))
    assert isinstance(store, MemoryAuthStore)


def test_open_store_sql(tmp_path) -> None:
    settings = Settings(debug=True, storage_backend="sql", database_url=f"sqlite:///{tmp_path / 'keyway.db'}")
    store = open_store(settings)
    try:
        assert isinstance(store, SQLAuthStore)
        assert store.ping() is True
    finally:
        store.close()


def test_sql_store_persists_across_instances(tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'keyway.db'}"
    first = SQLAuthStore(url)
    created = first.insert_identity(Identity(identifier="a@example.com", password_hash="x"))
    first.close()

    second = SQLAuthStore(url)
    try:
        assert second.get_identity_by_id(created.id).identifier == "a@example.com"
    finally:
        second.close()


def test_memory_store_times_out_when_lock_held() -> None:
    store = MemoryAuthStore(timeout=0.05)
    store._lock.acquire()
    try:
        with pytest.raises(StoreTimeoutError):
            store.identity_exists(1)
    finally:
        store._lock.release()


def test_returned_identity_is_a_copy(store: AuthStore) -> None:
    created = store.insert_identity(Identity(identifier="a@example.com", password_hash="x"))
    fetched = store.get_identity_by_id(created.id)
    fetched.identifier = "mutated@example.com"
    assert store.get_identity_by_id(created.id).identifier == "a@example.com"


def test_session_data_round_trip(store: AuthStore) -> None:
    now = utcnow()
    store.save_session("tok", {"a": 1, "b": "two"}, now + timedelta(hours=1))
    assert store.load_session("tok", now) == {"a": 1, "b": "two"}
    store.save_session("tok", {"a": 2}, now + timedelta(hours=1))
    assert store.load_session("tok", now) == {"a": 2}
    store.delete_session("tok")
    assert store.load_session("tok", now) is None
