"""Unit tests for auth/ledger.py -- the Verification Token Ledger.

Covers:
- issue -> consume for the issuing identifier
- tokens are bound to the identifier they were issued for
- an expired row raises ExpiredError, never NotFoundError
- purge_all retires every token for the identifier (and only that identifier)
- plaintext tokens are never persisted
- peek_active / in_cooldown
"""

from datetime import timedelta

import pytest

from auth.errors import ExpiredError, NotFoundError
from auth.ledger import VerificationLedger
from auth.models import Verification, utcnow
from auth.store import AuthStore
from auth.tokens import hash_token


def _insert_expired(store: AuthStore, token: str, identifier: str) -> None:
    now = utcnow()
    store.insert_verification(
        Verification(
            token_hash=hash_token(token),
            identifier=identifier,
            expiry=now - timedelta(minutes=1),
            created_at=now - timedelta(hours=1, minutes=1),
        )
    )


class TestIssueAndConsume:
    def test_consume_issued_token(self, ledger: VerificationLedger) -> None:
        token = ledger.issue("a@example.com")
        ledger.consume(token, "a@example.com")  # does not raise

    def test_consume_does_not_delete(self, ledger: VerificationLedger) -> None:
        token = ledger.issue("a@example.com")
        ledger.consume(token, "a@example.com")
        ledger.consume(token, "a@example.com")

    def test_token_shape(self, ledger: VerificationLedger) -> None:
        token = ledger.issue("a@example.com")
        assert len(token) == 26
        assert token.isalnum() and token.upper() == token

    def test_only_hash_is_persisted(self, ledger: VerificationLedger, store: AuthStore) -> None:
        token = ledger.issue("a@example.com")
        row = store.latest_verification("a@example.com", utcnow())
        assert row is not None
        assert row.token_hash == hash_token(token)
        assert row.token_hash != token

    def test_expiry_uses_ttl(self, store: AuthStore) -> None:
        ledger = VerificationLedger(store, ttl=timedelta(minutes=10))
        before = utcnow()
        ledger.issue("a@example.com")
        row = store.latest_verification("a@example.com", utcnow())
        assert timedelta(minutes=9) < row.expiry - before <= timedelta(minutes=10, seconds=5)

    def test_unknown_token(self, ledger: VerificationLedger) -> None:
        ledger.issue("a@example.com")
        with pytest.raises(NotFoundError):
            ledger.consume("NOTAREALTOKEN", "a@example.com")

    def test_token_bound_to_identifier(self, ledger: VerificationLedger) -> None:
        token = ledger.issue("a@example.com")
        ledger.issue("b@example.com")
        with pytest.raises(NotFoundError):
            ledger.consume(token, "b@example.com")

    def test_expired_row_raises_expired(self, ledger: VerificationLedger, store: AuthStore) -> None:
        _insert_expired(store, "STALETOKEN", "a@example.com")
        with pytest.raises(ExpiredError):
            ledger.consume("STALETOKEN", "a@example.com")

    def test_several_live_tokens_all_valid(self, ledger: VerificationLedger) -> None:
        first = ledger.issue("a@example.com")
        second = ledger.issue("a@example.com")
        ledger.consume(first, "a@example.com")
        ledger.consume(second, "a@example.com")


class TestPurgeAll:
    def test_purge_then_consume_not_found(self, ledger: VerificationLedger) -> None:
        token = ledger.issue("a@example.com")
        assert ledger.purge_all("a@example.com") == 1
        with pytest.raises(NotFoundError):
            ledger.consume(token, "a@example.com")

    def test_purge_removes_expired_rows_too(self, ledger: VerificationLedger, store: AuthStore) -> None:
        ledger.issue("a@example.com")
        _insert_expired(store, "STALETOKEN", "a@example.com")
        assert ledger.purge_all("a@example.com") == 2
        with pytest.raises(NotFoundError):
            ledger.consume("STALETOKEN", "a@example.com")

    def test_purge_leaves_other_identifiers(self, ledger: VerificationLedger) -> None:
        ledger.issue("a@example.com")
        other = ledger.issue("b@example.com")
        ledger.purge_all("a@example.com")
        ledger.consume(other, "b@example.com")

    def test_second_purge_removes_nothing(self, ledger: VerificationLedger) -> None:
        ledger.issue("a@example.com")
        assert ledger.purge_all("a@example.com") == 1
        assert ledger.purge_all("a@example.com") == 0


class TestPeekAndCooldown:
    def test_peek_active_missing(self, ledger: VerificationLedger) -> None:
        with pytest.raises(NotFoundError):
            ledger.peek_active("a@example.com")

    def test_peek_active_ignores_expired(self, ledger: VerificationLedger, store: AuthStore) -> None:
        _insert_expired(store, "STALETOKEN", "a@example.com")
        with pytest.raises(NotFoundError):
            ledger.peek_active("a@example.com")

    def test_peek_active_returns_newest(self, ledger: VerificationLedger) -> None:
        ledger.issue("a@example.com")
        second = ledger.issue("a@example.com")
        assert ledger.peek_active("a@example.com").token_hash == hash_token(second)

    def test_in_cooldown(self, ledger: VerificationLedger) -> None:
        assert ledger.in_cooldown("a@example.com", timedelta(minutes=5)) is False
        ledger.issue("a@example.com")
        assert ledger.in_cooldown("a@example.com", timedelta(minutes=5)) is True
        assert ledger.in_cooldown("a@example.com", timedelta(0)) is False
