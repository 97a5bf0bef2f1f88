"""
auth/ledger.py -- Verification Token Ledger.

Issues, looks up and retires single-use, time-bound verification tokens.
Per identifier the lifecycle is: none -> issued -> {consumed | expired}.

  issue()       mint a token, persist only its hash, return the plaintext
  peek_active() newest unexpired row, for the resend cooldown check
  consume()     validate (hash, identifier) and expiry -- does NOT delete
  purge_all()   delete every row for the identifier

Validation and deletion are separate steps so a flow can validate, run its
dependent write, and retire the token as one logical unit. Expired rows are
never swept in the background; consume() rejects them lazily.

Layer rule: no imports from api/ or mail/.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from auth.errors import ExpiredError, NotFoundError
from auth.models import Verification, utcnow
from auth.store import AuthStore
from auth.tokens import generate_token, hash_token

logger = logging.getLogger("keyway.auth")

DEFAULT_TTL = timedelta(hours=1)


class VerificationLedger:
    def __init__(self, store: AuthStore, ttl: timedelta = DEFAULT_TTL) -> None:
        self.store = store
        self.ttl = ttl

    def issue(self, identifier: str) -> str:
        """Create a token for identifier and return the plaintext.

        This is the only moment the plaintext exists outside the user's inbox.
        """
        token = generate_token()
        now = utcnow()
        self.store.insert_verification(
            Verification(
                token_hash=hash_token(token),
                identifier=identifier,
                expiry=now + self.ttl,
                created_at=now,
            )
        )
        logger.info("Verification token issued (expires in %ds)", int(self.ttl.total_seconds()))
        return token

    def peek_active(self, identifier: str) -> Verification:
        """Return the most recent unexpired row for identifier. Raises NotFoundError."""
        verification = self.store.latest_verification(identifier, utcnow())
        if verification is None:
            raise NotFoundError(identifier)
        return verification

    def in_cooldown(self, identifier: str, window: timedelta) -> bool:
        """True when a token for identifier was issued less than window ago."""
        try:
            verification = self.peek_active(identifier)
        except NotFoundError:
            return False
        return utcnow() - verification.created_at < window

    def consume(self, token: str, identifier: str) -> None:
        """Validate a presented token for identifier.

        Raises NotFoundError when no row matches the (hash, identifier) pair,
        and ExpiredError when the row exists but is past its expiry. An expired
        row is always ExpiredError, never NotFoundError.
        """
        verification = self.store.get_verification(hash_token(token), identifier)
        if verification is None:
            raise NotFoundError(identifier)
        if verification.is_expired():
            raise ExpiredError(identifier)

    def purge_all(self, identifier: str) -> int:
        """Delete every token row for identifier. Returns the number removed.

        The delete is a single statement, so when two requests race on the
        same token only one of them sees a non-zero count.
        """
        removed = self.store.delete_verifications(identifier)
        logger.debug("Purged %d verification row(s)", removed)
        return removed
