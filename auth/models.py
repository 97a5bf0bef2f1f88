"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and
services do the work; these only own the domain shape.

Layer rule: no imports from api/ or mail/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Identity:
    """A registered account.

    identifier is the email address the account signed up with. It is unique
    across all identities and compared case-sensitively.

    password_hash is an argon2id PHC string. It must never be logged, which is
    why it is excluded from repr().

    version is bumped by every guarded update. update_identity() only writes
    when the stored version still equals this value, so two writers that read
    the same row cannot both win.
    """

    identifier: str
    password_hash: str = field(repr=False)
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    version: int = 1


@dataclass
class Verification:
    """A persisted verification token row.

    Security design:
    - token_hash is SHA-256(plaintext) as hex. The plaintext is handed to the
      user exactly once (in the emailed link) and never stored, so a read of
      the verifications table alone cannot be turned into a working link.
    - identifier binds the row to one address. Lookups always match on
      (token_hash, identifier), so a token minted for one address can never
      validate another.
    """

    token_hash: str
    identifier: str
    expiry: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expiry
