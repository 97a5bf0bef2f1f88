"""
auth/tokens.py -- Password hashing and verification-token utilities.

Security design decisions:
  Passwords: argon2id via argon2-cffi's PasswordHasher, used directly (no
       passlib wrapper). argon2id is memory-hard, which makes GPU brute force
       of stolen hashes far more expensive than with a CPU-only KDF. The hasher
       is a module-level instance so the cost parameters are fixed
       process-wide.

       The _DUMMY_HASH constant enables timing equalization in
       CredentialStore.verify_credentials() so response time does not reveal
       whether an identifier exists.

  Verification tokens: 16 bytes from secrets.token_bytes() (128 bits of
       entropy) encoded as unpadded base32, which survives email clients and
       URL query strings without escaping. Only SHA-256(token) is persisted.
       A fast unsalted hash is fine here: the secret is long and random, so
       the slowness argon2 adds for low-entropy passwords buys nothing, and a
       deterministic hash allows an indexed lookup.

  Session tokens: secrets.token_urlsafe(32), opaque, stored server-side.

Layer rule: stdlib + argon2-cffi only.
"""

from __future__ import annotations

import base64
import hashlib
import secrets

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

_TOKEN_BYTES = 16

_hasher = PasswordHasher(type=Type.ID)


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return an argon2id PHC string for the given plaintext password."""
    return _hasher.hash(plain)


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the argon2 hash.

    A malformed stored hash counts as a mismatch rather than an error: the
    caller only needs to know whether the credentials are good.
    """
    try:
        return _hasher.verify(hashed, plain)
    except (VerifyMismatchError, VerificationError, InvalidHashError):
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("keyway_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a full argon2 verification against the dummy hash and discard the result."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Verification tokens
# ---------------------------------------------------------------------------


def generate_token() -> str:
    """Return a new plaintext verification token (26 base32 characters)."""
    raw = secrets.token_bytes(_TOKEN_BYTES)
    return base64.b32encode(raw).decode("ascii").rstrip("=")


def hash_token(token: str) -> str:
    """Return SHA-256(token) as a 64-character hex string."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


def generate_session_token() -> str:
    return secrets.token_urlsafe(32)
