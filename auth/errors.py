"""
auth/errors.py -- Domain error taxonomy for the auth core.

Two families, kept apart on purpose:

  AuthError subclasses are recoverable domain outcomes. The credential store
  and the verification ledger raise them; api/routes/v1/auth.py maps each one
  to a fixed user-facing response. They are never retried.

  StorageError subclasses are infrastructure failures (timeouts, lost
  connections). Routes do not catch them -- the catch-all handler in
  api/main.py logs the full detail and returns a generic 500.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for recoverable auth-domain failures."""


class NotFoundError(AuthError):
    """No matching identity or verification row."""


class ExpiredError(AuthError):
    """A verification row matched but is past its expiry."""


class InvalidCredentialsError(AuthError):
    """Unknown identifier OR wrong password. Deliberately a single type."""


class DuplicateIdentifierError(AuthError):
    """Unique-constraint violation on the identifier column."""


class EditConflictError(AuthError):
    """A guarded update affected no rows: the row changed since it was read."""


class StorageError(Exception):
    """Base class for persistence-layer failures outside the domain taxonomy."""


class StoreTimeoutError(StorageError):
    """A store call exceeded the configured per-call timeout."""
