"""
auth/sessions.py -- Server-side sessions and the per-request auth context.

A Session is a per-request value: an opaque token (sent to the browser as an
httpOnly cookie) plus a small JSON dict persisted by the AuthStore. The
request pipeline loads it before the route runs and commits it afterwards;
routes and AuthService only ever mutate the in-memory value.

renew_token() is the session-fixation defence. It swaps in a fresh token and
queues the old one for deletion on commit, so a token an attacker planted
before login never carries the authenticated identity.

AuthContext is threaded explicitly through every AuthService call instead of
living in a global "is authenticated" flag.

Layer rule: no imports from api/ or mail/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from auth.models import utcnow
from auth.store import AuthStore
from auth.tokens import generate_session_token

# Session keys
AUTHENTICATED_ID_KEY = "authenticated_identity_id"
VERIFICATION_EMAIL_KEY = "verification_email"
VERIFICATION_TOKEN_KEY = "verification_token"
RESET_EMAIL_KEY = "reset_email"
RESET_TOKEN_KEY = "reset_token"

DEFAULT_LIFETIME = timedelta(hours=24)


class Session:
    def __init__(self, token: Optional[str] = None, data: Optional[dict] = None) -> None:
        self.token = token
        self.data: dict = dict(data or {})
        self.modified = False
        self._retired: list[str] = []

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def put(self, key: str, value: Any) -> None:
        self.data[key] = value
        self.modified = True

    def pop(self, key: str, default: Any = None) -> Any:
        if key in self.data:
            self.modified = True
        return self.data.pop(key, default)

    def exists(self, key: str) -> bool:
        return key in self.data

    def clear(self) -> None:
        self.data.clear()
        self.modified = True

    def renew_token(self) -> None:
        """Replace the session token, keeping the data."""
        if self.token is not None:
            self._retired.append(self.token)
        self.token = generate_session_token()
        self.modified = True

    @property
    def retired_tokens(self) -> list[str]:
        return list(self._retired)


class SessionManager:
    """Loads and persists Session values through an AuthStore."""

    def __init__(self, store: AuthStore, lifetime: timedelta = DEFAULT_LIFETIME) -> None:
        self.store = store
        self.lifetime = lifetime

    def load(self, token: Optional[str]) -> Session:
        """Return the session for token, or a fresh anonymous one if unknown or expired."""
        if token:
            data = self.store.load_session(token, utcnow())
            if data is not None:
                return Session(token, data)
        return Session()

    def commit(self, session: Session) -> Optional[str]:
        """Persist a modified session and return the token the client should hold.

        Unmodified sessions are not written. Tokens retired by renew_token()
        are deleted before the new row is saved.
        """
        if not session.modified:
            return session.token
        for old_token in session.retired_tokens:
            self.store.delete_session(old_token)
        if session.token is None:
            session.token = generate_session_token()
        self.store.save_session(session.token, session.data, utcnow() + self.lifetime)
        session.modified = False
        return session.token

    def purge_expired(self) -> int:
        return self.store.purge_expired_sessions(utcnow())


@dataclass
class AuthContext:
    """The authentication state of one request.

    identity_id is set only when the session names an identity AND that
    identity still exists in the store.
    """

    session: Session
    identity_id: Optional[int] = None

    @property
    def is_authenticated(self) -> bool:
        return self.identity_id is not None
