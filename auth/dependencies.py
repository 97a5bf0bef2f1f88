"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The session middleware in api/main.py loads a Session onto request.state
before any route runs. get_auth_context() turns it into an AuthContext:

  1. Read the identity id stored in the session (if any).
  2. Confirm that identity still exists. A session naming a deleted or stale
     identity is treated as anonymous rather than trusted.

The AuthContext is cached on request.state so one request costs at most one
existence check.

get_auth_context() never raises for anonymous users.
require_authenticated() raises HTTP 401.

Layer rule: no imports from api/ or mail/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request

from auth.credentials import CredentialStore
from auth.service import AuthService
from auth.sessions import AUTHENTICATED_ID_KEY, AuthContext, Session

logger = logging.getLogger("keyway.auth")


def get_session(request: Request) -> Session:
    """Return the Session loaded by the session middleware."""
    return request.state.session


def get_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_auth_context(request: Request) -> AuthContext:
    """Resolve the request's AuthContext from its session."""
    cached = getattr(request.state, "auth", None)
    if cached is not None:
        return cached

    session = get_session(request)
    ctx = AuthContext(session=session)
    identity_id = session.get(AUTHENTICATED_ID_KEY)
    if isinstance(identity_id, int):
        credentials: CredentialStore = request.app.state.credentials
        if credentials.exists(identity_id):
            ctx.identity_id = identity_id
        else:
            logger.info("Session references missing identity %d; treating as anonymous", identity_id)
    request.state.auth = ctx
    return ctx


def require_authenticated(request: Request) -> AuthContext:
    """Require authentication. Raises HTTP 401 if the request is anonymous.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(ctx: AuthContext = Depends(require_authenticated)): ...
    """
    ctx = get_auth_context(request)
    if not ctx.is_authenticated:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return ctx


def require_anonymous(request: Request) -> AuthContext:
    """Reject already-authenticated callers with HTTP 400 (login/signup/register)."""
    ctx = get_auth_context(request)
    if ctx.is_authenticated:
        raise HTTPException(
            status_code=400,
            detail={"code": "already_authenticated", "message": "Already authenticated."},
        )
    return ctx
