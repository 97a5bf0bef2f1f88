"""
api/routes/v1/auth.py -- Login, signup, registration and password reset endpoints.

Routes:
  POST /api/v1/auth/login          -- password login; renews session token
  POST /api/v1/auth/logout         -- drop authentication; renews session token
  GET  /api/v1/auth/me             -- current identity (requires auth)
  POST /api/v1/auth/signup         -- request a signup link
  GET  /api/v1/auth/register       -- signup link target; stashes ?token in session
  POST /api/v1/auth/register       -- choose password, create identity, log in
  POST /api/v1/auth/reset          -- request a reset link
  GET  /api/v1/auth/reset/update   -- reset link target; stashes ?token in session
  POST /api/v1/auth/reset/update   -- choose new password; session is cleared

This module is the boundary layer: it is the only place auth-domain errors
become HTTP responses.

  InvalidCredentialsError, NotFoundError   -> 401 unauthorized (generic)
  DuplicateIdentifierError on register     -> 401 unauthorized (same as a bad
                                              token; no hint the address exists)
  ExpiredError                             -> 400 expired_token + error flash
  EditConflictError                        -> 409 edit_conflict

Anything else (storage failures, bugs) is left to the catch-all handler in
api/main.py, which logs it and returns a generic 500.

Issuance endpoints (signup, reset) always return the same info flash whether
or not a link was actually sent.

Security:
  Cache-Control: no-store on every response that carries identity data.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response

from api.models import (
    Flash,
    FlashType,
    FormValidationError,
    IdentityResponse,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    ResetRequest,
    ResetUpdateRequest,
    SignupRequest,
    TokenStashResponse,
)
from auth.dependencies import get_auth_context, get_service, require_anonymous, require_authenticated
from auth.errors import (
    DuplicateIdentifierError,
    EditConflictError,
    ExpiredError,
    InvalidCredentialsError,
    NotFoundError,
)
from auth.service import AuthService
from auth.sessions import (
    RESET_EMAIL_KEY,
    RESET_TOKEN_KEY,
    VERIFICATION_EMAIL_KEY,
    VERIFICATION_TOKEN_KEY,
    AuthContext,
)

# Auth policy:
# - POST /auth/login, /auth/signup, GET+POST /auth/register: anonymous only (require_anonymous)
# - POST /auth/logout, /auth/reset, GET+POST /auth/reset/update: anyone
# - GET  /auth/me: requires auth (require_authenticated)
router = APIRouter()

_NO_STORE = {"Cache-Control": "no-store"}

_SIGNUP_SENT = (
    "A link to activate your account has been sent to the email address provided. "
    "Please check your junk folder."
)
_RESET_SENT = (
    "A link to reset your password has been sent to the email address provided. "
    "Please check your junk folder."
)
_EXPIRED = "Expired verification token."
_EMAIL_REQUIRED = "This field is required."


# ---------------------------------------------------------------------------
# Error helpers
# ---------------------------------------------------------------------------


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": "unauthorized", "message": "Unauthorized."},
        headers=_NO_STORE,
    )


def _expired() -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={
            "code": "expired_token",
            "message": _EXPIRED,
            "flash": {"type": FlashType.error.value, "message": _EXPIRED},
        },
    )


def _edit_conflict() -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"code": "edit_conflict", "message": "The account changed while saving. Please try again."},
    )


def _flash(kind: FlashType, message: str) -> MessageResponse:
    return MessageResponse(flash=Flash(type=kind, message=message))


def _resolve_email(body_email: Optional[str], ctx: AuthContext, session_key: str) -> str:
    """Prefer the email from the body; fall back to the one stashed in the session."""
    email = body_email or ctx.session.get(session_key)
    if not email:
        raise FormValidationError({"email": _EMAIL_REQUIRED})
    return email


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=IdentityResponse)
def login(
    body: LoginRequest,
    response: Response,
    ctx: AuthContext = Depends(require_anonymous),
    service: AuthService = Depends(get_service),
) -> IdentityResponse:
    """Authenticate with email and password.

    Returns the same generic 401 for an unknown email and a wrong password.
    """
    try:
        identity = service.login(ctx, body.email, body.password)
    except InvalidCredentialsError as exc:
        raise _unauthorized() from exc
    response.headers.update(_NO_STORE)
    return IdentityResponse.from_identity(identity)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    ctx: AuthContext = Depends(get_auth_context),
    service: AuthService = Depends(get_service),
) -> MessageResponse:
    service.logout(ctx)
    return _flash(FlashType.info, "Logged out.")


@router.get("/auth/me", response_model=IdentityResponse)
def me(
    response: Response,
    ctx: AuthContext = Depends(require_authenticated),
    service: AuthService = Depends(get_service),
) -> IdentityResponse:
    try:
        identity = service.credentials.find_by_id(ctx.identity_id)
    except NotFoundError as exc:
        raise _unauthorized() from exc
    response.headers.update(_NO_STORE)
    return IdentityResponse.from_identity(identity)


# ---------------------------------------------------------------------------
# Signup + registration
# ---------------------------------------------------------------------------


@router.post("/auth/signup", response_model=MessageResponse)
def signup(
    body: SignupRequest,
    ctx: AuthContext = Depends(require_anonymous),
    service: AuthService = Depends(get_service),
) -> MessageResponse:
    service.request_signup(ctx, body.email)
    return _flash(FlashType.info, _SIGNUP_SENT)


@router.get("/auth/register", response_model=TokenStashResponse)
def register_link(
    token: str = "",
    ctx: AuthContext = Depends(require_anonymous),
) -> TokenStashResponse:
    """Target of the emailed signup link. Keeps the token server-side until the form is posted."""
    if not token:
        raise HTTPException(
            status_code=400,
            detail={"code": "missing_token", "message": "Missing verification token."},
        )
    ctx.session.put(VERIFICATION_TOKEN_KEY, token)
    return TokenStashResponse(has_session_email=ctx.session.exists(VERIFICATION_EMAIL_KEY))


@router.post("/auth/register", response_model=MessageResponse)
def register(
    body: RegisterRequest,
    ctx: AuthContext = Depends(require_anonymous),
    service: AuthService = Depends(get_service),
) -> MessageResponse:
    """Create the account and log it in.

    A bad token and an address that was registered in the meantime both
    get the same 401.
    """
    email = _resolve_email(body.email, ctx, VERIFICATION_EMAIL_KEY)
    token = ctx.session.get(VERIFICATION_TOKEN_KEY)
    if not token:
        raise _unauthorized()

    try:
        service.register(ctx, email, body.password, token)
    except (NotFoundError, DuplicateIdentifierError) as exc:
        raise _unauthorized() from exc
    except ExpiredError as exc:
        raise _expired() from exc
    return _flash(FlashType.success, "Successfully created account. Welcome!")


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/reset", response_model=MessageResponse)
def reset(
    body: ResetRequest,
    ctx: AuthContext = Depends(get_auth_context),
    service: AuthService = Depends(get_service),
) -> MessageResponse:
    """Request a reset link. Authenticated callers always reset their own account."""
    if not ctx.is_authenticated and not body.email:
        raise FormValidationError({"email": _EMAIL_REQUIRED})
    service.request_reset(ctx, body.email)
    return _flash(FlashType.info, _RESET_SENT)


@router.get("/auth/reset/update", response_model=TokenStashResponse)
def reset_link(
    token: str = "",
    ctx: AuthContext = Depends(get_auth_context),
) -> TokenStashResponse:
    """Target of the emailed reset link."""
    if not token:
        raise _unauthorized()
    ctx.session.put(RESET_TOKEN_KEY, token)
    return TokenStashResponse(has_session_email=ctx.session.exists(RESET_EMAIL_KEY))


@router.post("/auth/reset/update", response_model=MessageResponse)
def reset_update(
    body: ResetUpdateRequest,
    ctx: AuthContext = Depends(get_auth_context),
    service: AuthService = Depends(get_service),
) -> MessageResponse:
    email = _resolve_email(body.email, ctx, RESET_EMAIL_KEY)
    token = ctx.session.get(RESET_TOKEN_KEY)
    if not token:
        raise _unauthorized()

    try:
        service.reset_password(ctx, email, body.password, token)
    except NotFoundError as exc:
        raise _unauthorized() from exc
    except ExpiredError as exc:
        raise _expired() from exc
    except EditConflictError as exc:
        raise _edit_conflict() from exc
    return _flash(FlashType.success, "Successfully updated password. Please login.")
