"""
API request and response models for Keyway REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Form validation failures travel on their own channel: Pydantic's
RequestValidationError for body parsing, and FormValidationError for checks
that need session state (e.g. an email that may come from the session or
the body). Both render as 422 "validation_error" with per-field messages, so
a client can redisplay the form. Domain failures (auth/errors.py) never use
this channel.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, EmailStr, Field

from auth.models import Identity

_PASSWORD_MIN = 8
_PASSWORD_MAX = 72


# ---------------------------------------------------------------------------
# Form validation
# ---------------------------------------------------------------------------


class FieldError(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    message: str


class FormValidationError(Exception):
    """A form failed validation. Distinct from every auth-domain error."""

    def __init__(self, fields: dict[str, str]) -> None:
        super().__init__(", ".join(f"{k}: {v}" for k, v in fields.items()))
        self.fields = fields

    def field_errors(self) -> list[FieldError]:
        return [FieldError(field=k, message=v) for k, v in self.fields.items()]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


def _strip(value):
    return value.strip() if isinstance(value, str) else value


# Only the address is trimmed. Passwords are checked and hashed exactly as typed.
Email = Annotated[EmailStr, BeforeValidator(_strip)]


class LoginRequest(BaseModel):
    email: Email
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class SignupRequest(BaseModel):
    email: Email


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    email is optional: when the signup request was made from the same
    browser the address is already in the session, and the session value
    is used whenever the body omits it.
    """

    email: Optional[Email] = None
    password: str = Field(min_length=_PASSWORD_MIN, max_length=_PASSWORD_MAX)


class ResetRequest(BaseModel):
    """Request body for POST /api/v1/auth/reset. email is ignored for authenticated callers."""

    email: Optional[Email] = None


class ResetUpdateRequest(BaseModel):
    email: Optional[Email] = None
    password: str = Field(min_length=_PASSWORD_MIN, max_length=_PASSWORD_MAX)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class FlashType(str, Enum):
    info = "info"
    success = "success"
    error = "error"


class Flash(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: FlashType
    message: str


class MessageResponse(BaseModel):
    """Generic response carrying a user-facing flash message."""

    model_config = ConfigDict(frozen=True)

    flash: Flash


class TokenStashResponse(BaseModel):
    """Response for the GET link targets. Tells the client whether to ask for the email."""

    model_config = ConfigDict(frozen=True)

    has_session_email: bool


class IdentityResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    created_at: str

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentityResponse":
        return cls(
            id=identity.id,
            email=identity.identifier,
            created_at=identity.created_at.isoformat() if identity.created_at else "",
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    fields: Optional[list[FieldError]] = None
    flash: Optional[Flash] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
