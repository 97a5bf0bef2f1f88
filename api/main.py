"""
api/main.py -- FastAPI application entry point for Keyway.

Run with:  uvicorn api.main:app --reload
           python main.py --dev

Middleware stack (outermost to innermost):
  1. log_requests     -- one access-log line per request with latency
  2. secure_headers   -- CSP, frame, referrer and sniffing headers
  3. session_context  -- loads the server-side Session before the route and
                         commits it (and sets the cookie) afterwards

Lifespan handles startup (settings, store, mailer, service wiring, session
purge task) and shutdown (cancel purge task, drain mail, close store)
symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from api.models import ErrorDetail, ErrorResponse, FieldError, FormValidationError, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.credentials import CredentialStore
from auth.errors import StorageError
from auth.ledger import VerificationLedger
from auth.service import AuthService
from auth.sessions import SessionManager
from auth.store import AuthStore, open_store
from core.config import Settings, get_settings
from mail.mailer import MailDispatcher, Mailer

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("keyway.api")

_SESSION_PURGE_INTERVAL = 60 * 60  # 1 hour

# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def wire_services(app: FastAPI, settings: Settings, store: AuthStore, mail: MailDispatcher) -> None:
    """Build the auth object graph on app.state.

    Shared by the real lifespan and the test fixtures so both run the exact
    same wiring with different backends.
    """
    credentials = CredentialStore(store)
    ledger = VerificationLedger(store, ttl=timedelta(seconds=settings.verification_ttl_seconds))
    app.state.settings = settings
    app.state.store = store
    app.state.credentials = credentials
    app.state.ledger = ledger
    app.state.mail = mail
    app.state.sessions = SessionManager(store, lifetime=timedelta(seconds=settings.session_lifetime_seconds))
    app.state.auth_service = AuthService(
        credentials,
        ledger,
        mail,
        base_url=settings.base_url,
        cooldown=timedelta(seconds=settings.resend_cooldown_seconds),
    )


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired session rows every hour.

    Verification rows are deliberately NOT swept here: expired tokens are
    rejected lazily by VerificationLedger.consume() and removed by purge_all().
    """
    while True:
        await asyncio.sleep(_SESSION_PURGE_INTERVAL)
        try:
            removed = await run_in_threadpool(app.state.sessions.purge_expired)
        except (StorageError, SQLAlchemyError):
            logger.warning("Session purge failed; retrying next interval", exc_info=True)
            continue
        if removed:
            logger.info("Purged %d expired session(s)", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Settings first -- a misconfigured production deploy must fail here.
      2. Store second -- everything else reads or writes through it.
      3. Mailer third -- in production the SMTP login is verified up front so
         a bad relay config is caught at boot, not at the first signup.
      4. Purge task last -- references app.state.sessions.
    """
    logger.info("Keyway API starting up")
    settings = get_settings()
    if settings.debug:
        # Dev mode logs verification links at DEBUG instead of mailing them.
        logging.getLogger("keyway").setLevel(logging.DEBUG)
    store = open_store(settings)
    logger.info("Store initialized (backend=%s)", settings.storage_backend)

    mailer = None
    if not settings.debug:
        mailer = Mailer(
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_username,
            settings.smtp_password,
            settings.smtp_sender,
        )
        logger.info("Dialing SMTP server %s:%d", settings.smtp_host, settings.smtp_port)
        try:
            await run_in_threadpool(mailer.ping)
        except Exception:
            store.close()
            raise
    else:
        logger.info("Dev mode: mail is logged, not sent")
    mail = MailDispatcher(mailer, dev=settings.debug, workers=settings.mail_workers)

    wire_services(app, settings, store, mail)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    mail.shutdown()
    store.close()
    logger.info("Keyway API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Keyway API",
    description="Session-based login, email-verified signup and password reset.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware
#
# @app.middleware("http") wraps in reverse registration order: the LAST
# registered function is the OUTERMOST. Registered innermost-first below.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def session_context(request: Request, call_next):
    """Load the request's Session, run the route, then persist any changes.

    Store calls are blocking, so they run in the threadpool. If the route
    crashed, call_next raises and nothing is committed.
    """
    settings: Settings = request.app.state.settings
    manager: SessionManager = request.app.state.sessions
    session = await run_in_threadpool(manager.load, request.cookies.get(settings.session_cookie_name))
    request.state.session = session

    response = await call_next(request)

    if session.modified:
        token = await run_in_threadpool(manager.commit, session)
        response.set_cookie(
            settings.session_cookie_name,
            value=token,
            httponly=True,
            samesite="lax",
            secure=settings.secure_cookies,
            max_age=settings.session_lifetime_seconds,
            path="/",
        )
    return response


@app.middleware("http")
async def secure_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["Content-Security-Policy"] = "default-src 'self'; frame-ancestors 'self'; form-action 'self';"
    response.headers["Referrer-Policy"] = "origin-when-cross-origin"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "deny"
    response.headers["X-XSS-Protection"] = "0"
    return response


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(FormValidationError)
async def form_validation_handler(request: Request, exc: FormValidationError) -> JSONResponse:
    """422 with per-field errors for checks the route performs itself."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Form validation failed.",
                fields=exc.field_errors(),
            )
        ).model_dump(mode="json", exclude_none=True),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 with per-field errors when the request body or query params fail validation.

    The loc tuple starts with "body" / "query"; only the remainder names the field.
    """
    fields = [
        FieldError(field=".".join(str(part) for part in err["loc"][1:]) or str(err["loc"][0]), message=err["msg"])
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                fields=fields,
            )
        ).model_dump(mode="json", exclude_none=True),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all HTTP exceptions raised by routes and dependencies.

    Route handlers raise HTTPException with a dict detail. When detail is
    already a structured dict, use it directly as the error field rather than
    stringifying it -- str(dict) produces a Python repr, not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(mode="json", exclude_none=True),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for storage failures and other unexpected errors.

    The raw exception is logged server-side only, never echoed to the client.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(mode="json", exclude_none=True),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    store: AuthStore = request.app.state.store
    database = "ok" if store.ping() else "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
