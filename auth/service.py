"""
auth/service.py -- AuthService: the login, signup, registration and reset flows.

Each flow is a short, ordered sequence of CredentialStore and
VerificationLedger calls plus session side effects. There are no database
transactions spanning steps; every step is idempotent or order-safe, and
uniqueness is guarded downstream by the store.

Flows:
  login          verify_credentials -> renew session token -> store identity id
  logout         renew session token -> drop identity id
  request_signup cooldown/exists check -> issue -> mail -> stash email in session
  register       consume -> purge_all (claim) -> create -> login
  request_reset  cooldown/exists check -> issue -> mail -> stash email in session
  reset_password consume -> update_password -> purge_all -> clear session

Domain errors from auth/errors.py propagate to the caller unchanged; this
module never maps them to HTTP. Storage errors propagate too.

Issuance requests answer identically whether or not a token was minted.
Known identifiers (signup), unknown identifiers (reset), and repeat requests
inside the cooldown window are silent no-ops: that keeps the endpoints from
leaking which addresses have accounts, and makes rapid resends idempotent.

Layer rule: no imports from api/. The mail dispatcher is injected; only
template names come from mail/.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING
from urllib.parse import urlencode

from auth.credentials import CredentialStore
from auth.errors import NotFoundError
from auth.ledger import VerificationLedger
from auth.models import Identity
from auth.sessions import AUTHENTICATED_ID_KEY, RESET_EMAIL_KEY, VERIFICATION_EMAIL_KEY, AuthContext
from mail.mailer import RESET_TEMPLATE, VERIFICATION_TEMPLATE

if TYPE_CHECKING:
    from mail.mailer import MailDispatcher

logger = logging.getLogger("keyway.auth")

DEFAULT_COOLDOWN = timedelta(minutes=5)

REGISTER_PATH = "/api/v1/auth/register"
RESET_UPDATE_PATH = "/api/v1/auth/reset/update"


class AuthService:
    def __init__(
        self,
        credentials: CredentialStore,
        ledger: VerificationLedger,
        mail: MailDispatcher,
        base_url: str,
        cooldown: timedelta = DEFAULT_COOLDOWN,
    ) -> None:
        self.credentials = credentials
        self.ledger = ledger
        self.mail = mail
        self.base_url = base_url.rstrip("/")
        self.cooldown = cooldown

    # ------------------------------------------------------------------
    # Session helpers
    # ------------------------------------------------------------------

    def establish(self, ctx: AuthContext, identity_id: int) -> None:
        """Mark ctx as authenticated as identity_id.

        The token is renewed FIRST. Storing the id under the pre-login token
        would let anyone who knew that token (session fixation) ride the
        authenticated session.
        """
        ctx.session.renew_token()
        ctx.session.put(AUTHENTICATED_ID_KEY, identity_id)
        ctx.identity_id = identity_id

    def logout(self, ctx: AuthContext) -> None:
        ctx.session.renew_token()
        ctx.session.pop(AUTHENTICATED_ID_KEY)
        ctx.identity_id = None

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, ctx: AuthContext, identifier: str, password: str) -> Identity:
        """Raises InvalidCredentialsError for an unknown identifier or a wrong password."""
        identity = self.credentials.verify_credentials(identifier, password)
        self.establish(ctx, identity.id)
        logger.info("Identity %d logged in", identity.id)
        return identity

    # ------------------------------------------------------------------
    # Signup + registration
    # ------------------------------------------------------------------

    def request_signup(self, ctx: AuthContext, email: str) -> bool:
        """Send a signup link to email unless suppressed. Returns True if a token was issued."""
        if self.credentials.exists_with_identifier(email):
            logger.debug("Signup requested for existing identity; suppressed")
            return False
        if self.ledger.in_cooldown(email, self.cooldown):
            logger.debug("Signup requested inside cooldown window; suppressed")
            return False

        token = self.ledger.issue(email)
        self.mail.dispatch(email, VERIFICATION_TEMPLATE, self._link(REGISTER_PATH, token))

        # Start from a clean session holding only the address, so the
        # registration form does not have to ask for it again.
        ctx.session.clear()
        ctx.session.renew_token()
        ctx.session.put(VERIFICATION_EMAIL_KEY, email)
        ctx.identity_id = None
        return True

    def register(self, ctx: AuthContext, identifier: str, password: str, token: str) -> Identity:
        """Create the identity a verification token authorizes, then log it in.

        Raises NotFoundError / ExpiredError for a bad token and
        DuplicateIdentifierError if the identifier was taken meanwhile.

        purge_all() doubles as the claim on the token: the delete is atomic,
        so when two requests validate the same token concurrently only the
        one that removed rows may go on to create the identity.
        """
        self.ledger.consume(token, identifier)
        if self.ledger.purge_all(identifier) == 0:
            raise NotFoundError(identifier)
        identity = self.credentials.create(identifier, password)

        ctx.session.clear()
        self.establish(ctx, identity.id)
        return identity

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_reset(self, ctx: AuthContext, email: str | None = None) -> bool:
        """Send a reset link unless suppressed. Returns True if a token was issued.

        An authenticated caller always resets their own identity; email is
        ignored in that case.
        """
        if ctx.is_authenticated:
            email = self.credentials.find_by_id(ctx.identity_id).identifier
        if not email:
            raise ValueError("email is required when not authenticated")

        if not self.credentials.exists_with_identifier(email):
            logger.debug("Reset requested for unknown identifier; suppressed")
            return False
        if self.ledger.in_cooldown(email, self.cooldown):
            logger.debug("Reset requested inside cooldown window; suppressed")
            return False

        token = self.ledger.issue(email)
        self.mail.dispatch(email, RESET_TEMPLATE, self._link(RESET_UPDATE_PATH, token))

        ctx.session.renew_token()
        ctx.session.put(RESET_EMAIL_KEY, email)
        return True

    def reset_password(self, ctx: AuthContext, identifier: str, password: str, token: str) -> None:
        """Set a new password for the identity a reset token authorizes.

        Raises NotFoundError / ExpiredError for a bad token, NotFoundError if
        the identity is gone, EditConflictError on a concurrent update. The
        session is cleared afterwards so the user must log in again.
        """
        self.ledger.consume(token, identifier)
        identity = self.credentials.find_by_identifier(identifier)
        self.credentials.update_password(identity.id, password)
        self.ledger.purge_all(identifier)

        ctx.session.clear()
        ctx.session.renew_token()
        ctx.identity_id = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _link(self, path: str, token: str) -> str:
        return f"{self.base_url}{path}?{urlencode({'token': token})}"
