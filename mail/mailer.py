"""
mail/mailer.py -- Outbound verification mail over SMTP.

Mailer renders a Jinja2 template and sends it. Each template defines two
blocks, `subject` and `body`, and receives a single variable, `link`.

MailDispatcher is what AuthService talks to. dispatch() hands the send to a
small thread pool and returns immediately: the HTTP response never waits on
the SMTP relay. A failed send is logged and dropped -- never surfaced to the
user, never retried. In dev mode nothing is sent; the link is logged at
DEBUG so a developer can click through signup locally.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import logging
import smtplib
from concurrent.futures import Future, ThreadPoolExecutor
from email.message import EmailMessage
from email.utils import formataddr
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined

logger = logging.getLogger("keyway.mail")

TEMPLATE_DIR = Path(__file__).parent / "templates"
VERIFICATION_TEMPLATE = "email-verification.txt"
RESET_TEMPLATE = "password-reset.txt"

_SMTP_TIMEOUT = 10.0


class Mailer:
    """SMTP sender with a cached Jinja2 template environment.

    Usage:
        mailer = Mailer("smtp.example.com", 587, "user", "pass", "noreply@example.com")
        mailer.ping()
        mailer.send("a@example.com", VERIFICATION_TEMPLATE, "https://example.com/...")
    """

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        sender: str,
        template_dir: Path = TEMPLATE_DIR,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = formataddr(("Do Not Reply", sender))
        self.env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            undefined=StrictUndefined,
            autoescape=False,  # plain-text mail
            keep_trailing_newline=True,
        )

    def render(self, template_name: str, link: str) -> tuple[str, str]:
        """Return (subject, body) for template_name. Raises TemplateNotFound for unknown names."""
        template = self.env.get_template(template_name)
        context = template.new_context({"link": link})
        subject = "".join(template.blocks["subject"](context)).strip()
        body = "".join(template.blocks["body"](context)).strip() + "\n"
        return subject, body

    def send(self, recipient: str, template_name: str, link: str) -> None:
        subject, body = self.render(template_name, link)
        msg = EmailMessage()
        msg["To"] = recipient
        msg["From"] = self.sender
        msg["Subject"] = subject
        msg.set_content(body)
        with self._open() as smtp:
            smtp.send_message(msg)

    def ping(self) -> None:
        """Open and authenticate an SMTP session, then close it. Raises on failure."""
        with self._open() as smtp:
            smtp.noop()

    def _open(self) -> smtplib.SMTP:
        smtp = smtplib.SMTP(self.host, self.port, timeout=_SMTP_TIMEOUT)
        try:
            smtp.ehlo()
            if smtp.has_extn("starttls"):
                smtp.starttls()
                smtp.ehlo()
            if self.username:
                smtp.login(self.username, self.password)
        except Exception:
            # SSLError / OSError from starttls() must not leak the socket either.
            smtp.close()
            raise
        return smtp


class MailDispatcher:
    """Fire-and-forget front end for a Mailer."""

    def __init__(self, mailer: Optional[Mailer], dev: bool = False, workers: int = 2) -> None:
        self.mailer = mailer
        self.dev = dev
        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="keyway-mail")

    def dispatch(self, recipient: str, template_name: str, link: str) -> Optional[Future]:
        """Queue a send and return immediately.

        Returns the Future so tests can wait on it; production callers ignore it.
        """
        logger.debug("mailed %s link=%s", template_name, link)
        if self.dev or self.mailer is None:
            return None
        return self._pool.submit(self._send, recipient, template_name, link)

    def _send(self, recipient: str, template_name: str, link: str) -> None:
        try:
            self.mailer.send(recipient, template_name, link)
        except Exception:
            # Mail failures must never reach the user or crash the worker.
            logger.error("mailer: failed to send %s", template_name, exc_info=True)

    def shutdown(self) -> None:
        """Wait for in-flight mail to finish."""
        self._pool.shutdown(wait=True)
