"""
auth/mailer.py -- Outgoing mail for the password reset flow.

SmtpMailer delivers an HTML message over SMTP (optional STARTTLS + login).
Delivery failures propagate to the caller: the reset flow treats a mail
error as its own error.

The reset email body is a Jinja2 template with autoescaping on, so a username
containing markup is rendered inert.
"""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Protocol

from jinja2 import Environment, select_autoescape

from core.config import Settings

logger = logging.getLogger("libraryauth.mail")

_env = Environment(autoescape=select_autoescape(default=True, default_for_string=True))

RESET_SUBJECT = "Password reset - Library account"

_RESET_TEMPLATE = _env.from_string(
    """\
<h2>Password reset</h2>
<p>Hello {{ username }},</p>
<p>A password reset was requested for your library account. Use the link below to choose a new password:</p>
<p><a href="{{ reset_url }}">Reset password</a></p>
<p>This link expires in {{ ttl_minutes }} minutes and can be used once.</p>
<p>If you did not request a reset, ignore this email.</p>
"""
)


def render_reset_email(username: str, reset_url: str, ttl_minutes: int) -> str:
    return _RESET_TEMPLATE.render(username=username, reset_url=reset_url, ttl_minutes=ttl_minutes)


class Mailer(Protocol):
    def send(self, to: str, subject: str, html_body: str) -> None: ...


class SmtpMailer:
    """Send mail through the SMTP server configured in Settings.

    With no SMTP_HOST configured the message is logged and dropped, which
    keeps local development usable without a mail server.
    """

    def __init__(self, settings: Settings) -> None:
        self.host = settings.smtp_host
        self.port = settings.smtp_port
        self.user = settings.smtp_user
        self.password = settings.smtp_password
        self.sender = settings.smtp_from
        self.starttls = settings.smtp_starttls

    def send(self, to: str, subject: str, html_body: str) -> None:
        if not self.host:
            logger.warning("SMTP_HOST not configured; dropping mail to %s (subject=%s)", to, subject)
            return

        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content("This message requires an HTML-capable mail client.")
        msg.add_alternative(html_body, subtype="html")

        with smtplib.SMTP(self.host, self.port, timeout=30) as server:
            if self.starttls:
                server.starttls()
            if self.user:
                server.login(self.user, self.password)
            server.send_message(msg)
        logger.info("Mail sent to %s subject=%s", to, subject)
