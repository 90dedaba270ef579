"""Outgoing email over SMTP with STARTTLS."""

from __future__ import annotations

import smtplib
import ssl
from email.message import EmailMessage
from email.utils import formataddr

from flask import current_app

SENDER_NAME = "MEGG"


class MailerError(RuntimeError):
    """Email could not be sent; ``code`` and ``status`` map to the API response."""

    def __init__(self, code: str, message: str, status: int = 500, details: str | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status
        self.details = details

    def to_dict(self) -> dict:
        payload = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


def email_configured() -> bool:
    config = current_app.config
    return bool(config.get("EMAIL_USER") and config.get("EMAIL_PASSWORD"))


def _connect() -> smtplib.SMTP:
    config = current_app.config
    host = config.get("SMTP_HOST") or "smtp.gmail.com"
    port = int(config.get("SMTP_PORT") or 587)
    try:
        server = smtplib.SMTP(host, port, timeout=30)
        server.starttls(context=ssl.create_default_context())
        server.login(config["EMAIL_USER"], config["EMAIL_PASSWORD"])
    except (smtplib.SMTPException, OSError) as exc:
        current_app.logger.error("SMTP connection to %s:%s failed: %s", host, port, exc)
        raise MailerError(
            "SMTP_CONNECTION_FAILED",
            "Email service connection failed. Please check your email configuration.",
            500,
            details=str(exc),
        ) from exc
    return server


def send_mail(to: str, subject: str, html: str, text: str | None = None) -> None:
    """Send an HTML email to ``to``.

    Raises:
        MailerError: ``EMAIL_SERVICE_UNAVAILABLE`` when credentials are missing,
            ``SMTP_CONNECTION_FAILED`` when the server cannot be reached or
            rejects the login, and ``GENERAL_ERROR`` when delivery fails.
    """

    if not email_configured():
        raise MailerError("EMAIL_SERVICE_UNAVAILABLE", "Email service not available", 503)

    message = EmailMessage()
    message["From"] = formataddr((SENDER_NAME, current_app.config["EMAIL_USER"]))
    message["To"] = to
    message["Subject"] = subject
    message.set_content(text or "This message requires an HTML capable email client.")
    message.add_alternative(html, subtype="html")

    server = _connect()
    try:
        server.send_message(message)
    except (smtplib.SMTPException, OSError) as exc:
        current_app.logger.error("Failed to send email to %s: %s", to, exc)
        raise MailerError(
            "GENERAL_ERROR", "Failed to send email", 500, details=str(exc)
        ) from exc
    finally:
        try:
            server.quit()
        except (smtplib.SMTPException, OSError) as exc:
            current_app.logger.debug("SMTP QUIT failed: %s", exc)
