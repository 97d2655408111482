"""
auth/mail.py -- Outbound mail capability for verification and password-reset links.

The credential service depends only on the Mailer protocol:
    send_verification_email(email, token)
    send_password_reset_email(email, token)
Both may raise MailDeliveryError. Callers treat delivery as best-effort:
a failed send never rolls back the principal mutation that preceded it.

SmtpMailer is the production implementation (aiosmtplib). When SMTP_HOST is
not configured it refuses to send rather than silently dropping mail, so the
caller can report email_sent=False and the user can retry later.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from email.message import EmailMessage
from typing import Protocol

import aiosmtplib

from core.config import Settings
from core.errors import InternalError

logger = logging.getLogger("authcore.mail")


class MailDeliveryError(InternalError):
    code = "mail_delivery_failed"
    default_message = "Failed to send email."


class Mailer(Protocol):
    async def send_verification_email(self, email: str, token: str) -> None: ...

    async def send_password_reset_email(self, email: str, token: str) -> None: ...


class SmtpMailer:
    """Send transactional mail through an SMTP relay.

    Usage:
        mailer = SmtpMailer(get_settings())
        await mailer.send_verification_email("a@x.com", token)
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        if not settings.smtp_configured:
            logger.warning("SMTP not configured -- email delivery is disabled")

    async def send_verification_email(self, email: str, token: str) -> None:
        url = f"{self._settings.frontend_url}/confirm-email?token={token}"
        await self._send(
            email,
            subject="Verify your email",
            text=f"Click to verify your email: {url}",
            html=f'<p>Click <a href="{url}">here</a> to verify your email</p>',
        )

    async def send_password_reset_email(self, email: str, token: str) -> None:
        url = f"{self._settings.frontend_url}/reset-password?token={token}"
        await self._send(
            email,
            subject="Reset your password",
            text=f"Reset your password: {url}",
            html=f'<p>Click <a href="{url}">here</a> to reset your password</p>',
        )

    async def _send(self, to: str, subject: str, text: str, html: str) -> None:
        cfg = self._settings
        if not cfg.smtp_configured:
            logger.error("Attempted to send %r but SMTP is not configured", subject)
            raise MailDeliveryError("SMTP not configured -- cannot send emails.")

        message = EmailMessage()
        message["From"] = cfg.from_email
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text)
        message.add_alternative(html, subtype="html")

        try:
            await aiosmtplib.send(
                message,
                hostname=cfg.smtp_host,
                port=cfg.smtp_port,
                username=cfg.smtp_user or None,
                password=cfg.smtp_pass or None,
                use_tls=cfg.smtp_secure,
                timeout=10,
            )
        except aiosmtplib.SMTPAuthenticationError as exc:
            logger.error("SMTP authentication failed sending %r: %s", subject, exc)
            raise MailDeliveryError("SMTP authentication failed. Check SMTP_USER and SMTP_PASS.") from exc
        except aiosmtplib.SMTPResponseException as exc:
            logger.error("SMTP server rejected %r (%s): %s", subject, exc.code, exc.message)
            raise MailDeliveryError(f"SMTP server error ({exc.code}).") from exc
        except (aiosmtplib.SMTPException, OSError) as exc:
            logger.error("Cannot deliver %r via %s:%s: %s", subject, cfg.smtp_host, cfg.smtp_port, exc)
            raise MailDeliveryError(f"Cannot connect to SMTP server at {cfg.smtp_host}:{cfg.smtp_port}.") from exc
        logger.info("Sent %r email", subject)
