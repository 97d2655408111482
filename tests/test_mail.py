"""
tests/test_mail.py -- SmtpMailer message building and failure mapping.

aiosmtplib.send is replaced with a recorder; no socket is opened.
"""

from __future__ import annotations

import aiosmtplib
import pytest

from auth.mail import MailDeliveryError, SmtpMailer
from core.config import Settings


@pytest.fixture
def smtp_settings(settings: Settings) -> Settings:
    return settings.model_copy(
        update={"smtp_host": "smtp.example.com", "from_email": "noreply@example.com", "frontend_url": "https://app.example.com"}
    )


@pytest.fixture
def sent(monkeypatch) -> list:
    messages: list = []

    async def fake_send(message, **kwargs):
        messages.append((message, kwargs))

    monkeypatch.setattr(aiosmtplib, "send", fake_send)
    return messages


class TestSmtpMailer:
    @pytest.mark.asyncio
    async def test_verification_link(self, smtp_settings: Settings, sent: list) -> None:
        await SmtpMailer(smtp_settings).send_verification_email("a@example.com", "tok123")

        (message, kwargs), = sent
        assert message["To"] == "a@example.com"
        assert message["From"] == "noreply@example.com"
        assert message["Subject"] == "Verify your email"
        assert "https://app.example.com/confirm-email?token=tok123" in message.get_body(("plain",)).get_content()
        assert kwargs["hostname"] == "smtp.example.com"

    @pytest.mark.asyncio
    async def test_reset_link(self, smtp_settings: Settings, sent: list) -> None:
        await SmtpMailer(smtp_settings).send_password_reset_email("a@example.com", "tok456")
        (message, _), = sent
        assert "https://app.example.com/reset-password?token=tok456" in message.get_body(("html",)).get_content()

    @pytest.mark.asyncio
    async def test_unconfigured_refuses(self, settings: Settings, sent: list) -> None:
        unconfigured = settings.model_copy(update={"smtp_host": ""})
        with pytest.raises(MailDeliveryError):
            await SmtpMailer(unconfigured).send_verification_email("a@example.com", "tok")
        assert sent == []

    @pytest.mark.asyncio
    async def test_connection_failure_is_delivery_error(self, smtp_settings: Settings, monkeypatch) -> None:
        async def refuse(message, **kwargs):
            raise ConnectionRefusedError("connection refused")

        monkeypatch.setattr(aiosmtplib, "send", refuse)
        with pytest.raises(MailDeliveryError, match="Cannot connect"):
            await SmtpMailer(smtp_settings).send_verification_email("a@example.com", "tok")
