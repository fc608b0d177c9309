"""Tests for mail transports: SMTP (mocked aiosmtplib) and log-only."""
import pytest
from unittest.mock import AsyncMock, patch

import aiosmtplib

from channels.base import LogOnlyTransport, TransportError, invoke_send
from channels.email_adapter import SmtpEmailTransport, is_temporary_failure, split_recipients
from config.settings import SmtpConfig


@pytest.fixture
def smtp_config():
    return SmtpConfig(
        enabled=True,
        host="smtp.example.com",
        port=587,
        username="mailer@example.com",
        password="secret",
        from_address="noreply@example.com",
        start_tls=True,
    )


class TestRecipients:
    def test_split_on_semicolon(self):
        assert split_recipients("a@x.com; b@x.com;;") == ["a@x.com", "b@x.com"]

    def test_empty(self):
        assert split_recipients(" ; ") == []


class TestBuildMessage:
    def test_html_message(self, smtp_config):
        msg = SmtpEmailTransport(smtp_config).build_message("a@x.com;b@x.com", "Hi", "<p>Hello</p>")
        assert msg["From"] == "noreply@example.com"
        assert msg["To"] == "a@x.com, b@x.com"
        assert msg["Subject"] == "Hi"
        assert msg.get_content_type() == "text/html"

    def test_plain_message(self, smtp_config):
        smtp_config.mail_type = "plain"
        msg = SmtpEmailTransport(smtp_config).build_message("a@x.com", "Hi", "Hello")
        assert msg.get_content_type() == "text/plain"

    def test_from_falls_back_to_username(self, smtp_config):
        smtp_config.from_address = ""
        msg = SmtpEmailTransport(smtp_config).build_message("a@x.com", "Hi", "Hello")
        assert msg["From"] == "mailer@example.com"

    def test_no_recipient_rejected(self, smtp_config):
        with pytest.raises(TransportError):
            SmtpEmailTransport(smtp_config).build_message(";", "Hi", "Hello")


class TestSmtpSend:
    @pytest.mark.asyncio
    async def test_send_passes_connection_settings(self, smtp_config):
        transport = SmtpEmailTransport(smtp_config)
        with patch("channels.email_adapter.aiosmtplib.send", new_callable=AsyncMock) as send:
            await transport("a@x.com", "Hi", "<p>Hello</p>")
        send.assert_awaited_once()
        kwargs = send.await_args.kwargs
        assert kwargs["hostname"] == "smtp.example.com"
        assert kwargs["port"] == 587
        assert kwargs["start_tls"] is True
        assert kwargs["username"] == "mailer@example.com"

    @pytest.mark.asyncio
    async def test_disabled_is_noop(self, smtp_config):
        smtp_config.enabled = False
        with patch("channels.email_adapter.aiosmtplib.send", new_callable=AsyncMock) as send:
            await SmtpEmailTransport(smtp_config).send("a@x.com", "Hi", "Hello")
        send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_temporary_failure_is_retryable(self, smtp_config):
        error = aiosmtplib.SMTPResponseException(451, "try again later")
        with patch("channels.email_adapter.aiosmtplib.send", new_callable=AsyncMock, side_effect=error):
            with pytest.raises(TransportError) as exc_info:
                await SmtpEmailTransport(smtp_config).send("a@x.com", "Hi", "Hello")
        assert exc_info.value.retryable is True
        assert exc_info.value.code == 451

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retryable(self, smtp_config):
        error = aiosmtplib.SMTPResponseException(550, "no such user")
        with patch("channels.email_adapter.aiosmtplib.send", new_callable=AsyncMock, side_effect=error):
            with pytest.raises(TransportError) as exc_info:
                await SmtpEmailTransport(smtp_config).send("a@x.com", "Hi", "Hello")
        assert exc_info.value.retryable is False

    def test_connection_errors_are_temporary(self):
        assert is_temporary_failure(aiosmtplib.SMTPConnectError("refused"))
        assert is_temporary_failure(ConnectionResetError())
        assert not is_temporary_failure(ValueError("bad"))

    def test_describe(self, smtp_config):
        assert SmtpEmailTransport(smtp_config).describe() == {
            "transport": "smtp", "enabled": True, "host": "smtp.example.com", "port": 587,
        }


class TestLogOnly:
    @pytest.mark.asyncio
    async def test_log_only_accepts_everything(self):
        await invoke_send(LogOnlyTransport(), "a@x.com", "Hi", "Hello")
        assert LogOnlyTransport().describe() == {"transport": "log"}
