"""
SMTP transport — delivers queued email through aiosmtplib.

Recipients separated by ';' become multiple To addresses. The body is sent
as text/html or text/plain depending on SmtpConfig.mail_type. When SMTP
is disabled in configuration the send is a logged no-op.
"""
from __future__ import annotations

import asyncio
import structlog
from email.message import EmailMessage
from typing import Any

import aiosmtplib

from channels.base import MailTransport, TransportError
from config.settings import SmtpConfig

logger = structlog.get_logger()


def split_recipients(to: str) -> list[str]:
    return [addr.strip() for addr in to.split(";") if addr.strip()]


def is_temporary_failure(exc: Exception) -> bool:
    """4xx replies and network problems are worth retrying; 5xx are not."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError,
                        aiosmtplib.SMTPConnectError, aiosmtplib.SMTPServerDisconnected,
                        aiosmtplib.SMTPTimeoutError)):
        return True
    code = getattr(exc, "code", None)
    if isinstance(code, int):
        return 400 <= code < 500
    return False


class SmtpEmailTransport(MailTransport):
    """Production SMTP transport."""

    name = "smtp"

    def __init__(self, config: SmtpConfig):
        self.config = config

    def build_message(self, to: str, subject: str, body: str) -> EmailMessage:
        recipients = split_recipients(to)
        if not recipients:
            raise TransportError(f"No valid recipient in {to!r}")

        msg = EmailMessage()
        msg["From"] = self.config.from_address or self.config.username
        msg["To"] = ", ".join(recipients)
        msg["Subject"] = subject
        if self.config.mail_type == "html":
            msg.set_content(body, subtype="html")
        else:
            msg.set_content(body)
        return msg

    async def send(self, to: str, subject: str, body: str) -> None:
        if not self.config.enabled:
            logger.debug("smtp_disabled_skip", to=to, subject=subject)
            return

        msg = self.build_message(to, subject, body)
        try:
            await aiosmtplib.send(
                msg,
                hostname=self.config.host,
                port=self.config.port,
                username=self.config.username or None,
                password=self.config.password or None,
                use_tls=self.config.use_tls,
                start_tls=self.config.start_tls,
                timeout=self.config.timeout,
            )
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as e:
            retryable = is_temporary_failure(e)
            logger.warning("smtp_send_failed",
                           to=to,
                           host=self.config.host,
                           retryable=retryable,
                           error=str(e))
            raise TransportError(str(e), retryable=retryable,
                                 code=getattr(e, "code", None)) from e

        logger.info("smtp_email_sent", to=to, subject=subject)

    def describe(self) -> dict[str, Any]:
        return {
            "transport": self.name,
            "enabled": self.config.enabled,
            "host": self.config.host,
            "port": self.config.port,
        }
