from channels.base import (
    LogOnlyTransport, MailTransport, SendFn, TransportError, invoke_send,
)
from channels.email_adapter import SmtpEmailTransport

__all__ = [
    "LogOnlyTransport", "MailTransport", "SendFn", "TransportError",
    "invoke_send", "SmtpEmailTransport",
]
