"""
Mail transports — the collaborator that actually delivers an email.

Provides:
- TransportError: structured error with a retryable hint
- SendFn: the callable contract the queue invokes, (to, subject, body)
- MailTransport: abstract base, callable so it can be passed as a SendFn
- LogOnlyTransport: default no-op transport until the host supplies one
"""
from __future__ import annotations

import abc
import inspect
import structlog
from typing import Any, Awaitable, Callable, Union

logger = structlog.get_logger()

SendFn = Callable[[str, str, str], Union[Awaitable[None], None]]


class TransportError(Exception):
    """Raised when a transport fails to deliver a message."""

    def __init__(self, message: str, retryable: bool = False, code: int = None):
        self.retryable = retryable
        self.code = code
        super().__init__(message)


async def invoke_send(send_fn: SendFn, to: str, subject: str, body: str) -> None:
    """Call a transport that may be either a coroutine function or a plain function."""
    result = send_fn(to, subject, body)
    if inspect.isawaitable(result):
        await result


class MailTransport(abc.ABC):
    name: str = "base"

    @abc.abstractmethod
    async def send(self, to: str, subject: str, body: str) -> None:
        ...

    async def __call__(self, to: str, subject: str, body: str) -> None:
        await self.send(to, subject, body)

    def describe(self) -> dict[str, Any]:
        return {"transport": self.name}


class LogOnlyTransport(MailTransport):
    """Logs and drops every message. Stands in until a real transport is set."""

    name = "log"

    async def send(self, to: str, subject: str, body: str) -> None:
        logger.debug("email_send_skipped_no_transport", to=to, subject=subject)
