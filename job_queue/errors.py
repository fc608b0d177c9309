"""Exceptions raised by the email queue."""
from __future__ import annotations


class QueueError(Exception):
    """Base exception for all queue operations."""


class QueueDisabledError(QueueError):
    """The durable store is not available; admin operations cannot run."""

    def __init__(self, message: str = "Email queue is not enabled"):
        super().__init__(message)


class TaskSerializationError(QueueError):
    """A task could not be encoded for the store."""


class StoreUnavailableError(QueueError, ConnectionError):
    """Raised by a store backend that cannot serve requests."""
