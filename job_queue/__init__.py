"""
Email Queue — asynchronous, durable email delivery.

- Producers SUBMIT messages; duplicates within the dedupe window are dropped
- A self-scaling pool of workers drains the ready queue
- Failed sends are retried through a delayed set, then dead-lettered
- Backed by Redis (production) or an in-memory store (dev, tests)
"""
from job_queue.email_queue import EmailQueue, QueueCounters
from job_queue.errors import (
    QueueDisabledError, QueueError, StoreUnavailableError, TaskSerializationError,
)
from job_queue.store import (
    InMemoryQueueStore, QueueStore, RedisQueueStore, create_queue_store,
)
from job_queue.task import EmailTask, FailedEntry, QueueKeys

__all__ = [
    "EmailQueue", "QueueCounters",
    "QueueError", "QueueDisabledError", "StoreUnavailableError", "TaskSerializationError",
    "QueueStore", "RedisQueueStore", "InMemoryQueueStore", "create_queue_store",
    "EmailTask", "FailedEntry", "QueueKeys",
]
