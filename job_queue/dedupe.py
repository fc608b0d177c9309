"""
Deduplicator — at-most-one delivery per logical message within a window.

Three markers live in the store:
  dedupe:<day>:<hash>      content fingerprint, value = owning task id,
                           TTL = dedupe window
  processing:task:<id>     short-lived claim on a freshly created task
  sent:task:<id>           written once the task is delivered

The fingerprint is namespaced by calendar day, so identical content sent
on different days is treated as distinct.
"""
from __future__ import annotations

import hashlib
import structlog
from datetime import datetime
from typing import Callable, Optional

from job_queue.store import QueueStore
from job_queue.task import EmailTask, QueueKeys, generate_task_id

logger = structlog.get_logger()

HASH_LENGTH = 16


def content_fingerprint(to: str, subject: str, body: str) -> str:
    content = f"{to}:{subject}:{body}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:HASH_LENGTH]


class Deduplicator:
    """Gates submission and re-delivery using store-resident markers."""

    def __init__(
        self,
        store: QueueStore,
        keys: QueueKeys,
        dedupe_window: int = 86400,
        processing_ttl: int = 600,
        sent_ttl: int = 86400,
        today: Callable[[], str] = None,
    ):
        self.store = store
        self.keys = keys
        self.dedupe_window = dedupe_window
        self.processing_ttl = processing_ttl
        self.sent_ttl = sent_ttl
        self._today = today or (lambda: datetime.now().strftime("%Y-%m-%d"))

    def dedupe_key(self, to: str, subject: str, body: str) -> tuple[str, str]:
        """Return (store key, content hash) for a message."""
        content_hash = content_fingerprint(to, subject, body)
        return self.keys.dedupe(self._today(), content_hash), content_hash

    async def should_accept(
        self, to: str, subject: str, body: str
    ) -> tuple[bool, str, str, Optional[str]]:
        """
        Decide whether a submission may proceed.

        Returns (accept, dedupe_key, content_hash, task_id). The fingerprint
        is claimed with set-if-absent, so two concurrent identical
        submissions cannot both be accepted.
        """
        dedupe_key, content_hash = self.dedupe_key(to, subject, body)
        task_id = generate_task_id()

        claimed = await self.store.set(dedupe_key, task_id, ttl=self.dedupe_window, nx=True)
        if not claimed:
            logger.info("email_deduplicated",
                        to=to,
                        subject=subject,
                        content_hash=content_hash)
            return False, dedupe_key, content_hash, None

        processing = await self.store.set(
            self.keys.processing(task_id), "processing", ttl=self.processing_ttl, nx=True
        )
        if not processing:
            logger.info("email_task_already_processing", task_id=task_id)
            await self._release_key(dedupe_key, task_id)
            return False, dedupe_key, content_hash, None

        return True, dedupe_key, content_hash, task_id

    async def already_handled(self, task: EmailTask) -> bool:
        """True when the task was delivered, or its content was delivered by another task."""
        if task.id and await self.store.exists(self.keys.sent(task.id)):
            logger.info("email_task_already_sent", task_id=task.id)
            return True

        if task.dedupe_key:
            owner = await self.store.get(task.dedupe_key)
            if owner is not None and owner != task.id:
                logger.info("email_content_already_sent",
                            task_id=task.id,
                            content_hash=task.short_hash,
                            owner=owner)
                return True
        return False

    async def mark_sent(self, task: EmailTask):
        if task.id:
            await self.store.set(self.keys.sent(task.id), "sent", ttl=self.sent_ttl)
        if task.dedupe_key:
            await self.store.set(task.dedupe_key, task.id, ttl=self.dedupe_window)
        if task.id:
            await self.store.delete(self.keys.processing(task.id))

    async def release(self, task: EmailTask):
        """Drop the fingerprint claim so the content may be submitted again."""
        if task.dedupe_key:
            await self._release_key(task.dedupe_key, task.id)
        if task.id:
            await self.store.delete(self.keys.processing(task.id))

    async def _release_key(self, dedupe_key: str, task_id: str):
        if await self.store.get(dedupe_key) == task_id:
            await self.store.delete(dedupe_key)
