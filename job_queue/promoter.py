"""
Delayed Task Promoter — moves due retries from the delayed set to the ready queue.

Each scan reads at most `batch_size` members scored <= now. A member is
promoted only by the caller whose ZREM actually removed it, so concurrent
promoters (in this process or others) never deliver the same task twice.
A promotion whose push fails counts as a failed attempt and goes back
through the retry policy.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from typing import TYPE_CHECKING, Callable, Optional

from job_queue.task import EmailTask

if TYPE_CHECKING:
    from job_queue.email_queue import EmailQueue

logger = structlog.get_logger()


class DelayedTaskPromoter:

    def __init__(
        self,
        queue: EmailQueue,
        interval_seconds: float = 5.0,
        batch_size: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        self.queue = queue
        self.interval = interval_seconds
        self.batch_size = batch_size
        self._clock = clock

    async def run(self, shutdown: asyncio.Event):
        logger.info("delayed_promoter_started", interval=self.interval)
        while not shutdown.is_set():
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.promote_due()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("delayed_promoter_error", error=str(e))
        logger.info("delayed_promoter_stopped")

    async def promote_due(self, now: Optional[float] = None) -> int:
        """Promote every due task in one bounded batch. Returns how many moved."""
        store, key = self.queue.store, self.queue.keys.delayed
        if store is None or not store.available:
            return 0

        now = self._clock() if now is None else now
        due = await store.zrangebyscore(key, 0, now, limit=self.batch_size)

        promoted = 0
        for payload in due:
            removed = await store.zrem(key, payload)
            if not removed:
                continue

            try:
                task = EmailTask.from_json(payload)
            except ValueError as e:
                logger.error("delayed_task_discarded", error=str(e), payload=payload[:200])
                continue

            try:
                queued = await self.queue.push(task)
            except Exception as e:
                logger.error("delayed_task_push_failed", task_id=task.id, error=str(e))
                await self._count_failed_attempt(task, payload, e, now)
                continue

            if not queued:
                # delivered by the synchronous fallback
                await self.queue.record_delivery(task)
                continue

            promoted += 1
            logger.debug("delayed_task_promoted",
                         task_id=task.id,
                         to=task.to,
                         retry=task.retry)

        if promoted:
            logger.info("delayed_tasks_promoted", count=promoted)
        return promoted

    async def _count_failed_attempt(self, task: EmailTask, payload: str, error: Exception, now: float):
        """A failed promotion uses up a retry like any other failed send."""
        try:
            await self.queue.schedule_retry(task, error)
        except Exception as e:
            logger.error("delayed_task_reschedule_failed", task_id=task.id, error=str(e))
            await self.queue.store.zadd(
                self.queue.keys.delayed, payload, now + self.queue.config.retry_base_delay
            )
