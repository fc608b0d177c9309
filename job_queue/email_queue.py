"""
Email Queue — durable, deduplicated, self-scaling email delivery.

Topology:
  ┌──────────┐  submit   ┌─────────────┐  BRPOP  ┌──────────────┐
  │ Producer │──────────▶│ queue (list) │────────▶│ EmailWorker  │──▶ transport
  └──────────┘  dedupe   └─────────────┘         │   (pool)     │
                               ▲                 └──────┬───────┘
                               │ promote                │ failure
                        ┌──────┴───────┐   retry < max  │
                        │ delayed      │◀───────────────┤
                        │ (sorted set) │                │ retries exhausted
                        └──────────────┘         ┌──────▼───────┐
                                                 │ failed (list)│
                                                 └──────────────┘

When the store is unavailable every submission degrades to a synchronous
send through the transport; nothing is queued.

Usage:
    queue = EmailQueue(create_queue_store(settings.redis), settings.queue)
    queue.set_transport(SmtpEmailTransport(settings.smtp))
    await queue.start()
    await queue.submit("a@example.com", "Hello", "<p>Hi</p>")
    await queue.stop()
"""
from __future__ import annotations

import asyncio
import time
import structlog
from typing import Any, Optional

from channels.base import LogOnlyTransport, SendFn, invoke_send
from config.settings import QueueConfig
from job_queue.dedupe import Deduplicator
from job_queue.errors import QueueDisabledError
from job_queue.pool import WorkerPool
from job_queue.promoter import DelayedTaskPromoter
from job_queue.store import QueueStore
from job_queue.task import EmailTask, FailedEntry, QueueKeys

logger = structlog.get_logger()


class QueueCounters:
    """Lifetime counters, on their own lock apart from the worker map."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self.processed_total = 0
        self.failed_total = 0

    async def incr_processed(self):
        async with self._lock:
            self.processed_total += 1

    async def incr_failed(self):
        async with self._lock:
            self.failed_total += 1

    async def snapshot(self) -> tuple[int, int]:
        async with self._lock:
            return self.processed_total, self.failed_total


class EmailQueue:
    """Front door of the email queue; owns the worker pool and the delayed promoter."""

    def __init__(
        self,
        store: Optional[QueueStore],
        config: QueueConfig = None,
        transport: SendFn = None,
    ):
        self.store = store
        self.config = config or QueueConfig()
        self.keys = QueueKeys(self.config.key_prefix)
        self.counters = QueueCounters()
        self.deduplicator = Deduplicator(
            store,
            self.keys,
            dedupe_window=self.config.dedupe_window,
            processing_ttl=self.config.processing_ttl,
            sent_ttl=self.config.sent_ttl,
        )
        self.pool = WorkerPool.from_config(self, self.config)
        self.promoter = DelayedTaskPromoter(
            self,
            interval_seconds=self.config.promote_interval,
            batch_size=self.config.promote_batch_size,
        )
        self._transport: SendFn = transport or LogOnlyTransport()
        self._started = False

    # ── Configuration ─────────────────────────────────────────

    def set_transport(self, send_fn: SendFn):
        """Inject the mail-sending collaborator, (to, subject, body) -> raises on failure."""
        self._transport = send_fn

    @property
    def transport(self) -> SendFn:
        return self._transport

    @property
    def enabled(self) -> bool:
        return self.store is not None and self.store.available

    # ── Lifecycle ─────────────────────────────────────────────

    async def connect(self) -> bool:
        """Connect the store. On failure the queue stays in synchronous mode."""
        if self.store is None:
            logger.warning("email_queue_sync_mode", reason="no store configured")
            return False
        if self.store.available:
            return True
        try:
            await self.store.connect()
        except Exception as e:
            logger.warning("email_queue_sync_mode", reason="store unavailable", error=str(e))
            return False
        return True

    async def start(self):
        if self._started:
            return
        if not await self.connect():
            return

        await self.check_persistence()
        await self.pool.start()
        self.pool.spawn(self.promoter.run(self.pool.shutdown_event), name="email-queue-promoter")
        self._started = True
        logger.info("email_queue_started",
                    min_workers=self.pool.min_workers,
                    max_workers=self.pool.max_workers,
                    current_workers=self.pool.size,
                    scale_up_threshold=self.pool.scale_up_threshold,
                    scale_down_threshold=self.pool.scale_down_threshold)

    async def stop(self):
        if self._started:
            logger.info("email_queue_stopping")
            clean = await self.pool.shutdown(timeout=self.config.shutdown_timeout)
            self._started = False
            logger.info("email_queue_stopped", clean=clean)
        if self.store is not None:
            await self.store.close()

    async def check_persistence(self):
        status = await self.store.persistence_status()
        if not status.get("aof_enabled"):
            logger.warning("store_aof_disabled",
                           hint="queued mail may be lost on restart; "
                                "set appendonly yes, appendfsync everysec")
        return status

    async def persistence_status(self) -> dict[str, Any]:
        if self.store is None:
            return {"available": False}
        return await self.store.persistence_status()

    # ── Producer side ─────────────────────────────────────────

    async def submit(self, to: str, subject: str, body: str) -> Optional[str]:
        """
        Queue an email for delivery.

        Returns the task id when queued, None when the content was a
        duplicate or the queue fell back to a synchronous send. Transport
        errors from a synchronous send and serialization errors propagate.
        """
        if not self.enabled:
            await self.deliver(to, subject, body)
            return None

        try:
            accept, dedupe_key, content_hash, task_id = await self.deduplicator.should_accept(
                to, subject, body
            )
        except Exception as e:
            logger.error("email_dedupe_check_failed", to=to, error=str(e))
            await self.deliver(to, subject, body)
            return None

        if not accept:
            return None

        task = EmailTask(
            id=task_id,
            to=to,
            subject=subject,
            body=body,
            max_retry=self.config.max_retry,
            content_hash=content_hash,
            dedupe_key=dedupe_key,
        )
        try:
            queued = await self.push(task)
        except Exception:
            await self._settle_markers(task, sent=False)
            raise

        if not queued:
            await self._settle_markers(task, sent=True)
            return None
        return task.id

    async def push(self, task: EmailTask) -> bool:
        """Append to the ready queue. Returns False when it was sent synchronously instead."""
        if not self.enabled:
            await self.deliver(task.to, task.subject, task.body)
            return False

        payload = task.to_json()
        try:
            await self.store.lpush(self.keys.queue, payload)
        except Exception as e:
            logger.error("email_task_push_failed_sync_fallback", task_id=task.id, error=str(e))
            await self.deliver(task.to, task.subject, task.body)
            return False

        logger.debug("email_task_queued", task_id=task.id, to=task.to)
        return True

    async def push_delayed(self, task: EmailTask, delay_seconds: float) -> bool:
        if not self.enabled:
            await self.deliver(task.to, task.subject, task.body)
            return False

        payload = task.to_json()
        execute_at = time.time() + delay_seconds
        try:
            await self.store.zadd(self.keys.delayed, payload, execute_at)
        except Exception as e:
            logger.error("email_task_delay_failed_sync_fallback", task_id=task.id, error=str(e))
            await self.deliver(task.to, task.subject, task.body)
            return False

        logger.debug("email_task_delayed",
                     task_id=task.id,
                     to=task.to,
                     delay_seconds=delay_seconds,
                     execute_at=execute_at)
        return True

    async def _settle_markers(self, task: EmailTask, sent: bool):
        """Record or drop the dedupe claim of a task that never reached the queue."""
        if sent:
            await self.record_delivery(task)
            return
        try:
            await self.deduplicator.release(task)
        except Exception as e:
            logger.warning("email_dedupe_marker_update_failed", task_id=task.id, error=str(e))

    async def deliver(self, to: str, subject: str, body: str):
        """Invoke the transport directly."""
        await invoke_send(self._transport, to, subject, body)

    async def record_delivery(self, task: EmailTask):
        """Count a delivered task and write its sent marker."""
        await self.counters.incr_processed()
        try:
            await self.deduplicator.mark_sent(task)
        except Exception as e:
            logger.warning("email_sent_marker_failed", task_id=task.id, error=str(e))

    async def schedule_retry(self, task: EmailTask, error: Exception, worker_id: int = 0) -> bool:
        """
        Apply the retry policy to a failed attempt.

        Returns True when the task was rescheduled (or delivered by the
        synchronous fallback), False when it was dead-lettered.
        """
        if task.retry >= task.max_retry:
            await self.move_to_failed(task, error, worker_id=worker_id)
            return False

        task.retry += 1
        delay = task.retry * self.config.retry_base_delay
        logger.info("email_task_retry_scheduled",
                    task_id=task.id,
                    worker_id=worker_id,
                    retry=task.retry,
                    delay_seconds=delay)
        if not await self.push_delayed(task, delay):
            await self.record_delivery(task)
        return True

    async def move_to_failed(self, task: EmailTask, error: Exception, worker_id: int = 0):
        entry = FailedEntry(task=task, error=str(error), worker_id=worker_id)
        await self.store.lpush(self.keys.failed, entry.to_json())
        await self.deduplicator.release(task)
        await self.counters.incr_failed()
        logger.warning("email_task_dead_lettered",
                       task_id=task.id,
                       worker_id=worker_id,
                       to=task.to,
                       error=str(error))

    # ── Admin ─────────────────────────────────────────────────

    async def queue_length(self) -> int:
        if not self.enabled:
            return 0
        return await self.store.llen(self.keys.queue)

    async def stats(self) -> dict[str, Any]:
        processed, failed = await self.counters.snapshot()
        if not self.enabled:
            return {
                "status": "disabled",
                "worker_count": 0,
                "min_workers": self.pool.min_workers,
                "max_workers": self.pool.max_workers,
                "queue_size": 0,
                "failed_size": 0,
                "delayed_size": 0,
                "processed_total": processed,
                "failed_total": failed,
            }

        queue_len = await self.store.llen(self.keys.queue)
        failed_len = await self.store.llen(self.keys.failed)
        delayed_len = await self.store.zcard(self.keys.delayed)
        return {
            "status": "active",
            "worker_count": self.pool.size,
            "min_workers": self.pool.min_workers,
            "max_workers": self.pool.max_workers,
            "queue_size": queue_len,
            "failed_size": failed_len,
            "delayed_size": delayed_len,
            "processed_total": processed,
            "failed_total": failed,
            "queue_key": self.keys.queue,
            "fail_key": self.keys.failed,
        }

    async def retry_failed_all(self) -> int:
        """Move every dead-lettered task back to the ready queue with retry reset."""
        if not self.enabled:
            raise QueueDisabledError()

        count = 0
        while True:
            payload = await self.store.rpop(self.keys.failed)
            if payload is None:
                break

            try:
                entry = FailedEntry.from_json(payload)
            except ValueError as e:
                logger.error("failed_entry_unreadable", error=str(e))
                continue

            task = entry.task
            task.retry = 0
            try:
                await self.push(task)
            except Exception as e:
                logger.error("failed_task_requeue_error", task_id=task.id, error=str(e))
                continue
            count += 1

        logger.info("failed_emails_requeued", count=count)
        return count

    async def clear_failed_all(self) -> int:
        """
        Delete the dead-letter list. Best effort: an entry appended between
        the length read and the delete may or may not be counted.
        """
        if not self.enabled:
            raise QueueDisabledError()

        count = await self.store.llen(self.keys.failed)
        await self.store.delete(self.keys.failed)
        logger.info("failed_emails_cleared", count=count)
        return count
