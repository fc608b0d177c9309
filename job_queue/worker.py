"""
Email Worker — pulls one task at a time from the ready queue and delivers it.

State machine:
  idle → fetching → sending → (success | retrying | dead_lettered) → idle
  stopped once its own stop signal or the pool's shutdown signal fires.

The only blocking points are the bounded queue pop and, after a failed
iteration, a short pause. Retry delays live in the store's delayed set,
never in the worker.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from enum import Enum
from typing import TYPE_CHECKING, Optional

from job_queue.task import EmailTask

if TYPE_CHECKING:
    from job_queue.email_queue import EmailQueue

logger = structlog.get_logger()


class WorkerState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    SENDING = "sending"
    SUCCESS = "success"
    RETRYING = "retrying"
    DEAD_LETTERED = "dead_lettered"
    STOPPED = "stopped"


class EmailWorker:
    """
    One delivery loop. `is_running` is true only while a task is in hand;
    it and `last_active_at` are guarded by the worker's own lock so the
    scaling monitor can inspect them concurrently.
    """

    def __init__(self, worker_id: int, queue: EmailQueue, shutdown: asyncio.Event):
        self.id = worker_id
        self.queue = queue
        self.state = WorkerState.IDLE
        self._shutdown = shutdown
        self._stop = asyncio.Event()
        self._lock = asyncio.Lock()
        self._is_running = False
        self._last_active_at = time.time()

    # ── Lifecycle ─────────────────────────────────────────────

    @property
    def stopping(self) -> bool:
        return self._stop.is_set() or self._shutdown.is_set()

    async def stop(self):
        """Ask the loop to exit; it finishes the task in hand first."""
        async with self._lock:
            self._is_running = False
        self._stop.set()

    async def snapshot(self) -> tuple[bool, float]:
        async with self._lock:
            return self._is_running, self._last_active_at

    async def _set_running(self, running: bool):
        async with self._lock:
            self._is_running = running
            if not running:
                self._last_active_at = time.time()

    async def run(self):
        logger.info("email_worker_started", worker_id=self.id)
        while not self.stopping:
            try:
                await self.process_task()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("email_worker_error", worker_id=self.id, error=str(e))
                await self._pause(self.queue.config.error_backoff)
        self.state = WorkerState.STOPPED
        logger.info("email_worker_stopped", worker_id=self.id)

    async def _pause(self, seconds: float):
        """Sleep, waking early if this worker is told to stop."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # ── One iteration ─────────────────────────────────────────

    async def process_task(self) -> Optional[WorkerState]:
        """Fetch and handle at most one task. Returns the outcome, None when idle."""
        self.state = WorkerState.FETCHING
        try:
            payload = await self.queue.store.brpop(self.queue.keys.queue, self.queue.config.pop_timeout)
        finally:
            self.state = WorkerState.IDLE

        if payload is None:
            return None

        try:
            task = EmailTask.from_json(payload)
        except ValueError as e:
            logger.error("poison_message_discarded",
                         worker_id=self.id,
                         error=str(e),
                         payload=payload[:200])
            return None

        await self._set_running(True)
        try:
            outcome = await self.handle(task)
        finally:
            await self._set_running(False)
            self.state = WorkerState.IDLE
        return outcome

    async def handle(self, task: EmailTask) -> WorkerState:
        self.state = WorkerState.SENDING
        logger.debug("email_task_processing",
                     worker_id=self.id,
                     task_id=task.id,
                     to=task.to,
                     retry=task.retry)

        if await self.queue.deduplicator.already_handled(task):
            return WorkerState.SUCCESS

        try:
            await self.queue.deliver(task.to, task.subject, task.body)
        except Exception as e:
            return await self.handle_failure(task, e)

        await self.queue.record_delivery(task)
        logger.info("email_sent",
                    worker_id=self.id,
                    task_id=task.id,
                    to=task.to,
                    content_hash=task.short_hash)
        self.state = WorkerState.SUCCESS
        return self.state

    async def handle_failure(self, task: EmailTask, error: Exception) -> WorkerState:
        logger.error("email_send_failed",
                     worker_id=self.id,
                     task_id=task.id,
                     to=task.to,
                     retry=task.retry,
                     error=str(error))

        if await self.queue.schedule_retry(task, error, worker_id=self.id):
            self.state = WorkerState.RETRYING
        else:
            self.state = WorkerState.DEAD_LETTERED
        return self.state
