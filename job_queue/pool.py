"""
Worker Pool — owns the live EmailWorkers and scales them with queue depth.

Invariant: min_workers <= len(workers) <= max_workers at every mutation
(apart from the final shutdown). The workers map is guarded by a single
lock that is never held across a store call.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from typing import TYPE_CHECKING, Any, Coroutine, Optional

from job_queue.worker import EmailWorker

if TYPE_CHECKING:
    from job_queue.email_queue import EmailQueue

logger = structlog.get_logger()


class WorkerPool:

    def __init__(
        self,
        queue: EmailQueue,
        min_workers: int,
        max_workers: int,
        scale_up_threshold: int,
        scale_down_threshold: int,
        idle_timeout: float = 300.0,
        monitor_interval: float = 30.0,
    ):
        if min_workers > max_workers:
            raise ValueError(f"min_workers ({min_workers}) exceeds max_workers ({max_workers})")
        self.queue = queue
        self.min_workers = min_workers
        self.max_workers = max_workers
        self.scale_up_threshold = scale_up_threshold
        self.scale_down_threshold = scale_down_threshold
        self.idle_timeout = idle_timeout
        self.monitor_interval = monitor_interval

        self.workers: dict[int, EmailWorker] = {}
        self._lock = asyncio.Lock()
        self._next_id = 0
        self._shutdown = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, queue: EmailQueue, config) -> WorkerPool:
        return cls(
            queue,
            min_workers=config.min_workers,
            max_workers=config.max_workers,
            scale_up_threshold=config.scale_up_threshold,
            scale_down_threshold=config.scale_down_threshold,
            idle_timeout=config.idle_timeout,
            monitor_interval=config.monitor_interval,
        )

    @property
    def size(self) -> int:
        return len(self.workers)

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown

    # ── Worker management ─────────────────────────────────────

    async def start(self):
        """Start the floor of workers and the scaling monitor."""
        if self._shutdown.is_set():
            # restart after a completed shutdown
            self._shutdown = asyncio.Event()
            self._tasks = set()
        for _ in range(self.min_workers):
            await self.start_worker()
        self.spawn(self._monitor_loop(), name="email-queue-monitor")
        logger.info("email_worker_pool_started",
                    min_workers=self.min_workers,
                    max_workers=self.max_workers,
                    scale_up_threshold=self.scale_up_threshold,
                    scale_down_threshold=self.scale_down_threshold)

    async def start_worker(self, worker_id: Optional[int] = None) -> Optional[int]:
        async with self._lock:
            return self._start_worker_locked(worker_id)

    async def stop_worker(self, worker_id: int) -> bool:
        async with self._lock:
            return await self._stop_worker_locked(worker_id)

    def _start_worker_locked(self, worker_id: Optional[int]) -> Optional[int]:
        if self._shutdown.is_set():
            return None
        if len(self.workers) >= self.max_workers:
            logger.warning("email_worker_pool_at_ceiling",
                           current=len(self.workers),
                           max=self.max_workers)
            return None

        # Requested ids are advisory; collisions take the next counter value.
        if worker_id is None or worker_id in self.workers:
            self._next_id += 1
            worker_id = self._next_id
        else:
            self._next_id = max(self._next_id, worker_id)

        worker = EmailWorker(worker_id, self.queue, self._shutdown)
        self.workers[worker_id] = worker
        self.spawn(worker.run(), name=f"email-worker-{worker_id}")
        logger.info("email_worker_launched",
                    worker_id=worker_id,
                    current_workers=len(self.workers))
        return worker_id

    async def _stop_worker_locked(self, worker_id: int) -> bool:
        worker = self.workers.get(worker_id)
        if worker is None:
            logger.warning("email_worker_not_found", worker_id=worker_id)
            return False
        if len(self.workers) <= self.min_workers:
            logger.warning("email_worker_pool_at_floor",
                           worker_id=worker_id,
                           min=self.min_workers)
            return False

        await worker.stop()
        del self.workers[worker_id]
        logger.info("email_worker_released",
                    worker_id=worker_id,
                    current_workers=len(self.workers))
        return True

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str = None) -> asyncio.Task:
        """Track a background task so shutdown can wait for it."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ── Scaling ───────────────────────────────────────────────

    async def _monitor_loop(self):
        logger.info("email_queue_monitor_started", interval=self.monitor_interval)
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self.monitor_interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.check_and_scale()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("email_queue_monitor_error", error=str(e))
        logger.info("email_queue_monitor_stopped")

    async def check_and_scale(self) -> Optional[str]:
        """One scaling decision. Returns "scale_up", "scale_down" or None."""
        depth = await self.queue.queue_length()

        async with self._lock:
            current = len(self.workers)
            logger.debug("email_queue_depth_checked",
                         queue_length=depth,
                         current_workers=current,
                         min_workers=self.min_workers,
                         max_workers=self.max_workers)

            if depth > self.scale_up_threshold and current < self.max_workers:
                new_id = self._start_worker_locked(None)
                if new_id is None:
                    return None
                logger.info("email_worker_pool_scaled_up",
                            new_worker_id=new_id,
                            total_workers=len(self.workers),
                            queue_length=depth)
                return "scale_up"

            if depth < self.scale_down_threshold and current > self.min_workers:
                oldest_id, oldest_at = None, time.time()
                for wid, worker in self.workers.items():
                    running, last_active = await worker.snapshot()
                    if not running and last_active < oldest_at:
                        oldest_id, oldest_at = wid, last_active

                idle_for = time.time() - oldest_at
                if oldest_id is not None and idle_for > self.idle_timeout:
                    if await self._stop_worker_locked(oldest_id):
                        logger.info("email_worker_pool_scaled_down",
                                    stopped_worker_id=oldest_id,
                                    total_workers=len(self.workers),
                                    queue_length=depth,
                                    idle_seconds=round(idle_for, 1))
                        return "scale_down"
        return None

    # ── Shutdown ──────────────────────────────────────────────

    async def shutdown(self, timeout: float = 10.0) -> bool:
        """
        Signal every worker and background loop, then wait up to `timeout`.
        Stragglers are cancelled. Returns True on a clean stop.
        """
        self._shutdown.set()
        async with self._lock:
            for worker in self.workers.values():
                await worker.stop()
            self.workers.clear()

        pending_tasks = [t for t in self._tasks if not t.done()]
        if not pending_tasks:
            return True

        _, pending = await asyncio.wait(pending_tasks, timeout=timeout)
        if not pending:
            logger.info("email_worker_pool_stopped")
            return True

        logger.warning("email_worker_pool_stop_timeout",
                       timeout=timeout,
                       forced=len(pending))
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        return False
