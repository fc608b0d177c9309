"""Tests for the worker pool: bounds, id allocation, scaling and shutdown."""
import asyncio
import pytest
import pytest_asyncio
from unittest.mock import AsyncMock

from job_queue.pool import WorkerPool


@pytest_asyncio.fixture
async def pool(email_queue):
    """min 1, max 6, scale up above 20 queued, down below 4."""
    yield email_queue.pool
    await email_queue.pool.shutdown(timeout=1.0)


class TestBounds:
    def test_floor_above_ceiling_rejected(self, email_queue):
        with pytest.raises(ValueError):
            WorkerPool(email_queue, min_workers=5, max_workers=2,
                       scale_up_threshold=10, scale_down_threshold=1)

    @pytest.mark.asyncio
    async def test_start_launches_floor(self, pool):
        await pool.start()
        assert pool.size == pool.min_workers == 1

    @pytest.mark.asyncio
    async def test_ceiling_enforced(self, pool):
        ids = [await pool.start_worker() for _ in range(pool.max_workers)]
        assert None not in ids
        assert await pool.start_worker() is None
        assert pool.size == pool.max_workers

    @pytest.mark.asyncio
    async def test_floor_enforced_on_stop(self, pool):
        worker_id = await pool.start_worker()
        assert await pool.stop_worker(worker_id) is False
        assert pool.size == 1

    @pytest.mark.asyncio
    async def test_stop_unknown_worker(self, pool):
        await pool.start_worker()
        await pool.start_worker()
        assert await pool.stop_worker(999) is False
        assert pool.size == 2

    @pytest.mark.asyncio
    async def test_stop_worker_above_floor(self, pool):
        await pool.start_worker()
        second = await pool.start_worker()
        worker = pool.workers[second]
        assert await pool.stop_worker(second) is True
        assert second not in pool.workers
        assert worker.stopping


class TestWorkerIds:
    @pytest.mark.asyncio
    async def test_ids_increase(self, pool):
        assert [await pool.start_worker() for _ in range(3)] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_requested_id_collision_takes_next(self, pool):
        assert await pool.start_worker(5) == 5
        assert await pool.start_worker(5) == 6
        assert await pool.start_worker() == 7
        assert set(pool.workers) == {5, 6, 7}


class TestScaling:
    @pytest.mark.asyncio
    async def test_scale_up_on_deep_queue(self, pool, email_queue):
        await pool.start_worker()
        email_queue.queue_length = AsyncMock(return_value=25)
        assert await pool.check_and_scale() == "scale_up"
        assert pool.size == 2

    @pytest.mark.asyncio
    async def test_no_scale_up_at_ceiling(self, pool, email_queue):
        for _ in range(pool.max_workers):
            await pool.start_worker()
        email_queue.queue_length = AsyncMock(return_value=1000)
        assert await pool.check_and_scale() is None
        assert pool.size == pool.max_workers

    @pytest.mark.asyncio
    async def test_scale_down_reclaims_oldest_idle(self, pool, email_queue):
        for _ in range(3):
            await pool.start_worker()
        pool.workers[2]._last_active_at -= 1000
        pool.workers[3]._last_active_at -= 500
        email_queue.queue_length = AsyncMock(return_value=0)

        assert await pool.check_and_scale() == "scale_down"
        assert set(pool.workers) == {1, 3}

    @pytest.mark.asyncio
    async def test_recently_active_workers_kept(self, pool, email_queue):
        await pool.start_worker()
        await pool.start_worker()
        email_queue.queue_length = AsyncMock(return_value=0)
        assert await pool.check_and_scale() is None
        assert pool.size == 2

    @pytest.mark.asyncio
    async def test_busy_workers_never_reclaimed(self, pool, email_queue):
        await pool.start_worker()
        await pool.start_worker()
        for worker in pool.workers.values():
            worker._last_active_at -= 1000
            worker._is_running = True
        email_queue.queue_length = AsyncMock(return_value=0)
        assert await pool.check_and_scale() is None

    @pytest.mark.asyncio
    async def test_never_below_floor(self, pool, email_queue):
        only = await pool.start_worker()
        pool.workers[only]._last_active_at -= 1000
        email_queue.queue_length = AsyncMock(return_value=0)
        assert await pool.check_and_scale() is None
        assert pool.size == 1

    @pytest.mark.asyncio
    async def test_rapid_load_oscillation_stays_in_bounds(self, pool, email_queue):
        await pool.start_worker()
        email_queue.queue_length = AsyncMock()
        actions = []
        for tick in range(40):
            email_queue.queue_length.return_value = 1000 if (tick // 3) % 2 == 0 else 0
            for worker in pool.workers.values():
                worker._last_active_at -= 1000
            actions.append(await pool.check_and_scale())
            assert pool.min_workers <= pool.size <= pool.max_workers
        assert "scale_up" in actions
        assert "scale_down" in actions

    @pytest.mark.asyncio
    async def test_middle_band_holds(self, pool, email_queue):
        await pool.start_worker()
        email_queue.queue_length = AsyncMock(return_value=10)
        assert await pool.check_and_scale() is None


class TestShutdown:
    @pytest.mark.asyncio
    async def test_clean_shutdown(self, email_queue):
        pool = email_queue.pool
        await pool.start()
        await pool.start_worker()
        assert await pool.shutdown(timeout=1.0) is True
        assert pool.size == 0
        assert await pool.start_worker() is None

    @pytest.mark.asyncio
    async def test_straggler_cancelled(self, email_queue):
        pool = email_queue.pool
        straggler = pool.spawn(asyncio.sleep(30), name="straggler")
        assert await pool.shutdown(timeout=0.05) is False
        assert straggler.cancelled()
