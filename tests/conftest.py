"""Shared test fixtures for the mail queue."""
import pytest
import pytest_asyncio

from config.settings import QueueConfig
from job_queue.email_queue import EmailQueue
from job_queue.store import InMemoryQueueStore


class FakeClock:
    """Manually advanced wall clock for TTL and score tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RecordingTransport:
    """Records every send; fails the first `fail_times` calls."""

    def __init__(self, fail_times: int = 0, error: Exception = None):
        self.sent: list[tuple[str, str, str]] = []
        self.attempts = 0
        self.fail_times = fail_times
        self.error = error or RuntimeError("smtp unavailable")

    async def __call__(self, to: str, subject: str, body: str):
        self.attempts += 1
        if self.attempts <= self.fail_times:
            raise self.error
        self.sent.append((to, subject, body))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fast_config() -> QueueConfig:
    """Small pool, short timeouts: min 1, max 6, scale up above 20, down below 4."""
    return QueueConfig(
        key_prefix="test:email",
        base_workers=2,
        max_retry=3,
        retry_base_delay=30,
        pop_timeout=0.05,
        error_backoff=0.01,
        promote_interval=0.05,
        monitor_interval=0.05,
        idle_timeout=300.0,
        shutdown_timeout=1.0,
    )


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest_asyncio.fixture
async def store(clock):
    s = InMemoryQueueStore(clock=clock)
    await s.connect()
    yield s
    await s.close()


@pytest_asyncio.fixture
async def email_queue(store, fast_config, transport):
    """Connected queue with no workers running."""
    queue = EmailQueue(store, fast_config, transport)
    await queue.connect()
    return queue
