from __future__ import annotations

import fnmatch
import sys
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from tgnotify.models.database import Database  # noqa: E402
from tgnotify.services.delivery_job import DeliveryJob, DeliveryOptions  # noqa: E402
from tgnotify.services.notification_events import EventBus  # noqa: E402
from tgnotify.services.notification_rate_limiter import NotificationRateLimiter  # noqa: E402
from tgnotify.services.notification_store import NotificationStore  # noqa: E402
from tgnotify.services.notification_worker import NotificationWorker  # noqa: E402
from tgnotify.services.telegram_transport import SentMessage  # noqa: E402

SQLITE_MEMORY_URL = "sqlite+aiosqlite:///:memory:"


class FakeTransport:
    """Scripted transport: each send pops the next outcome (exception or message id)."""

    def __init__(self, outcomes: list[object] | None = None) -> None:
        self.outcomes = list(outcomes or [])
        self.calls: list[tuple[str, str]] = []

    async def send(self, chat_id: str, text: str) -> SentMessage:
        self.calls.append((chat_id, text))
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome
        message_id = outcome if outcome is not None else 1000 + len(self.calls)
        return SentMessage(message_id=str(message_id))


class FakeQueue:
    """In-memory delivery queue honouring the job-key idempotency contract."""

    def __init__(self, *, reachable: bool = True) -> None:
        self.reachable = reachable
        self.jobs: list[tuple[DeliveryJob, DeliveryOptions]] = []
        self.held: set[str] = set()
        self.closed = False

    async def ping(self) -> bool:
        if not self.reachable:
            raise ConnectionError("redis down")
        return True

    async def enqueue(self, job: DeliveryJob, options: DeliveryOptions) -> str | None:
        if job.job_key in self.held:
            return None
        self.held.add(job.job_key)
        self.jobs.append((job, options))
        return job.job_key

    async def release(self, job_key: str) -> None:
        self.held.discard(job_key)

    async def close(self) -> None:
        self.closed = True


class FakePipeline:
    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._ops: list[tuple[str, tuple[Any, ...]]] = []

    async def __aenter__(self) -> FakePipeline:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        return None

    def __getattr__(self, name: str):  # noqa: ANN204
        def _queue(*args: Any) -> FakePipeline:
            self._ops.append((name, args))
            return self

        return _queue

    async def execute(self) -> list[Any]:
        results = []
        for name, args in self._ops:
            results.append(await getattr(self._redis, name)(*args))
        self._ops = []
        return results


class FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, Any] = {}
        self.lists: dict[str, list[str]] = {}
        self.expiry: dict[str, int] = {}
        self.reachable = True

    async def ping(self) -> bool:
        if not self.reachable:
            raise ConnectionError("redis down")
        return True

    async def set(self, key: str, value: Any, *, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self.values:
            return None
        self.values[key] = value
        if ex is not None:
            self.expiry[key] = ex
        return True

    async def expire(self, key: str, seconds: int) -> bool:
        if key not in self.values:
            return False
        self.expiry[key] = seconds
        return True

    async def get(self, key: str) -> Any:
        return self.values.get(key)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            removed += int(self.values.pop(key, None) is not None)
            removed += int(self.lists.pop(key, None) is not None)
        return removed

    async def lpush(self, key: str, *values: str) -> int:
        bucket = self.lists.setdefault(key, [])
        for value in values:
            bucket.insert(0, value)
        return len(bucket)

    async def ltrim(self, key: str, start: int, end: int) -> bool:
        self.lists[key] = self.lists.get(key, [])[start : end + 1]
        return True

    async def llen(self, key: str) -> int:
        return len(self.lists.get(key, []))

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        return self.lists.get(key, [])[start : end + 1]

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def scan_iter(self, match: str = "*", count: int | None = None):  # noqa: ANN201
        for key in list(self.values):
            if fnmatch.fnmatch(key, match):
                yield key




@pytest_asyncio.fixture
async def database() -> Database:
    db = Database(SQLITE_MEMORY_URL)
    await db.open()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def store(database: Database) -> NotificationStore:
    return NotificationStore(database.sessions())


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def fake_queue() -> FakeQueue:
    return FakeQueue()


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def limiter() -> NotificationRateLimiter:
    return NotificationRateLimiter(
        global_capacity=20,
        global_interval_seconds=1.0,
        global_max_concurrent=3,
        user_capacity=15,
        user_interval_seconds=60.0,
    )


@pytest.fixture
def worker(
    store: NotificationStore,
    limiter: NotificationRateLimiter,
    fake_transport: FakeTransport,
) -> NotificationWorker:
    return NotificationWorker(store=store, limiter=limiter, transport=fake_transport)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
