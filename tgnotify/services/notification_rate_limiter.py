"""Two-tier (global + per-user) admission control for outbound Telegram sends."""

from __future__ import annotations

import asyncio
from collections import OrderedDict, deque
from contextlib import suppress
from dataclasses import dataclass
import time
from typing import Any, Awaitable, Callable, TypeVar

from tgnotify.util.logger import logger

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RateBucketSnapshot:
    name: str
    capacity: int
    interval_seconds: float
    max_concurrent: int
    executing: int
    queued: int
    done: int
    admitted_in_window: int


@dataclass(frozen=True, slots=True)
class RateLimiterStats:
    global_bucket: RateBucketSnapshot
    user_buckets_active: int
    user_buckets_total: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "global": {
                "executing": self.global_bucket.executing,
                "queued": self.global_bucket.queued,
                "done": self.global_bucket.done,
                "admitted_in_window": self.global_bucket.admitted_in_window,
            },
            "user_limiters": {
                "active": self.user_buckets_active,
                "total": self.user_buckets_total,
            },
        }


class RateBucket:
    """Sliding-window admission with bounded concurrency and FIFO waiters.

    A holder takes two things: a concurrency slot (at most ``max_concurrent``
    held at once) and a window token (at most ``capacity`` granted within any
    ``interval_seconds`` window).  ``acquire`` takes both back to back; callers
    that must wait on something else in between use ``acquire_slot`` and
    ``consume_token`` separately so the token is stamped when the work starts.
    Each queue admits strictly in arrival order.

    All state is touched from the owning event loop only, so plain counters are
    enough; there is no await between checking and updating them.
    """

    def __init__(
        self,
        *,
        name: str,
        capacity: int,
        interval_seconds: float,
        max_concurrent: int,
    ) -> None:
        self.name = name
        self.capacity = max(1, int(capacity))
        self.interval_seconds = max(0.001, float(interval_seconds))
        self.max_concurrent = max(1, int(max_concurrent))
        self._admissions: deque[float] = deque()
        self._slot_waiters: deque[asyncio.Future[None]] = deque()
        self._token_waiters: deque[asyncio.Future[None]] = deque()
        self._executing = 0
        self._done = 0
        self._timer: asyncio.TimerHandle | None = None
        self.last_used = time.monotonic()

    @property
    def executing(self) -> int:
        return self._executing

    @property
    def queued(self) -> int:
        pending = [*self._slot_waiters, *self._token_waiters]
        return sum(1 for waiter in pending if not waiter.done())

    @property
    def done(self) -> int:
        return self._done

    def admitted_in_window(self) -> int:
        self._prune(time.monotonic())
        return len(self._admissions)

    def is_busy(self) -> bool:
        """True while something holds or waits for a slot."""
        return self._executing > 0 or self.queued > 0

    def is_idle(self) -> bool:
        """True when dropping the bucket cannot loosen its ceiling."""
        return not self.is_busy() and self.admitted_in_window() == 0

    async def acquire(self) -> None:
        await self.acquire_slot()
        try:
            await self.consume_token()
        except asyncio.CancelledError:
            self._release_slot()
            raise

    async def acquire_slot(self) -> None:
        self.last_used = time.monotonic()
        if not self._slot_waiters and self._executing < self.max_concurrent:
            self._executing += 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._slot_waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Admitted right before the cancellation landed.
                self._release_slot()
            else:
                with suppress(ValueError):
                    self._slot_waiters.remove(waiter)
            raise

    async def consume_token(self) -> None:
        """Wait for room in the window and stamp the admission."""
        now = time.monotonic()
        self.last_used = now
        self._prune(now)
        if not self._token_waiters and len(self._admissions) < self.capacity:
            self._admissions.append(now)
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._token_waiters.append(waiter)
        self._pump_tokens()
        try:
            await waiter
        except asyncio.CancelledError:
            # A token stamped just before the cancellation stays in the window.
            with suppress(ValueError):
                self._token_waiters.remove(waiter)
            self._pump_tokens()
            raise

    def release(self) -> None:
        self._done += 1
        self._release_slot()

    async def __aenter__(self) -> RateBucket:
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self.release()

    def snapshot(self) -> RateBucketSnapshot:
        return RateBucketSnapshot(
            name=self.name,
            capacity=self.capacity,
            interval_seconds=self.interval_seconds,
            max_concurrent=self.max_concurrent,
            executing=self._executing,
            queued=self.queued,
            done=self._done,
            admitted_in_window=self.admitted_in_window(),
        )

    def close(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _prune(self, now: float) -> None:
        while self._admissions and now - self._admissions[0] >= self.interval_seconds:
            self._admissions.popleft()

    def _release_slot(self) -> None:
        self._executing = max(0, self._executing - 1)
        self.last_used = time.monotonic()
        while self._slot_waiters and self._executing < self.max_concurrent:
            head = self._slot_waiters.popleft()
            if head.done():
                continue
            self._executing += 1
            head.set_result(None)

    def _pump_tokens(self) -> None:
        now = time.monotonic()
        self._prune(now)
        while self._token_waiters and len(self._admissions) < self.capacity:
            head = self._token_waiters.popleft()
            if head.done():
                continue
            self._admissions.append(now)
            head.set_result(None)

        if self._token_waiters and self._admissions:
            self._schedule_wakeup(self._admissions[0] + self.interval_seconds - now)

    def _schedule_wakeup(self, delay: float) -> None:
        if self._timer is not None:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(max(0.0, delay), self._on_wakeup)

    def _on_wakeup(self) -> None:
        self._timer = None
        self._pump_tokens()


class NotificationRateLimiter:
    """Global bucket shared by every send plus one lazily created bucket per user.

    ``schedule`` takes a global concurrency slot first and the user's bucket
    inside it.  The global window token is stamped last, once the user's turn
    has come, so a message parked behind the same user's earlier send does not
    spend global window capacity while it waits.  Per-user buckets run one send
    at a time, which also keeps each user's messages in FIFO order.
    """

    def __init__(
        self,
        *,
        global_capacity: int = 20,
        global_interval_seconds: float = 1.0,
        global_max_concurrent: int = 3,
        user_capacity: int = 15,
        user_interval_seconds: float = 60.0,
        user_max_concurrent: int = 1,
        max_user_buckets: int = 500,
    ) -> None:
        self.global_bucket = RateBucket(
            name="global",
            capacity=global_capacity,
            interval_seconds=global_interval_seconds,
            max_concurrent=global_max_concurrent,
        )
        self._user_capacity = max(1, int(user_capacity))
        self._user_interval_seconds = float(user_interval_seconds)
        self._user_max_concurrent = max(1, int(user_max_concurrent))
        self._max_user_buckets = max(1, int(max_user_buckets))
        self._user_buckets: OrderedDict[str, RateBucket] = OrderedDict()
        self._cleanup_task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(cls, settings: Any) -> NotificationRateLimiter:
        return cls(
            global_capacity=settings.notifications_global_rate_limit,
            global_interval_seconds=settings.notifications_global_rate_interval_seconds,
            global_max_concurrent=settings.notifications_global_max_concurrent,
            user_capacity=settings.notifications_user_rate_limit,
            user_interval_seconds=settings.notifications_user_rate_interval_seconds,
            max_user_buckets=settings.notifications_user_limiter_max,
        )

    @property
    def user_capacity(self) -> int:
        return self._user_capacity

    def user_bucket(self, user_id: str) -> RateBucket:
        key = str(user_id)
        bucket = self._user_buckets.get(key)
        if bucket is None:
            bucket = RateBucket(
                name=f"user:{key}",
                capacity=self._user_capacity,
                interval_seconds=self._user_interval_seconds,
                max_concurrent=self._user_max_concurrent,
            )
            self._user_buckets[key] = bucket
            if len(self._user_buckets) > self._max_user_buckets:
                self._evict_over_cap(keep=key)
        else:
            self._user_buckets.move_to_end(key)
        return bucket

    async def schedule(self, user_id: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` once both the global and the user's bucket admit it."""
        user_bucket = self.user_bucket(user_id)
        await self.global_bucket.acquire_slot()
        try:
            async with user_bucket:
                await self.global_bucket.consume_token()
                return await operation()
        finally:
            self.global_bucket.release()

    def is_user_throttled(self, user_id: str) -> bool:
        bucket = self._user_buckets.get(str(user_id))
        if bucket is None:
            return False
        return bucket.executing + bucket.queued >= bucket.capacity

    def clear_user(self, user_id: str) -> bool:
        bucket = self._user_buckets.pop(str(user_id), None)
        if bucket is None:
            return False
        bucket.close()
        return True

    def cleanup_idle(self) -> int:
        """Drop idle user buckets, then trim the oldest unused ones past the cap."""
        cleaned = 0
        for user_id, bucket in list(self._user_buckets.items()):
            if bucket.is_idle():
                self._user_buckets.pop(user_id, None)
                bucket.close()
                cleaned += 1
        cleaned += self._evict_over_cap()
        if cleaned:
            logger.info("[notifications-limiter] cleaned up %s inactive user limiters", cleaned)
        return cleaned

    def _evict_over_cap(self, *, keep: str | None = None) -> int:
        evicted = 0
        for user_id, bucket in list(self._user_buckets.items()):
            if len(self._user_buckets) <= self._max_user_buckets:
                break
            if user_id == keep or bucket.is_busy():
                continue
            self._user_buckets.pop(user_id, None)
            bucket.close()
            evicted += 1
        return evicted

    def stats(self) -> RateLimiterStats:
        active = sum(1 for bucket in self._user_buckets.values() if bucket.is_busy())
        return RateLimiterStats(
            global_bucket=self.global_bucket.snapshot(),
            user_buckets_active=active,
            user_buckets_total=len(self._user_buckets),
        )

    def start_cleanup(self, interval_seconds: float = 1800.0) -> asyncio.Task[None]:
        """Start (or restart) the periodic idle-bucket sweep on the running loop."""
        self.stop_cleanup()
        self._cleanup_task = asyncio.get_running_loop().create_task(
            self._cleanup_loop(max(0.01, float(interval_seconds))),
            name="notifications-limiter-cleanup",
        )
        return self._cleanup_task

    def stop_cleanup(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None

    async def close(self) -> None:
        task = self._cleanup_task
        self.stop_cleanup()
        if task is not None:
            with suppress(asyncio.CancelledError):
                await task
        self.global_bucket.close()
        for bucket in self._user_buckets.values():
            bucket.close()
        self._user_buckets.clear()

    async def _cleanup_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                self.cleanup_idle()
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "[notifications-limiter] cleanup failed error=%s",
                    type(exc).__name__,
                )


def limiter_stats_payload(stats: RateLimiterStats) -> dict[str, Any]:
    """Flatten limiter stats for JSON publishing."""
    payload = stats.as_dict()
    payload["global"]["capacity"] = stats.global_bucket.capacity
    payload["global"]["interval_seconds"] = stats.global_bucket.interval_seconds
    return payload

