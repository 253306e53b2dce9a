from __future__ import annotations

import asyncio
import time

import pytest

from tgnotify.services.notification_rate_limiter import (
    NotificationRateLimiter,
    RateBucket,
    limiter_stats_payload,
)


@pytest.mark.asyncio
async def test_same_user_sends_never_overlap_and_keep_fifo_order() -> None:
    limiter = NotificationRateLimiter(global_max_concurrent=3, user_capacity=15)
    in_flight = 0
    peak = 0
    order: list[int] = []

    async def _send(index: int) -> int:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        order.append(index)
        in_flight -= 1
        return index

    results = await asyncio.gather(
        *(limiter.schedule("42", lambda index=index: _send(index)) for index in range(5))
    )

    assert results == [0, 1, 2, 3, 4]
    assert peak == 1
    assert order == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_global_concurrency_is_bounded_across_users() -> None:
    limiter = NotificationRateLimiter(global_capacity=100, global_max_concurrent=3)
    in_flight = 0
    peak = 0

    async def _send() -> None:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.02)
        in_flight -= 1

    await asyncio.gather(*(limiter.schedule(f"user-{index}", _send) for index in range(10)))

    assert peak == 3
    assert limiter.stats().global_bucket.done == 10


@pytest.mark.asyncio
async def test_global_window_ceiling_holds_for_any_window() -> None:
    interval = 0.2
    capacity = 5
    limiter = NotificationRateLimiter(
        global_capacity=capacity,
        global_interval_seconds=interval,
        global_max_concurrent=10,
    )
    starts: list[float] = []

    async def _send() -> None:
        starts.append(time.monotonic())

    await asyncio.gather(*(limiter.schedule(f"user-{index}", _send) for index in range(12)))

    assert len(starts) == 12
    starts.sort()
    # Small tolerance for scheduling jitter between admission and the call.
    window = interval * 0.9
    for index, started in enumerate(starts):
        in_window = [other for other in starts[index:] if other - started < window]
        assert len(in_window) <= capacity
    assert starts[-1] - starts[0] >= interval * 2 * 0.9


@pytest.mark.asyncio
async def test_global_window_ceiling_holds_when_a_user_queues_behind_itself() -> None:
    interval = 0.2
    capacity = 2
    limiter = NotificationRateLimiter(
        global_capacity=capacity,
        global_interval_seconds=interval,
        global_max_concurrent=3,
    )
    origin = time.monotonic()
    starts: list[tuple[str, float]] = []

    async def _send(label: str, hold: float = 0.0) -> None:
        starts.append((label, time.monotonic() - origin))
        await asyncio.sleep(hold)

    first = asyncio.create_task(limiter.schedule("a", lambda: _send("a1", 0.15)))
    second = asyncio.create_task(limiter.schedule("a", lambda: _send("a2")))
    await asyncio.sleep(0.01)
    others = [
        asyncio.create_task(limiter.schedule(user_id, lambda user_id=user_id: _send(user_id)))
        for user_id in ("b", "c")
    ]
    await asyncio.gather(first, second, *others)

    assert [label for label, _ in starts if label.startswith("a")] == ["a1", "a2"]
    times = sorted(started for _, started in starts)
    window = interval * 0.9
    for index, started in enumerate(times):
        in_window = [other for other in times[index:] if other - started < window]
        assert len(in_window) <= capacity
    assert limiter.global_bucket.executing == 0


@pytest.mark.asyncio
async def test_slot_and_token_can_be_taken_separately() -> None:
    bucket = RateBucket(name="t", capacity=1, interval_seconds=0.05, max_concurrent=2)

    await bucket.acquire_slot()
    await bucket.acquire_slot()
    assert bucket.executing == 2
    assert bucket.admitted_in_window() == 0

    await bucket.consume_token()
    waiting = asyncio.create_task(bucket.consume_token())
    await asyncio.sleep(0)
    assert bucket.queued == 1

    await asyncio.wait_for(waiting, timeout=1.0)
    bucket.release()
    bucket.release()
    assert bucket.executing == 0
    assert bucket.done == 2


@pytest.mark.asyncio
async def test_slots_are_released_when_the_task_fails() -> None:
    limiter = NotificationRateLimiter()

    async def _boom() -> None:
        raise RuntimeError("send failed")

    with pytest.raises(RuntimeError):
        await limiter.schedule("7", _boom)

    async def _ok() -> str:
        return "ok"

    assert await asyncio.wait_for(limiter.schedule("7", _ok), timeout=1.0) == "ok"
    assert limiter.global_bucket.executing == 0
    assert limiter.user_bucket("7").executing == 0


@pytest.mark.asyncio
async def test_is_user_throttled_counts_running_and_queued() -> None:
    limiter = NotificationRateLimiter(user_capacity=2)
    gate = asyncio.Event()

    async def _blocked() -> None:
        await gate.wait()

    assert limiter.is_user_throttled("9") is False
    first = asyncio.create_task(limiter.schedule("9", _blocked))
    second = asyncio.create_task(limiter.schedule("9", _blocked))
    await asyncio.sleep(0.01)

    assert limiter.user_bucket("9").executing == 1
    assert limiter.user_bucket("9").queued == 1
    assert limiter.is_user_throttled("9") is True

    gate.set()
    await asyncio.gather(first, second)
    assert limiter.is_user_throttled("9") is False


@pytest.mark.asyncio
async def test_cancelled_waiter_leaves_the_queue() -> None:
    bucket = RateBucket(name="t", capacity=10, interval_seconds=1.0, max_concurrent=1)
    await bucket.acquire()

    waiter = asyncio.create_task(bucket.acquire())
    await asyncio.sleep(0)
    assert bucket.queued == 1

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter
    assert bucket.queued == 0

    bucket.release()
    assert bucket.executing == 0


@pytest.mark.asyncio
async def test_cleanup_idle_drops_only_quiet_buckets() -> None:
    limiter = NotificationRateLimiter(user_interval_seconds=0.05)
    gate = asyncio.Event()

    async def _noop() -> None:
        return None

    async def _blocked() -> None:
        await gate.wait()

    await limiter.schedule("quiet", _noop)
    busy = asyncio.create_task(limiter.schedule("busy", _blocked))
    await asyncio.sleep(0.06)

    assert limiter.cleanup_idle() == 1
    assert limiter.stats().user_buckets_total == 1

    gate.set()
    await busy


@pytest.mark.asyncio
async def test_recent_admissions_keep_a_bucket_alive() -> None:
    limiter = NotificationRateLimiter(user_interval_seconds=60.0)

    async def _noop() -> None:
        return None

    await limiter.schedule("recent", _noop)

    assert limiter.cleanup_idle() == 0
    assert limiter.stats().user_buckets_total == 1


@pytest.mark.asyncio
async def test_bucket_count_is_capped_by_evicting_oldest_unused() -> None:
    limiter = NotificationRateLimiter(max_user_buckets=2)

    async def _noop() -> None:
        return None

    for user_id in ("a", "b", "c"):
        await limiter.schedule(user_id, _noop)

    stats = limiter.stats()
    assert stats.user_buckets_total == 2
    assert limiter.clear_user("a") is False
    assert limiter.clear_user("c") is True


@pytest.mark.asyncio
async def test_stats_payload_shape() -> None:
    limiter = NotificationRateLimiter(global_capacity=20)

    async def _noop() -> None:
        return None

    await limiter.schedule("1", _noop)
    payload = limiter_stats_payload(limiter.stats())

    assert payload["global"]["done"] == 1
    assert payload["global"]["executing"] == 0
    assert payload["global"]["queued"] == 0
    assert payload["global"]["capacity"] == 20
    assert payload["user_limiters"] == {"active": 0, "total": 1}


@pytest.mark.asyncio
async def test_background_cleanup_runs_and_stops() -> None:
    limiter = NotificationRateLimiter(user_interval_seconds=0.01)

    async def _noop() -> None:
        return None

    await limiter.schedule("1", _noop)
    task = limiter.start_cleanup(0.02)
    await asyncio.sleep(0.08)

    assert limiter.stats().user_buckets_total == 0
    await limiter.close()
    assert task.cancelled() or task.done()
