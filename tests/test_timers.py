"""Tests for TimerRegistry — arming, cancelling and long-wait decomposition."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from herald.scheduler.timers import TimerRegistry

MAX_WAIT = timedelta(days=24)


@pytest.fixture
async def registry(clock) -> TimerRegistry:
    reg = TimerRegistry(clock=clock, max_wait=MAX_WAIT, timezone="UTC")
    yield reg
    reg.shutdown()


async def _wake(registry: TimerRegistry, clock, entry_id: str) -> None:
    """Advance the clock to the next wake-up and run it."""
    clock.now = registry.next_wakeup(entry_id)
    await registry._wake(entry_id)
    await registry.drain()


# -- arm / cancel --------------------------------------------------------------


async def test_arm_registers_timer(registry: TimerRegistry, clock) -> None:
    due = clock.now + timedelta(hours=2)
    registry.arm("e1", due, AsyncMock())

    assert registry.is_armed("e1")
    assert registry.armed_ids() == {"e1"}
    assert registry.next_wakeup("e1") == due


async def test_fires_when_due(registry: TimerRegistry, clock) -> None:
    on_fire = AsyncMock()
    registry.arm("e1", clock.now + timedelta(hours=2), on_fire)

    await _wake(registry, clock, "e1")

    on_fire.assert_awaited_once_with("e1")
    assert not registry.is_armed("e1")


async def test_past_due_fires_on_next_tick(registry: TimerRegistry, clock) -> None:
    on_fire = AsyncMock()
    registry.arm("e1", clock.now - timedelta(minutes=5), on_fire)

    on_fire.assert_not_awaited()
    await registry.drain()

    on_fire.assert_awaited_once_with("e1")


async def test_due_exactly_now_fires(registry: TimerRegistry, clock) -> None:
    on_fire = AsyncMock()
    registry.arm("e1", clock.now, on_fire)
    await registry.drain()
    on_fire.assert_awaited_once()


async def test_cancel_is_idempotent(registry: TimerRegistry, clock) -> None:
    registry.arm("e1", clock.now + timedelta(hours=1), AsyncMock())

    assert registry.cancel("e1") is True
    assert registry.cancel("e1") is False
    assert registry.cancel("never-armed") is False
    assert not registry.is_armed("e1")


async def test_cancel_prevents_firing(registry: TimerRegistry, clock) -> None:
    on_fire = AsyncMock()
    registry.arm("e1", clock.now + timedelta(hours=1), on_fire)
    registry.cancel("e1")

    clock.advance(timedelta(hours=2))
    await registry._wake("e1")
    await registry.drain()

    on_fire.assert_not_awaited()


async def test_cancel_before_immediate_fire_runs(registry: TimerRegistry, clock) -> None:
    on_fire = AsyncMock()
    registry.arm("e1", clock.now - timedelta(seconds=1), on_fire)
    registry.cancel("e1")

    await registry.drain()

    on_fire.assert_not_awaited()


async def test_rearm_replaces_previous_timer(registry: TimerRegistry, clock) -> None:
    first = AsyncMock()
    second = AsyncMock()
    registry.arm("e1", clock.now + timedelta(hours=1), first)
    registry.arm("e1", clock.now + timedelta(hours=3), second)

    assert registry.armed_ids() == {"e1"}
    assert registry.next_wakeup("e1") == clock.now + timedelta(hours=3)

    await _wake(registry, clock, "e1")

    first.assert_not_awaited()
    second.assert_awaited_once_with("e1")


async def test_rearm_replaces_pending_immediate_fire(registry: TimerRegistry, clock) -> None:
    first = AsyncMock()
    registry.arm("e1", clock.now - timedelta(seconds=1), first)
    registry.arm("e1", clock.now + timedelta(hours=1), AsyncMock())

    await registry.drain()

    first.assert_not_awaited()
    assert registry.is_armed("e1")


async def test_callback_errors_are_contained(registry: TimerRegistry, clock) -> None:
    failing = AsyncMock(side_effect=RuntimeError("boom"))
    ok = AsyncMock()
    registry.arm("bad", clock.now, failing)
    registry.arm("good", clock.now, ok)

    await registry.drain()

    failing.assert_awaited_once()
    ok.assert_awaited_once()


async def test_callback_may_rearm_same_id(registry: TimerRegistry, clock) -> None:
    async def rearm(entry_id: str) -> None:
        registry.arm(entry_id, clock.now + timedelta(days=1), AsyncMock())

    registry.arm("e1", clock.now, rearm)
    await registry.drain()

    assert registry.next_wakeup("e1") == clock.now + timedelta(days=1)


async def test_slow_callback_does_not_block_others(registry: TimerRegistry, clock) -> None:
    gate = asyncio.Event()
    fast = AsyncMock()

    async def slow(entry_id: str) -> None:
        await gate.wait()

    registry.arm("slow", clock.now, slow)
    registry.arm("fast", clock.now, fast)
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    fast.assert_awaited_once()
    gate.set()
    await registry.drain()


# -- long waits ----------------------------------------------------------------


async def test_long_wait_is_split_into_hops(registry: TimerRegistry, clock) -> None:
    start = clock.now
    due = start + timedelta(days=365)
    on_fire = AsyncMock()
    registry.arm("yearly", due, on_fire)

    assert registry.next_wakeup("yearly") == start + MAX_WAIT

    wakeups = 0
    while registry.is_armed("yearly"):
        wake_at = registry.next_wakeup("yearly")
        assert wake_at - clock.now <= MAX_WAIT
        await _wake(registry, clock, "yearly")
        wakeups += 1
        if registry.is_armed("yearly"):
            on_fire.assert_not_awaited()

    # 365 / 24 → 15 intermediate hops plus the final firing
    assert wakeups == 16
    on_fire.assert_awaited_once_with("yearly")
    assert clock.now == due


async def test_wake_before_due_never_fires_early(registry: TimerRegistry, clock) -> None:
    on_fire = AsyncMock()
    due = clock.now + timedelta(hours=5)
    registry.arm("e1", due, on_fire)

    # A wake-up that arrives early just re-arms for the remainder.
    clock.advance(timedelta(hours=4))
    await registry._wake("e1")
    await registry.drain()

    on_fire.assert_not_awaited()
    assert registry.next_wakeup("e1") == due


async def test_delay_within_max_wait_uses_single_wait(registry: TimerRegistry, clock) -> None:
    due = clock.now + MAX_WAIT
    registry.arm("e1", due, AsyncMock())
    assert registry.next_wakeup("e1") == due


# -- lifecycle -----------------------------------------------------------------


async def test_start_and_shutdown(registry: TimerRegistry, clock) -> None:
    registry.arm("e1", clock.now + timedelta(hours=1), AsyncMock())
    registry.start()
    assert registry.running is True

    registry.shutdown()
    assert registry.running is False
    assert registry.armed_ids() == set()


async def test_real_scheduler_fires_short_delay() -> None:
    fired = asyncio.Event()

    async def on_fire(entry_id: str) -> None:
        fired.set()

    reg = TimerRegistry(timezone="UTC")
    reg.start()
    try:
        from herald.scheduler.models import utcnow

        reg.arm("e1", utcnow() + timedelta(milliseconds=200), on_fire)
        await asyncio.wait_for(fired.wait(), timeout=5)
    finally:
        reg.shutdown()
