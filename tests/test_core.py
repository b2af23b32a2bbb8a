"""Tests for locking, time and status parsing helpers."""

import asyncio
from datetime import UTC, datetime

import pytest

from visitflow.core.clock import Clock, FrozenClock, as_utc
from visitflow.core.exceptions import InvalidState
from visitflow.core.locks import KeyedLock, slot_key
from visitflow.schemas.common import parse_status
from visitflow.schemas.tokens import TokenStatus


@pytest.mark.asyncio
async def test_keyed_lock_serializes_same_key():
    locks = KeyedLock()
    key = slot_key("D101", "2025-01-10", "10:00")
    active = 0
    peak = 0

    async def critical_section():
        nonlocal active, peak
        async with locks.hold(key):
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

    await asyncio.gather(*(critical_section() for _ in range(5)))

    assert peak == 1
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_keyed_lock_allows_different_keys():
    locks = KeyedLock()
    entered = asyncio.Event()

    async def hold_first():
        async with locks.hold("a"):
            entered.set()
            await asyncio.sleep(0.05)

    task = asyncio.create_task(hold_first())
    await entered.wait()

    assert locks.is_locked("a")
    async with locks.hold("b"):
        assert locks.is_locked("b")

    await task
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_keyed_lock_released_on_error():
    locks = KeyedLock()

    with pytest.raises(RuntimeError):
        async with locks.hold("a"):
            raise RuntimeError("boom")

    assert not locks.is_locked("a")
    assert len(locks) == 0


def test_frozen_clock():
    clock = FrozenClock(datetime(2025, 1, 9, 4, 30, tzinfo=UTC))

    clock.advance(minutes=90)

    assert clock.now() == datetime(2025, 1, 9, 6, 0, tzinfo=UTC)
    assert as_utc(datetime(2025, 1, 9, 6, 0)) == clock.now()


def test_clock_requires_now():
    class Incomplete(Clock):
        pass

    with pytest.raises(TypeError):
        Incomplete()


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("in_progress", TokenStatus.IN_PROGRESS),
        ("IN_PROGRESS", TokenStatus.IN_PROGRESS),
        (TokenStatus.COMPLETED, TokenStatus.COMPLETED),
    ],
)
def test_parse_status_accepts_members(raw, expected):
    assert parse_status(TokenStatus, raw) is expected


@pytest.mark.parametrize("raw", ["done", "In_Progress", " waiting", None, 3])
def test_parse_status_rejects_unknown(raw):
    with pytest.raises(InvalidState):
        parse_status(TokenStatus, raw)
