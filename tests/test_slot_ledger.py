"""Tests for the slot grid and the slot availability ledger."""

import json
from uuid import uuid4

import pytest

from visitflow.core.exceptions import SlotUnavailable, ValidationException
from visitflow.services.slot_ledger import SlotGrid, parse_clock_time


def test_default_grid_has_fourteen_slots():
    grid = SlotGrid("09:00", "17:00", 30, "13:00", "14:00")

    assert len(grid.labels) == 14
    assert grid.labels[0] == "09:00"
    assert grid.labels[-1] == "16:30"
    assert "13:00" not in grid.labels
    assert "13:30" not in grid.labels
    assert "12:30" in grid.labels
    assert "14:00" in grid.labels


def test_grid_without_break():
    grid = SlotGrid("09:00", "11:00", 60)
    assert grid.labels == ("09:00", "10:00")


def test_normalize_accepts_twelve_hour_labels():
    grid = SlotGrid("09:00", "17:00", 30, "13:00", "14:00")

    assert grid.normalize("10:00") == "10:00"
    assert grid.normalize("10:00 AM") == "10:00"
    assert grid.normalize("02:30 pm") == "14:30"
    assert grid.normalize("2:30PM") == "14:30"


@pytest.mark.parametrize("label", ["10:15", "13:00", "08:30", "17:00", "25:00", "ten", ""])
def test_normalize_rejects_off_grid_or_malformed(label):
    grid = SlotGrid("09:00", "17:00", 30, "13:00", "14:00")

    with pytest.raises(ValidationException):
        grid.normalize(label)


def test_parse_clock_time_rejects_garbage():
    with pytest.raises(ValidationException):
        parse_clock_time("noonish")


@pytest.mark.asyncio
async def test_try_reserve_is_exclusive(visit_engine, tomorrow):
    ledger = visit_engine.ledger

    async with visit_engine.session_factory() as db:
        await ledger.try_reserve(db, "D101", tomorrow, "10:00", uuid4())
        await db.commit()

    async with visit_engine.session_factory() as db:
        with pytest.raises(SlotUnavailable):
            await ledger.try_reserve(db, "D101", tomorrow, "10:00", uuid4())

    # Same slot for another doctor is independent
    async with visit_engine.session_factory() as db:
        reservation = await ledger.try_reserve(db, "D202", tomorrow, "10:00", uuid4())
        await db.commit()

    assert reservation.doctor_id == "D202"


@pytest.mark.asyncio
async def test_release_frees_slot(visit_engine, tomorrow):
    ledger = visit_engine.ledger
    appointment_id = uuid4()

    async with visit_engine.session_factory() as db:
        await ledger.try_reserve(db, "D101", tomorrow, "11:00", appointment_id)
        await db.commit()

    async with visit_engine.session_factory() as db:
        assert await ledger.release(db, appointment_id) is True
        assert await ledger.release(db, appointment_id) is False
        await db.commit()

    async with visit_engine.session_factory() as db:
        await ledger.try_reserve(db, "D101", tomorrow, "11:00", uuid4())
        await db.commit()


@pytest.mark.asyncio
async def test_list_available_marks_held_slots(visit_engine, tomorrow):
    async with visit_engine.session_factory() as db:
        await visit_engine.ledger.try_reserve(db, "D101", tomorrow, "09:30", uuid4())
        await db.commit()

    slots = await visit_engine.list_available_slots("D101", tomorrow)

    assert [slot.time_slot for slot in slots] == list(visit_engine.ledger.grid.labels)
    by_label = {slot.time_slot: slot.available for slot in slots}
    assert by_label["09:30"] is False
    assert by_label["09:00"] is True
    assert sum(by_label.values()) == 13


@pytest.mark.asyncio
async def test_list_available_hides_started_slots_today(visit_engine, today):
    # The frozen clock sits at 10:00 clinic time
    slots = await visit_engine.list_available_slots("D101", today)
    by_label = {slot.time_slot: slot.available for slot in slots}

    assert by_label["09:00"] is False
    assert by_label["09:30"] is False
    assert by_label["10:00"] is False
    assert by_label["10:30"] is True


@pytest.mark.asyncio
async def test_list_available_served_from_cache(visit_engine, redis_mock, tomorrow):
    redis_mock.get.return_value = json.dumps([{"time_slot": "09:00", "available": False}])

    slots = await visit_engine.list_available_slots("D101", tomorrow)

    assert len(slots) == 1
    assert slots[0].available is False
    redis_mock.get.assert_called_with(f"slots:D101:{tomorrow}")


@pytest.mark.asyncio
async def test_list_available_populates_cache(visit_engine, redis_mock, tomorrow):
    await visit_engine.list_available_slots("D101", tomorrow)

    redis_mock.setex.assert_called_once()
    key, ttl, _ = redis_mock.setex.call_args.args
    assert key == f"slots:D101:{tomorrow}"
    assert ttl == 5
