"""Tests for the appointment path of the visit lifecycle engine."""

import asyncio
import json
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from visitflow.core.clock import as_utc
from visitflow.core.exceptions import (
    ForbiddenException,
    InvalidState,
    NotFound,
    SlotUnavailable,
    ValidationException,
)
from visitflow.database import build_session_factory
from visitflow.schemas.appointments import AppointmentFilters, AppointmentStatus
from visitflow.services.visit_engine import build_visit_engine


@pytest.fixture
def short_hold_engine(db_engine, test_settings, clock, gateway, redis_mock):
    """Engine with a five minute hold window."""
    return build_visit_engine(
        test_settings.model_copy(update={"appointment_hold_minutes": 5}),
        session_factory=build_session_factory(db_engine),
        redis_client=redis_mock,
        clock=clock,
        gateway=gateway,
    )


def published_events(redis_mock) -> list[dict]:
    return [json.loads(call.args[1]) for call in redis_mock.publish.call_args_list]


@pytest.mark.asyncio
async def test_book_appointment_holds_slot(visit_engine, clock, tomorrow):
    appointment = await visit_engine.book_appointment("patient-1", "D101", tomorrow, "10:00 AM")

    assert appointment.status == AppointmentStatus.PENDING
    assert appointment.time_slot == "10:00"
    assert appointment.fee == Decimal("750.00")
    assert appointment.payment_id is None
    assert as_utc(appointment.hold_expires_at) == clock.now() + timedelta(minutes=15)

    slots = await visit_engine.list_available_slots("D101", tomorrow)
    assert {s.time_slot: s.available for s in slots}["10:00"] is False


@pytest.mark.asyncio
async def test_book_uses_default_fee(visit_engine, tomorrow):
    appointment = await visit_engine.book_appointment("patient-1", "D202", tomorrow, "09:00")
    assert appointment.fee == Decimal("500.00")


@pytest.mark.asyncio
async def test_book_rejects_past_day(visit_engine, today):
    with pytest.raises(ValidationException):
        await visit_engine.book_appointment("patient-1", "D101", today - timedelta(days=1), "10:00")


@pytest.mark.asyncio
async def test_book_rejects_started_slot_today(visit_engine, today):
    with pytest.raises(ValidationException):
        await visit_engine.book_appointment("patient-1", "D101", today, "09:30")

    appointment = await visit_engine.book_appointment("patient-1", "D101", today, "11:00")
    assert appointment.appointment_date == today


@pytest.mark.asyncio
async def test_book_rejects_off_grid_slot(visit_engine, tomorrow):
    with pytest.raises(ValidationException):
        await visit_engine.book_appointment("patient-1", "D101", tomorrow, "13:00")


@pytest.mark.asyncio
async def test_second_booking_of_slot_fails(visit_engine, tomorrow):
    await visit_engine.book_appointment("patient-1", "D101", tomorrow, "10:00")

    with pytest.raises(SlotUnavailable):
        await visit_engine.book_appointment("patient-2", "D101", tomorrow, "10:00 AM")


@pytest.mark.asyncio
async def test_concurrent_bookings_only_one_wins(visit_engine, tomorrow):
    results = await asyncio.gather(
        *(
            visit_engine.book_appointment(f"patient-{i}", "D101", tomorrow, "10:00")
            for i in range(5)
        ),
        return_exceptions=True,
    )

    booked = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, Exception)]

    assert len(booked) == 1
    assert len(rejected) == 4
    assert all(isinstance(r, SlotUnavailable) for r in rejected)


@pytest.mark.asyncio
async def test_get_appointment_checks_owner(visit_engine, tomorrow):
    appointment = await visit_engine.book_appointment("patient-1", "D101", tomorrow, "10:00")

    fetched = await visit_engine.get_appointment(appointment.id, "patient-1")
    assert fetched.id == appointment.id

    # Staff read without an owner scope
    assert (await visit_engine.get_appointment(appointment.id)).id == appointment.id

    with pytest.raises(ForbiddenException):
        await visit_engine.get_appointment(appointment.id, "patient-2")

    with pytest.raises(NotFound):
        await visit_engine.get_appointment(uuid4(), "patient-1")


@pytest.mark.asyncio
async def test_list_appointments_filters_and_pages(visit_engine, tomorrow):
    for label in ("09:00", "09:30", "10:00"):
        await visit_engine.book_appointment("patient-1", "D101", tomorrow, label)
    await visit_engine.book_appointment("patient-2", "D101", tomorrow, "10:30")

    page = await visit_engine.list_appointments("patient-1", AppointmentFilters(page_size=2))
    assert page.total == 3
    assert len(page.items) == 2
    assert all(item.patient_id == "patient-1" for item in page.items)

    cancelled = await visit_engine.list_appointments(
        "patient-1", AppointmentFilters(status=AppointmentStatus.CANCELLED)
    )
    assert cancelled.total == 0


@pytest.mark.asyncio
async def test_cancel_appointment_releases_slot(visit_engine, redis_mock, tomorrow):
    appointment = await visit_engine.book_appointment("patient-1", "D101", tomorrow, "10:00")

    cancelled = await visit_engine.cancel_appointment(appointment.id, "patient-1")

    assert cancelled.status == AppointmentStatus.CANCELLED
    assert cancelled.cancellation_reason == "cancelled_by_patient"
    assert cancelled.cancelled_at is not None

    rebooked = await visit_engine.book_appointment("patient-2", "D101", tomorrow, "10:00")
    assert rebooked.status == AppointmentStatus.PENDING

    events = published_events(redis_mock)
    assert events[-1]["event"] == "AppointmentCancelled"
    assert events[-1]["data"]["appointment_id"] == str(appointment.id)


@pytest.mark.asyncio
async def test_cancel_requires_pending_and_owner(visit_engine, tomorrow):
    appointment = await visit_engine.book_appointment("patient-1", "D101", tomorrow, "10:00")

    with pytest.raises(ForbiddenException):
        await visit_engine.cancel_appointment(appointment.id, "patient-2")

    await visit_engine.cancel_appointment(appointment.id, "patient-1")

    with pytest.raises(InvalidState):
        await visit_engine.cancel_appointment(appointment.id, "patient-1")


@pytest.mark.asyncio
async def test_unattended_hold_expires_and_frees_slot(short_hold_engine, clock, redis_mock, tomorrow):
    engine = short_hold_engine
    appointment = await engine.book_appointment("patient-1", "D101", tomorrow, "10:00")

    clock.advance(minutes=4)
    assert await engine.expire_stale_holds() == 0

    clock.advance(minutes=2)
    assert await engine.expire_stale_holds() == 1

    expired = await engine.get_appointment(appointment.id)
    assert expired.status == AppointmentStatus.CANCELLED
    assert expired.cancellation_reason == "hold_expired"

    slots = await engine.list_available_slots("D101", tomorrow)
    assert {s.time_slot: s.available for s in slots}["10:00"] is True

    rebooked = await engine.book_appointment("patient-2", "D101", tomorrow, "10:00")
    assert rebooked.patient_id == "patient-2"

    events = published_events(redis_mock)
    assert any(
        e["event"] == "AppointmentCancelled" and e["data"]["reason"] == "hold_expired"
        for e in events
    )

    # Nothing left to sweep
    assert await engine.expire_stale_holds() == 0


@pytest.mark.asyncio
async def test_expired_appointment_cannot_start_payment(short_hold_engine, clock, tomorrow):
    appointment = await short_hold_engine.book_appointment("patient-1", "D101", tomorrow, "10:00")
    clock.advance(minutes=6)

    # Hold elapsed but the sweep has not run yet
    with pytest.raises(InvalidState):
        await short_hold_engine.initiate_payment(appointment.id, "patient-1")

    await short_hold_engine.expire_stale_holds()

    with pytest.raises(InvalidState):
        await short_hold_engine.initiate_payment(appointment.id, "patient-1")
