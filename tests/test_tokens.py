"""Tests for walk-in tokens and the department queue."""

import asyncio
import json
from types import SimpleNamespace
from uuid import uuid4

import pytest

from visitflow.core.exceptions import InvalidState, InvalidTransition, NotFound
from visitflow.schemas.tokens import TokenStatus


@pytest.mark.asyncio
async def test_generate_token_starts_waiting(visit_engine, today):
    token = await visit_engine.generate_token("patient-1", "cardiology", doctor_id="D101")

    assert token.status == TokenStatus.WAITING
    assert token.queue_number == 1
    assert token.queue_date == today
    assert token.token_code == "TK-1001"
    assert token.doctor_id == "D101"


@pytest.mark.asyncio
async def test_queue_numbers_are_per_department_and_day(visit_engine, clock):
    first = await visit_engine.generate_token("patient-1", "cardiology")
    second = await visit_engine.generate_token("patient-2", "cardiology")
    other_department = await visit_engine.generate_token("patient-3", "orthopedics")

    assert (first.queue_number, second.queue_number) == (1, 2)
    assert other_department.queue_number == 1

    clock.advance(days=1)
    next_day = await visit_engine.generate_token("patient-4", "cardiology")
    assert next_day.queue_number == 1


@pytest.mark.asyncio
async def test_concurrent_registrations_get_distinct_numbers(visit_engine):
    tokens = await asyncio.gather(
        *(visit_engine.generate_token(f"patient-{i}", "cardiology") for i in range(10))
    )

    assert sorted(t.queue_number for t in tokens) == list(range(1, 11))


@pytest.mark.asyncio
async def test_token_progresses_through_legal_edges(visit_engine, clock, redis_mock):
    token = await visit_engine.generate_token("patient-1", "cardiology")

    clock.advance(minutes=12)
    called = await visit_engine.advance_token(token.id, "in_progress")
    assert called.status == TokenStatus.IN_PROGRESS
    assert called.called_at is not None

    completed = await visit_engine.advance_token(token.id, "COMPLETED")
    assert completed.status == TokenStatus.COMPLETED
    assert completed.completed_at is not None

    messages = [json.loads(call.args[1]) for call in redis_mock.publish.call_args_list]
    advanced = [m["data"] for m in messages if m["event"] == "TokenAdvanced"]
    assert [(m["from_status"], m["to_status"]) for m in advanced] == [
        ("waiting", "in_progress"),
        ("in_progress", "completed"),
    ]
    assert advanced[0]["token_code"] == "TK-1001"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "path",
    [
        ["completed"],
        ["in_progress", "waiting"],
        ["in_progress", "completed", "cancelled"],
        ["cancelled", "in_progress"],
    ],
)
async def test_illegal_edges_are_rejected(visit_engine, path):
    token = await visit_engine.generate_token("patient-1", "cardiology")

    *legal, illegal = path
    for status in legal:
        await visit_engine.advance_token(token.id, status)

    with pytest.raises(InvalidTransition):
        await visit_engine.advance_token(token.id, illegal)


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["done", "In_Progress", "", "WAITING "])
async def test_unknown_status_is_rejected(visit_engine, status):
    token = await visit_engine.generate_token("patient-1", "cardiology")

    with pytest.raises(InvalidState):
        await visit_engine.advance_token(token.id, status)

    unchanged = await visit_engine.get_token(token.id)
    assert unchanged.status == TokenStatus.WAITING


@pytest.mark.asyncio
async def test_cancel_token(visit_engine):
    token = await visit_engine.generate_token("patient-1", "cardiology")

    cancelled = await visit_engine.cancel_token(token.id)

    assert cancelled.status == TokenStatus.CANCELLED
    assert cancelled.cancelled_at is not None

    with pytest.raises(InvalidTransition):
        await visit_engine.cancel_token(token.id)


@pytest.mark.asyncio
async def test_advance_unknown_token(visit_engine):
    with pytest.raises(NotFound):
        await visit_engine.advance_token(uuid4(), "in_progress")


@pytest.mark.asyncio
async def test_remove_token_requires_terminal_status(visit_engine):
    token = await visit_engine.generate_token("patient-1", "cardiology")

    with pytest.raises(InvalidState):
        await visit_engine.remove_token(token.id)

    await visit_engine.cancel_token(token.id)
    await visit_engine.remove_token(token.id)

    with pytest.raises(NotFound):
        await visit_engine.get_token(token.id)


@pytest.mark.asyncio
async def test_administrative_removal_keeps_numbers_unique(visit_engine):
    first = await visit_engine.generate_token("patient-1", "cardiology")
    second = await visit_engine.generate_token("patient-2", "cardiology")

    await visit_engine.remove_token(second.id, administrative=True)
    third = await visit_engine.generate_token("patient-3", "cardiology")

    assert third.queue_number == 3
    remaining = await visit_engine.list_tokens("cardiology")
    assert [t.queue_number for t in remaining] == [first.queue_number, 3]


@pytest.mark.asyncio
async def test_list_tokens_filters_by_status(visit_engine):
    first = await visit_engine.generate_token("patient-1", "cardiology")
    await visit_engine.generate_token("patient-2", "cardiology")
    await visit_engine.advance_token(first.id, "in_progress")

    waiting = await visit_engine.list_tokens("cardiology", status=TokenStatus.WAITING)
    assert [t.patient_id for t in waiting] == ["patient-2"]


@pytest.mark.asyncio
async def test_queue_stats_counts_and_wait(visit_engine, clock):
    first = await visit_engine.generate_token("patient-1", "cardiology")
    second = await visit_engine.generate_token("patient-2", "cardiology")
    third = await visit_engine.generate_token("patient-3", "cardiology")
    await visit_engine.generate_token("patient-4", "cardiology")

    clock.advance(minutes=10)
    await visit_engine.advance_token(first.id, "in_progress")
    await visit_engine.advance_token(first.id, "completed")
    clock.advance(minutes=10)
    await visit_engine.advance_token(second.id, "in_progress")
    await visit_engine.cancel_token(third.id)

    stats = await visit_engine.queue_stats("cardiology")

    assert stats.waiting_count == 1
    assert stats.in_progress_count == 1
    assert stats.completed_count == 1
    assert stats.cancelled_count == 1
    assert stats.average_wait_minutes == 15.0


@pytest.mark.asyncio
async def test_queue_stats_empty_department(visit_engine):
    stats = await visit_engine.queue_stats("dermatology")

    assert stats.waiting_count == 0
    assert stats.average_wait_minutes is None


@pytest.mark.asyncio
async def test_queue_stats_cached_and_invalidated(visit_engine, redis_mock, today):
    await visit_engine.queue_stats("cardiology")
    redis_mock.setex.assert_called_once()
    assert redis_mock.setex.call_args.args[0] == f"queue:stats:cardiology:{today}"

    await visit_engine.generate_token("patient-1", "cardiology")
    redis_mock.delete.assert_any_call(f"queue:stats:cardiology:{today}")


@pytest.mark.asyncio
async def test_advance_from_superseded_read_is_rejected(visit_engine, redis_mock, monkeypatch):
    token = await visit_engine.generate_token("patient-1", "cardiology")
    await visit_engine.advance_token(token.id, "in_progress")

    service = visit_engine.tokens
    real_get_row = service._get_row
    stale_reads = iter([True])

    async def get_row_read_before_other_commit(db, token_id):
        row = await real_get_row(db, token_id)
        if next(stale_reads, False):
            return SimpleNamespace(**{**row._asdict(), "status": TokenStatus.WAITING.value})
        return row

    monkeypatch.setattr(service, "_get_row", get_row_read_before_other_commit)

    with pytest.raises(InvalidTransition):
        await visit_engine.advance_token(token.id, "cancelled")

    current = await visit_engine.get_token(token.id)
    assert current.status == TokenStatus.IN_PROGRESS
    messages = [json.loads(call.args[1]) for call in redis_mock.publish.call_args_list]
    assert [m["event"] for m in messages].count("TokenAdvanced") == 1
