"""Tests for domain event publishing."""

import json
from unittest.mock import MagicMock

from visitflow.services.notification_service import DomainEvent, NotificationEmitter


def test_emit_publishes_on_channel():
    mock_redis = MagicMock()
    emitter = NotificationEmitter(mock_redis, "visitflow:events")

    delivered = emitter.emit(
        DomainEvent.APPOINTMENT_CONFIRMED,
        {"appointment_id": "a-1", "patient_id": "patient-1"},
    )

    assert delivered is True
    channel, message = mock_redis.publish.call_args.args
    assert channel == "visitflow:events"
    body = json.loads(message)
    assert body["event"] == "AppointmentConfirmed"
    assert body["data"] == {"appointment_id": "a-1", "patient_id": "patient-1"}
    assert "occurred_at" in body


def test_emit_failure_is_swallowed():
    mock_redis = MagicMock()
    mock_redis.publish.side_effect = ConnectionError("redis down")
    emitter = NotificationEmitter(mock_redis, "visitflow:events")

    assert emitter.emit(DomainEvent.TOKEN_ADVANCED, {"token_id": "t-1"}) is False


def test_emit_without_redis():
    emitter = NotificationEmitter(None, "visitflow:events")

    assert emitter.emit(DomainEvent.INVOICE_PAID, {"invoice_id": "i-1"}) is False
