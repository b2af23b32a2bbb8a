"""Fire-and-forget domain events for display surfaces."""

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import redis
import structlog

logger = structlog.get_logger(__name__)


class DomainEvent(str, Enum):
    """Events published after a state transition is committed."""

    APPOINTMENT_CONFIRMED = "AppointmentConfirmed"
    APPOINTMENT_CANCELLED = "AppointmentCancelled"
    TOKEN_ADVANCED = "TokenAdvanced"
    INVOICE_PAID = "InvoicePaid"


class NotificationEmitter:
    """
    Publishes domain events on a Redis channel.

    Delivery is best-effort: a failed publish is logged and dropped, the
    committed engine state is never affected.
    """

    def __init__(self, redis_client: redis.Redis | None, channel: str):
        """Initialize emitter with an optional Redis client."""
        self.redis = redis_client
        self.channel = channel

    def emit(self, event: DomainEvent, payload: dict[str, Any]) -> bool:
        """
        Publish an event.

        Args:
            event: Event type
            payload: JSON-serialisable event body

        Returns:
            True if the event was handed to Redis, False otherwise
        """
        logger.info("domain_event", event_type=event.value, **_loggable(payload))

        if self.redis is None:
            return False

        message = json.dumps(
            {
                "event": event.value,
                "occurred_at": datetime.now(UTC).isoformat(),
                "data": payload,
            },
            default=str,
        )

        try:
            self.redis.publish(self.channel, message)
            return True
        except Exception as e:
            logger.warning("event_publish_failed", event_type=event.value, error=str(e))
            return False


def _loggable(payload: dict[str, Any]) -> dict[str, str]:
    # "event" is structlog's own positional argument
    return {key: str(value) for key, value in payload.items() if key not in ("event", "event_type")}
