"""Database models."""

from visitflow.models.appointments import appointments, slot_reservations
from visitflow.models.base import metadata
from visitflow.models.invoices import invoices
from visitflow.models.payments import payments
from visitflow.models.tokens import sequence_counters, tokens

__all__ = [
    "appointments",
    "invoices",
    "metadata",
    "payments",
    "sequence_counters",
    "slot_reservations",
    "tokens",
]
