"""Walk-in tokens and sequence counters using SQLAlchemy Core."""

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    Integer,
    String,
    Table,
    UniqueConstraint,
    Uuid,
)

from visitflow.models.base import Timestamp, metadata

tokens = Table(
    "tokens",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("patient_id", String(64), nullable=False),
    Column("department_id", String(64), nullable=False),
    Column("doctor_id", String(64), nullable=True),
    Column("queue_date", Date, nullable=False),
    Column("queue_number", Integer, nullable=False),
    Column("status", String(20), nullable=False, server_default="waiting"),
    Column("issued_at", Timestamp, nullable=False),
    Column("called_at", Timestamp, nullable=True),
    Column("completed_at", Timestamp, nullable=True),
    Column("cancelled_at", Timestamp, nullable=True),
    CheckConstraint(
        "status IN ('waiting', 'in_progress', 'completed', 'cancelled')",
        name="tokens_status_check",
    ),
    UniqueConstraint(
        "department_id",
        "queue_date",
        "queue_number",
        name="uq_tokens_department_day_number",
    ),
)

# Arena counters keyed by (scope, period), e.g. ("queue:<dept>", "2025-01-10")
sequence_counters = Table(
    "sequence_counters",
    metadata,
    Column("scope", String(100), primary_key=True),
    Column("period", String(20), primary_key=True),
    Column("last_value", Integer, nullable=False),
)
