"""Payments table model using SQLAlchemy Core."""

from sqlalchemy import (
    CheckConstraint,
    Column,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    Uuid,
    text,
)

from visitflow.models.base import JSONType, Timestamp, metadata

ACTIVE_PAYMENT_STATUSES = "status IN ('initiated', 'success')"

payments = Table(
    "payments",
    metadata,
    Column("id", Uuid, primary_key=True),
    # Subject the payment is collected against
    Column("subject_type", String(20), nullable=False),
    Column("subject_id", Uuid, nullable=False),
    Column("amount", Numeric(10, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("provider", String(30), nullable=False),
    Column("status", String(20), nullable=False, server_default="initiated"),
    # Gateway session, stored server-side so clients only carry the payment id
    Column("gateway_ref", String(128), nullable=True, unique=True),
    Column("payload", JSONType, nullable=True),
    Column("failure_reason", Text, nullable=True),
    Column("reconcile_attempts", Integer, nullable=False, server_default="0"),
    Column("created_at", Timestamp, nullable=False),
    Column("updated_at", Timestamp, nullable=False),
    Column("completed_at", Timestamp, nullable=True),
    CheckConstraint(
        "subject_type IN ('appointment', 'invoice')",
        name="payments_subject_type_check",
    ),
    CheckConstraint(
        "status IN ('initiated', 'success', 'failed')",
        name="payments_status_check",
    ),
    Index(
        "uq_payments_active_subject",
        "subject_type",
        "subject_id",
        unique=True,
        postgresql_where=text(ACTIVE_PAYMENT_STATUSES),
        sqlite_where=text(ACTIVE_PAYMENT_STATUSES),
    ),
    Index("ix_payments_status_created", "status", "created_at"),
)
