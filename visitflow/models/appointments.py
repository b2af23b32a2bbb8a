"""Appointments and slot reservations tables using SQLAlchemy Core."""

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    Index,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)

from visitflow.models.base import Timestamp, metadata

ACTIVE_APPOINTMENT_STATUSES = "status IN ('pending', 'confirmed')"

# Appointments table
appointments = Table(
    "appointments",
    metadata,
    Column("id", Uuid, primary_key=True),
    # Ownership / references (profiles live in the identity provider)
    Column("patient_id", String(64), nullable=False, index=True),
    Column("doctor_id", String(64), nullable=False),
    # Slot
    Column("appointment_date", Date, nullable=False),
    Column("time_slot", String(5), nullable=False),
    # Status management
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("fee", Numeric(10, 2), nullable=False),
    Column("payment_id", Uuid, nullable=True),
    Column("hold_expires_at", Timestamp, nullable=False),
    Column("cancellation_reason", Text, nullable=True),
    # Audit fields
    Column("created_at", Timestamp, nullable=False),
    Column("updated_at", Timestamp, nullable=False),
    Column("confirmed_at", Timestamp, nullable=True),
    Column("cancelled_at", Timestamp, nullable=True),
    # Constraints
    CheckConstraint(
        "status IN ('pending', 'confirmed', 'cancelled', 'expired')",
        name="appointments_status_check",
    ),
    Index(
        "uq_appointments_active_slot",
        "doctor_id",
        "appointment_date",
        "time_slot",
        unique=True,
        postgresql_where=text(ACTIVE_APPOINTMENT_STATUSES),
        sqlite_where=text(ACTIVE_APPOINTMENT_STATUSES),
    ),
    Index("ix_appointments_pending_hold", "status", "hold_expires_at"),
)

# Slot ledger: one row per held (doctor, day, slot)
slot_reservations = Table(
    "slot_reservations",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("doctor_id", String(64), nullable=False),
    Column("slot_date", Date, nullable=False),
    Column("time_slot", String(5), nullable=False),
    Column("appointment_id", Uuid, nullable=False, unique=True),
    Column("created_at", Timestamp, nullable=False),
    UniqueConstraint(
        "doctor_id",
        "slot_date",
        "time_slot",
        name="uq_slot_reservations_doctor_slot",
    ),
)
