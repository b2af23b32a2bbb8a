"""Invoices table model using SQLAlchemy Core."""

from sqlalchemy import CheckConstraint, Column, Numeric, String, Table, Uuid

from visitflow.models.base import Timestamp, metadata

invoices = Table(
    "invoices",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("invoice_number", String(32), nullable=False, unique=True),
    Column("patient_id", String(64), nullable=False),
    Column("token_id", Uuid, nullable=True),
    Column("appointment_id", Uuid, nullable=True),
    Column("amount", Numeric(10, 2), nullable=False),
    Column("status", String(20), nullable=False, server_default="unpaid"),
    Column("payment_id", Uuid, nullable=True),
    Column("created_at", Timestamp, nullable=False),
    Column("paid_at", Timestamp, nullable=True),
    CheckConstraint("status IN ('unpaid', 'paid')", name="invoices_status_check"),
)
