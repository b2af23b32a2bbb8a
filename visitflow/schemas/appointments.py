"""Appointment schemas for request/response validation."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


ACTIVE_APPOINTMENT_STATUSES = (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED)


class AppointmentCreate(BaseModel):
    """Schema for booking a slot."""

    doctor_id: str = Field(..., min_length=1, max_length=64)
    appointment_date: date
    time_slot: str = Field(..., min_length=4, max_length=8, examples=["10:00", "10:00 AM"])


class AppointmentResponse(BaseModel):
    """Schema for appointment response."""

    id: UUID
    patient_id: str
    doctor_id: str
    appointment_date: date
    time_slot: str
    status: AppointmentStatus
    fee: Decimal
    payment_id: UUID | None = None
    hold_expires_at: datetime
    cancellation_reason: str | None = None
    created_at: datetime
    updated_at: datetime
    confirmed_at: datetime | None = None
    cancelled_at: datetime | None = None

    model_config = {"from_attributes": True}


class AppointmentListResponse(BaseModel):
    """Schema for paginated appointment list response."""

    total: int
    page: int
    page_size: int
    items: list[AppointmentResponse]


class AppointmentFilters(BaseModel):
    """Schema for appointment filtering."""

    status: AppointmentStatus | None = None
    doctor_id: str | None = None
    from_date: date | None = None
    to_date: date | None = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


class SlotAvailability(BaseModel):
    """A single slot on a doctor's day."""

    time_slot: str
    available: bool


class AvailabilityResponse(BaseModel):
    """Schema for a doctor's day of slots."""

    doctor_id: str
    date: date
    slots: list[SlotAvailability]
