"""Payment schemas."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class PaymentStatus(str, Enum):
    """Payment status enumeration."""

    INITIATED = "initiated"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_PAYMENT_STATUSES = (PaymentStatus.SUCCESS, PaymentStatus.FAILED)


class PaymentSubjectType(str, Enum):
    """What a payment is collected against."""

    APPOINTMENT = "appointment"
    INVOICE = "invoice"


class PaymentSession(BaseModel):
    """Gateway session handed to the client to complete a payment."""

    payment_id: UUID
    subject_type: PaymentSubjectType
    subject_id: UUID
    provider: str
    status: PaymentStatus
    amount: Decimal
    currency: str
    payload: dict[str, Any] | None = Field(
        default=None,
        description="Opaque gateway parameters; null while the gateway order is being opened",
    )
    created_at: datetime


class PaymentConfirmRequest(BaseModel):
    """Gateway result posted back by the client after checkout."""

    gateway_result: dict[str, Any]


class PaymentCallbackRequest(BaseModel):
    """Gateway server-to-server callback."""

    payment_id: UUID
    gateway_result: dict[str, Any]


class PaymentConfirmation(BaseModel):
    """Authoritative outcome of a confirmation call."""

    payment_id: UUID
    status: PaymentStatus
    subject_type: PaymentSubjectType
    subject_id: UUID
    subject_status: str | None = None
    failure_reason: str | None = None


class GatewayOrderStatus(str, Enum):
    """Order state as reported by the gateway when polled."""

    PENDING = "pending"
    CAPTURED = "captured"
    FAILED = "failed"


@dataclass(frozen=True)
class GatewayOrder:
    """Result of opening a transaction at the gateway."""

    gateway_ref: str
    payload: dict[str, Any]


@dataclass(frozen=True)
class GatewayVerification:
    """Verified gateway result."""

    payment_ref: str
    success: bool
