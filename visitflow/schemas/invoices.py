"""Invoice schemas."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class InvoiceStatus(str, Enum):
    """Invoice status enumeration."""

    UNPAID = "unpaid"
    PAID = "paid"


class InvoiceCreate(BaseModel):
    """Schema for opening a payable invoice."""

    patient_id: str = Field(..., min_length=1, max_length=64)
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    token_id: UUID | None = None
    appointment_id: UUID | None = None

    @model_validator(mode="after")
    def validate_reference(self) -> "InvoiceCreate":
        """Validate the invoice settles exactly one visit."""
        if (self.token_id is None) == (self.appointment_id is None):
            raise ValueError("Exactly one of token_id or appointment_id is required")
        return self


class InvoiceResponse(BaseModel):
    """Schema for invoice response."""

    id: UUID
    invoice_number: str
    patient_id: str
    token_id: UUID | None = None
    appointment_id: UUID | None = None
    amount: Decimal
    status: InvoiceStatus
    payment_id: UUID | None = None
    created_at: datetime
    paid_at: datetime | None = None

    model_config = {"from_attributes": True}
