"""Walk-in token schemas."""

from datetime import date, datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, computed_field


class TokenStatus(str, Enum):
    """Token status enumeration."""

    WAITING = "waiting"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_TOKEN_STATUSES = (TokenStatus.COMPLETED, TokenStatus.CANCELLED)

# Legal edges; anything else is an InvalidTransition
TOKEN_TRANSITIONS: dict[TokenStatus, frozenset[TokenStatus]] = {
    TokenStatus.WAITING: frozenset({TokenStatus.IN_PROGRESS, TokenStatus.CANCELLED}),
    TokenStatus.IN_PROGRESS: frozenset({TokenStatus.COMPLETED, TokenStatus.CANCELLED}),
    TokenStatus.COMPLETED: frozenset(),
    TokenStatus.CANCELLED: frozenset(),
}

TOKEN_CODE_OFFSET = 1000


class TokenCreate(BaseModel):
    """Schema for registering a walk-in."""

    patient_id: str = Field(..., min_length=1, max_length=64)
    department_id: str = Field(..., min_length=1, max_length=64)
    doctor_id: str | None = Field(None, max_length=64)


class TokenStatusUpdate(BaseModel):
    """Schema for advancing a token; validated against TokenStatus by the engine."""

    status: str = Field(..., min_length=1, max_length=20)


class TokenResponse(BaseModel):
    """Schema for token response."""

    id: UUID
    patient_id: str
    department_id: str
    doctor_id: str | None = None
    queue_date: date
    queue_number: int
    status: TokenStatus
    issued_at: datetime
    called_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    model_config = {"from_attributes": True}

    @computed_field  # type: ignore[prop-decorator]
    @property
    def token_code(self) -> str:
        """Display code shown on the queue board."""
        return f"TK-{TOKEN_CODE_OFFSET + self.queue_number}"


class QueueStats(BaseModel):
    """Derived queue counters for one department and day."""

    department_id: str
    date: date
    waiting_count: int = 0
    in_progress_count: int = 0
    completed_count: int = 0
    cancelled_count: int = 0
    average_wait_minutes: float | None = None
