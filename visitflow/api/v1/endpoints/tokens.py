"""Walk-in token endpoints for front-desk and clinical staff."""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Query, status

from visitflow.core.exceptions import ForbiddenException
from visitflow.dependencies import CurrentStaff, VisitEngine
from visitflow.schemas.tokens import (
    QueueStats,
    TokenCreate,
    TokenResponse,
    TokenStatus,
    TokenStatusUpdate,
)

router = APIRouter()


@router.post(
    "",
    response_model=TokenResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a walk-in",
)
async def generate_token(
    data: TokenCreate,
    current_staff: CurrentStaff,
    engine: VisitEngine,
) -> TokenResponse:
    return await engine.generate_token(data.patient_id, data.department_id, data.doctor_id)


@router.get(
    "",
    response_model=list[TokenResponse],
    status_code=status.HTTP_200_OK,
    summary="List a department's queue",
)
async def list_tokens(
    current_staff: CurrentStaff,
    engine: VisitEngine,
    department_id: str = Query(..., min_length=1),
    queue_date: date | None = Query(None, alias="date"),
    status_filter: TokenStatus | None = Query(None, alias="status"),
) -> list[TokenResponse]:
    return await engine.list_tokens(department_id, queue_date, status_filter)


@router.get(
    "/stats",
    response_model=QueueStats,
    status_code=status.HTTP_200_OK,
    summary="Queue counters",
)
async def queue_stats(
    current_staff: CurrentStaff,
    engine: VisitEngine,
    department_id: str = Query(..., min_length=1),
    queue_date: date | None = Query(None, alias="date"),
) -> QueueStats:
    """Counts per status and the average wait; may be a few seconds stale."""
    return await engine.queue_stats(department_id, queue_date)


@router.get(
    "/{token_id}",
    response_model=TokenResponse,
    status_code=status.HTTP_200_OK,
    summary="Get token by ID",
)
async def get_token(
    token_id: UUID,
    current_staff: CurrentStaff,
    engine: VisitEngine,
) -> TokenResponse:
    return await engine.get_token(token_id)


@router.patch(
    "/{token_id}/status",
    response_model=TokenResponse,
    status_code=status.HTTP_200_OK,
    summary="Advance token status",
)
async def advance_token(
    token_id: UUID,
    data: TokenStatusUpdate,
    current_staff: CurrentStaff,
    engine: VisitEngine,
) -> TokenResponse:
    """
    Move a token along waiting, in_progress, completed.

    Unknown statuses are rejected with ``InvalidState``, illegal edges with
    ``InvalidTransition``.
    """
    return await engine.advance_token(token_id, data.status)


@router.post(
    "/{token_id}/cancel",
    response_model=TokenResponse,
    status_code=status.HTTP_200_OK,
    summary="Cancel a token",
)
async def cancel_token(
    token_id: UUID,
    current_staff: CurrentStaff,
    engine: VisitEngine,
) -> TokenResponse:
    return await engine.cancel_token(token_id)


@router.delete(
    "/{token_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove a token",
)
async def remove_token(
    token_id: UUID,
    current_staff: CurrentStaff,
    engine: VisitEngine,
    force: bool = Query(False, description="Remove a token that is still active (admin only)"),
) -> None:
    if force and not current_staff.is_admin:
        raise ForbiddenException("Only admins can remove active tokens")

    await engine.remove_token(token_id, administrative=force)
