"""Appointment endpoints."""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Query, status

from visitflow.core.security import Identity
from visitflow.dependencies import CurrentIdentity, CurrentPatient, VisitEngine
from visitflow.schemas.appointments import (
    AppointmentCreate,
    AppointmentFilters,
    AppointmentListResponse,
    AppointmentResponse,
    AppointmentStatus,
)
from visitflow.schemas.payments import PaymentSession

router = APIRouter()


def _owner_scope(identity: Identity) -> str | None:
    """Patients only see their own appointments; staff see all."""
    return None if identity.is_staff else identity.subject_id


@router.post(
    "",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Book a slot",
)
async def book_appointment(
    data: AppointmentCreate,
    current_patient: CurrentPatient,
    engine: VisitEngine,
) -> AppointmentResponse:
    """
    Hold a slot for the authenticated patient.

    The appointment stays pending until its payment is confirmed or its
    hold window elapses.
    """
    return await engine.book_appointment(
        current_patient.subject_id,
        data.doctor_id,
        data.appointment_date,
        data.time_slot,
    )


@router.get(
    "",
    response_model=AppointmentListResponse,
    status_code=status.HTTP_200_OK,
    summary="List appointments",
)
async def list_appointments(
    current_patient: CurrentPatient,
    engine: VisitEngine,
    status_filter: AppointmentStatus | None = Query(None, alias="status"),
    doctor_id: str | None = Query(None),
    from_date: date | None = Query(None),
    to_date: date | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
) -> AppointmentListResponse:
    filters = AppointmentFilters(
        status=status_filter,
        doctor_id=doctor_id,
        from_date=from_date,
        to_date=to_date,
        page=page,
        page_size=page_size,
    )
    return await engine.list_appointments(current_patient.subject_id, filters)


@router.get(
    "/{appointment_id}",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Get appointment by ID",
)
async def get_appointment(
    appointment_id: UUID,
    current_identity: CurrentIdentity,
    engine: VisitEngine,
) -> AppointmentResponse:
    """Review an appointment, e.g. on the confirmation screen."""
    return await engine.get_appointment(appointment_id, _owner_scope(current_identity))


@router.post(
    "/{appointment_id}/payment",
    response_model=PaymentSession,
    status_code=status.HTTP_200_OK,
    summary="Start or resume payment",
)
async def initiate_payment(
    appointment_id: UUID,
    current_patient: CurrentPatient,
    engine: VisitEngine,
) -> PaymentSession:
    """
    Start payment for a pending appointment.

    Repeating the call returns the same session, so a client that lost its
    checkout can simply ask again.
    """
    return await engine.initiate_payment(appointment_id, current_patient.subject_id)


@router.post(
    "/{appointment_id}/cancel",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Cancel a pending appointment",
)
async def cancel_appointment(
    appointment_id: UUID,
    current_identity: CurrentIdentity,
    engine: VisitEngine,
) -> AppointmentResponse:
    return await engine.cancel_appointment(appointment_id, _owner_scope(current_identity))
