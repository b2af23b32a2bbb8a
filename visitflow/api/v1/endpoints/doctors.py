"""Doctor schedule endpoints."""

from datetime import date

from fastapi import APIRouter, Query, status

from visitflow.dependencies import CurrentIdentity, VisitEngine
from visitflow.schemas.appointments import AvailabilityResponse

router = APIRouter()


@router.get(
    "/{doctor_id}/slots",
    response_model=AvailabilityResponse,
    status_code=status.HTTP_200_OK,
    summary="List a doctor's slots for a day",
)
async def list_doctor_slots(
    doctor_id: str,
    engine: VisitEngine,
    current_identity: CurrentIdentity,
    slot_date: date = Query(..., alias="date"),
) -> AvailabilityResponse:
    """
    Day grid with availability flags.

    The flags may lag a concurrent booking by a few seconds; booking itself
    is always checked against the ledger.
    """
    slots = await engine.list_available_slots(doctor_id, slot_date)
    return AvailabilityResponse(doctor_id=doctor_id, date=slot_date, slots=slots)
