"""Payment endpoints."""

from uuid import UUID

from fastapi import APIRouter, status

from visitflow.dependencies import CurrentIdentity, VisitEngine
from visitflow.schemas.payments import (
    PaymentCallbackRequest,
    PaymentConfirmation,
    PaymentConfirmRequest,
    PaymentSession,
)

router = APIRouter()


@router.post(
    "/callback",
    response_model=PaymentConfirmation,
    status_code=status.HTTP_200_OK,
    summary="Gateway server-to-server callback",
)
async def payment_callback(
    data: PaymentCallbackRequest,
    engine: VisitEngine,
) -> PaymentConfirmation:
    """
    Apply a result pushed by the gateway.

    Unauthenticated: the result itself must verify against the payment, and
    confirmation is idempotent, so a callback racing the client's own
    confirmation is harmless.
    """
    return await engine.confirm_payment(data.payment_id, data.gateway_result)


@router.get(
    "/{payment_id}",
    response_model=PaymentSession,
    status_code=status.HTTP_200_OK,
    summary="Recover a payment session",
)
async def get_payment_session(
    payment_id: UUID,
    current_identity: CurrentIdentity,
    engine: VisitEngine,
) -> PaymentSession:
    patient_id = None if current_identity.is_staff else current_identity.subject_id
    return await engine.get_payment_session(payment_id, patient_id)


@router.post(
    "/{payment_id}/confirm",
    response_model=PaymentConfirmation,
    status_code=status.HTTP_200_OK,
    summary="Confirm a payment with the gateway result",
)
async def confirm_payment(
    payment_id: UUID,
    data: PaymentConfirmRequest,
    current_identity: CurrentIdentity,
    engine: VisitEngine,
) -> PaymentConfirmation:
    """
    Apply the result the client got back from checkout.

    Only the returned confirmation is authoritative; clients should not
    show a booking as confirmed before it arrives.
    """
    patient_id = None if current_identity.is_staff else current_identity.subject_id
    return await engine.confirm_payment(payment_id, data.gateway_result, patient_id)
