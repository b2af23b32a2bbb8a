"""Invoice endpoints."""

from uuid import UUID

from fastapi import APIRouter, status

from visitflow.core.exceptions import ForbiddenException
from visitflow.core.security import Identity
from visitflow.dependencies import CurrentIdentity, CurrentStaff, VisitEngine
from visitflow.schemas.invoices import InvoiceCreate, InvoiceResponse
from visitflow.schemas.payments import PaymentSession

router = APIRouter()


def _check_access(invoice: InvoiceResponse, identity: Identity) -> None:
    if not identity.is_staff and invoice.patient_id != identity.subject_id:
        raise ForbiddenException("Access denied to this invoice")


@router.post(
    "",
    response_model=InvoiceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open an invoice for a finished visit",
)
async def open_invoice(
    data: InvoiceCreate,
    current_staff: CurrentStaff,
    engine: VisitEngine,
) -> InvoiceResponse:
    return await engine.open_invoice(data)


@router.get(
    "/{invoice_id}",
    response_model=InvoiceResponse,
    status_code=status.HTTP_200_OK,
    summary="Get invoice by ID",
)
async def get_invoice(
    invoice_id: UUID,
    current_identity: CurrentIdentity,
    engine: VisitEngine,
) -> InvoiceResponse:
    invoice = await engine.get_invoice(invoice_id)
    _check_access(invoice, current_identity)
    return invoice


@router.post(
    "/{invoice_id}/payment",
    response_model=PaymentSession,
    status_code=status.HTTP_200_OK,
    summary="Start or resume invoice payment",
)
async def initiate_invoice_payment(
    invoice_id: UUID,
    current_identity: CurrentIdentity,
    engine: VisitEngine,
) -> PaymentSession:
    invoice = await engine.get_invoice(invoice_id)
    _check_access(invoice, current_identity)
    return await engine.initiate_invoice_payment(invoice_id)
