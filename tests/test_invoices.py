"""Tests for invoices as a payable subject."""

import json
from decimal import Decimal
from uuid import uuid4

import pytest
from pydantic import ValidationError

from visitflow.core.exceptions import InvalidState, NotFound, ValidationException
from visitflow.schemas.invoices import InvoiceCreate, InvoiceStatus
from visitflow.schemas.payments import PaymentStatus, PaymentSubjectType


async def completed_token(engine, patient_id="patient-1"):
    token = await engine.generate_token(patient_id, "cardiology")
    await engine.advance_token(token.id, "in_progress")
    return await engine.advance_token(token.id, "completed")


def test_invoice_requires_exactly_one_visit():
    with pytest.raises(ValidationError):
        InvoiceCreate(patient_id="patient-1", amount=Decimal("100"))

    with pytest.raises(ValidationError):
        InvoiceCreate(
            patient_id="patient-1",
            amount=Decimal("100"),
            token_id=uuid4(),
            appointment_id=uuid4(),
        )


@pytest.mark.asyncio
async def test_open_invoice_numbers_sequentially(visit_engine):
    first_token = await completed_token(visit_engine)
    second_token = await completed_token(visit_engine, "patient-2")

    first = await visit_engine.open_invoice(
        InvoiceCreate(patient_id="patient-1", amount=Decimal("350.00"), token_id=first_token.id)
    )
    second = await visit_engine.open_invoice(
        InvoiceCreate(patient_id="patient-2", amount=Decimal("200.00"), token_id=second_token.id)
    )

    assert first.invoice_number == "INV-2025-001"
    assert second.invoice_number == "INV-2025-002"
    assert first.status == InvoiceStatus.UNPAID


@pytest.mark.asyncio
async def test_open_invoice_requires_finished_visit(visit_engine):
    token = await visit_engine.generate_token("patient-1", "cardiology")

    with pytest.raises(InvalidState):
        await visit_engine.open_invoice(
            InvoiceCreate(patient_id="patient-1", amount=Decimal("100"), token_id=token.id)
        )

    with pytest.raises(NotFound):
        await visit_engine.open_invoice(
            InvoiceCreate(patient_id="patient-1", amount=Decimal("100"), token_id=uuid4())
        )


@pytest.mark.asyncio
async def test_open_invoice_checks_patient(visit_engine):
    token = await completed_token(visit_engine)

    with pytest.raises(ValidationException):
        await visit_engine.open_invoice(
            InvoiceCreate(patient_id="patient-2", amount=Decimal("100"), token_id=token.id)
        )


@pytest.mark.asyncio
async def test_invoice_for_unconfirmed_appointment_rejected(visit_engine, tomorrow):
    appointment = await visit_engine.book_appointment("patient-1", "D101", tomorrow, "10:00")

    with pytest.raises(InvalidState):
        await visit_engine.open_invoice(
            InvoiceCreate(
                patient_id="patient-1",
                amount=Decimal("100"),
                appointment_id=appointment.id,
            )
        )


@pytest.mark.asyncio
async def test_invoice_payment_marks_invoice_paid(visit_engine, gateway, redis_mock):
    token = await completed_token(visit_engine)
    invoice = await visit_engine.open_invoice(
        InvoiceCreate(patient_id="patient-1", amount=Decimal("350.00"), token_id=token.id)
    )

    session = await visit_engine.initiate_invoice_payment(invoice.id)
    assert session.subject_type == PaymentSubjectType.INVOICE
    assert session.amount == Decimal("350.00")
    assert (await visit_engine.initiate_invoice_payment(invoice.id)).payment_id == session.payment_id

    result = gateway.complete(session.payload["order_ref"])
    confirmation = await visit_engine.confirm_payment(session.payment_id, result, "patient-1")

    assert confirmation.status == PaymentStatus.SUCCESS
    assert confirmation.subject_status == InvoiceStatus.PAID.value

    paid = await visit_engine.get_invoice(invoice.id)
    assert paid.status == InvoiceStatus.PAID
    assert paid.payment_id == session.payment_id
    assert paid.paid_at is not None

    messages = [json.loads(call.args[1]) for call in redis_mock.publish.call_args_list]
    assert any(
        m["event"] == "InvoicePaid" and m["data"]["invoice_number"] == invoice.invoice_number
        for m in messages
    )

    with pytest.raises(InvalidState):
        await visit_engine.initiate_invoice_payment(invoice.id)


@pytest.mark.asyncio
async def test_unknown_invoice(visit_engine):
    with pytest.raises(NotFound):
        await visit_engine.get_invoice(uuid4())
    with pytest.raises(NotFound):
        await visit_engine.initiate_invoice_payment(uuid4())
