"""Invoices: payable records for completed visits."""

from datetime import datetime, tzinfo
from decimal import Decimal
from uuid import UUID, uuid4

import structlog
from sqlalchemy import insert, select, update
from sqlalchemy.engine import Row
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from visitflow.core.clock import Clock
from visitflow.core.exceptions import InvalidState, NotFound, ValidationException
from visitflow.core.locks import KeyedLock, record_key
from visitflow.models.appointments import appointments
from visitflow.models.invoices import invoices
from visitflow.models.tokens import tokens
from visitflow.schemas.appointments import AppointmentStatus
from visitflow.schemas.invoices import InvoiceCreate, InvoiceResponse, InvoiceStatus
from visitflow.schemas.tokens import TokenStatus
from visitflow.services.notification_service import DomainEvent, NotificationEmitter
from visitflow.services.payment_service import Settlement
from visitflow.services.sequence import next_value

logger = structlog.get_logger(__name__)


class InvoiceService:
    """Opens invoices and settles them when their payment succeeds."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: KeyedLock,
        clock: Clock,
        emitter: NotificationEmitter,
        clinic_tz: tzinfo,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.clock = clock
        self.emitter = emitter
        self.clinic_tz = clinic_tz

    @staticmethod
    async def _get_row(db: AsyncSession, invoice_id: UUID) -> Row:
        result = await db.execute(select(invoices).where(invoices.c.id == invoice_id))
        row = result.fetchone()
        if row is None:
            raise NotFound("Invoice not found")
        return row

    @staticmethod
    def _to_response(row: Row) -> InvoiceResponse:
        return InvoiceResponse.model_validate(dict(row._mapping))

    async def _check_visit(self, db: AsyncSession, data: InvoiceCreate) -> None:
        """The billed visit must exist, belong to the patient and be finished."""
        if data.token_id is not None:
            result = await db.execute(
                select(tokens.c.patient_id, tokens.c.status).where(tokens.c.id == data.token_id)
            )
            visit = result.fetchone()
            if visit is None:
                raise NotFound("Token not found")
            if visit.status != TokenStatus.COMPLETED.value:
                raise InvalidState(f"Only completed tokens can be invoiced (status: {visit.status})")
        else:
            result = await db.execute(
                select(appointments.c.patient_id, appointments.c.status).where(
                    appointments.c.id == data.appointment_id
                )
            )
            visit = result.fetchone()
            if visit is None:
                raise NotFound("Appointment not found")
            if visit.status != AppointmentStatus.CONFIRMED.value:
                raise InvalidState(
                    f"Only confirmed appointments can be invoiced (status: {visit.status})"
                )

        if visit.patient_id != data.patient_id:
            raise ValidationException("Invoice patient does not match the visit")

    async def open_invoice(self, data: InvoiceCreate) -> InvoiceResponse:
        """
        Open an unpaid invoice numbered ``INV-<year>-<nnn>``.

        Raises:
            NotFound: If the referenced token or appointment does not exist
            InvalidState: If the visit is not finished
            ValidationException: If the visit belongs to another patient
        """
        now = self.clock.now()
        year = now.astimezone(self.clinic_tz).year
        invoice_id = uuid4()

        async with self.locks.hold(record_key("invoice-sequence", year)):
            async with self.session_factory() as db:
                await self._check_visit(db, data)

                number = await next_value(db, "invoice", str(year))
                await db.execute(
                    insert(invoices).values(
                        id=invoice_id,
                        invoice_number=f"INV-{year}-{number:03d}",
                        patient_id=data.patient_id,
                        token_id=data.token_id,
                        appointment_id=data.appointment_id,
                        amount=data.amount,
                        status=InvoiceStatus.UNPAID.value,
                        created_at=now,
                    )
                )
                await db.commit()
                row = await self._get_row(db, invoice_id)

        logger.info(
            "invoice_opened",
            invoice_id=str(invoice_id),
            invoice_number=row.invoice_number,
            amount=str(row.amount),
        )
        return self._to_response(row)

    async def get_invoice(self, invoice_id: UUID) -> InvoiceResponse:
        async with self.session_factory() as db:
            return self._to_response(await self._get_row(db, invoice_id))

    # Payment subject hooks

    async def check_payable(self, db: AsyncSession, subject_id: UUID) -> Decimal:
        row = await self._get_row(db, subject_id)
        if row.status != InvoiceStatus.UNPAID.value:
            raise InvalidState(f"Invoice is already {row.status}")
        return row.amount

    async def attach(self, db: AsyncSession, subject_id: UUID, payment_id: UUID) -> None:
        await db.execute(
            update(invoices).where(invoices.c.id == subject_id).values(payment_id=payment_id)
        )

    async def settle(
        self, db: AsyncSession, subject_id: UUID, payment_id: UUID, now: datetime
    ) -> Settlement:
        row = await self._get_row(db, subject_id)
        if row.status != InvoiceStatus.UNPAID.value:
            return Settlement(accepted=False, subject_status=row.status)

        await db.execute(
            update(invoices)
            .where(invoices.c.id == subject_id)
            .values(status=InvoiceStatus.PAID.value, payment_id=payment_id, paid_at=now)
        )
        logger.info("invoice_paid", invoice_id=str(subject_id), payment_id=str(payment_id))

        return Settlement(
            accepted=True,
            subject_status=InvoiceStatus.PAID.value,
            events=[
                (
                    DomainEvent.INVOICE_PAID,
                    {
                        "invoice_id": str(subject_id),
                        "invoice_number": row.invoice_number,
                        "patient_id": row.patient_id,
                        "amount": str(row.amount),
                        "payment_id": str(payment_id),
                    },
                )
            ],
        )

    async def status_of(self, db: AsyncSession, subject_id: UUID) -> str | None:
        result = await db.execute(select(invoices.c.status).where(invoices.c.id == subject_id))
        return result.scalar_one_or_none()

    async def owner_of(self, db: AsyncSession, subject_id: UUID) -> str | None:
        result = await db.execute(select(invoices.c.patient_id).where(invoices.c.id == subject_id))
        return result.scalar_one_or_none()
