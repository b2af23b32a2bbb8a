"""Visit lifecycle engine: the single entry point for visit state changes."""

from datetime import date, timedelta
from typing import Any
from uuid import UUID
from zoneinfo import ZoneInfo

import redis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from visitflow.config import Settings
from visitflow.core.clock import Clock, SystemClock
from visitflow.core.exceptions import ForbiddenException, InvalidState
from visitflow.core.locks import KeyedLock
from visitflow.core.redis_client import CacheManager
from visitflow.schemas.appointments import (
    AppointmentFilters,
    AppointmentListResponse,
    AppointmentResponse,
    AppointmentStatus,
    SlotAvailability,
)
from visitflow.schemas.invoices import InvoiceCreate, InvoiceResponse, InvoiceStatus
from visitflow.schemas.payments import PaymentConfirmation, PaymentSession, PaymentSubjectType
from visitflow.schemas.tokens import QueueStats, TokenResponse, TokenStatus
from visitflow.services.appointment_service import AppointmentService
from visitflow.services.invoice_service import InvoiceService
from visitflow.services.notification_service import NotificationEmitter
from visitflow.services.payment_gateway import PaymentGateway, build_payment_gateway
from visitflow.services.payment_service import PaymentSessionManager
from visitflow.services.slot_ledger import SlotGrid, SlotLedger
from visitflow.services.token_service import TokenService

logger = structlog.get_logger(__name__)


class VisitLifecycleEngine:
    """
    Orchestrates appointments, payments, walk-in tokens and invoices.

    Owns every write to the visit tables. All collaborators share one
    ``KeyedLock`` and one ``Clock`` so their critical sections and time
    checks agree.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        emitter: NotificationEmitter,
        settings: Settings,
        clock: Clock | None = None,
        cache: CacheManager | None = None,
        locks: KeyedLock | None = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.emitter = emitter
        self.settings = settings
        self.clock = clock or SystemClock()
        self.cache = cache
        self.locks = locks or KeyedLock()

        clinic_tz = ZoneInfo(settings.clinic_timezone)
        grid = SlotGrid(
            opens_at=settings.clinic_open,
            closes_at=settings.clinic_close,
            slot_minutes=settings.slot_minutes,
            break_start=settings.break_start,
            break_end=settings.break_end,
        )
        self.ledger = SlotLedger(
            grid,
            self.clock,
            clinic_tz,
            cache=cache,
            cache_ttl=settings.availability_cache_ttl_seconds,
        )

        self.payments = PaymentSessionManager(
            session_factory,
            gateway,
            self.locks,
            self.clock,
            emitter,
            currency=settings.payment_currency,
            gateway_timeout=settings.payment_gateway_timeout_seconds,
            payment_timeout=timedelta(minutes=settings.payment_timeout_minutes),
            reconcile_max_attempts=settings.reconcile_max_attempts,
        )
        self.appointments = AppointmentService(
            session_factory,
            self.ledger,
            self.locks,
            self.clock,
            emitter,
            clinic_tz=clinic_tz,
            hold_window=timedelta(minutes=settings.appointment_hold_minutes),
            fee_for=settings.consultation_fee_for,
        )
        self.tokens = TokenService(
            session_factory,
            self.locks,
            self.clock,
            emitter,
            clinic_tz=clinic_tz,
            cache=cache,
            stats_ttl=settings.queue_stats_cache_ttl_seconds,
        )
        self.invoices = InvoiceService(session_factory, self.locks, self.clock, emitter, clinic_tz)

        self.payments.register_subject(PaymentSubjectType.APPOINTMENT, self.appointments)
        self.payments.register_subject(PaymentSubjectType.INVOICE, self.invoices)

    # Appointment path

    async def list_available_slots(self, doctor_id: str, slot_date: date) -> list[SlotAvailability]:
        return await self.appointments.list_available_slots(doctor_id, slot_date)

    async def book_appointment(
        self,
        patient_id: str,
        doctor_id: str,
        appointment_date: date,
        time_slot: str,
    ) -> AppointmentResponse:
        return await self.appointments.book_appointment(
            patient_id, doctor_id, appointment_date, time_slot
        )

    async def get_appointment(
        self, appointment_id: UUID, patient_id: str | None = None
    ) -> AppointmentResponse:
        return await self.appointments.get_appointment(appointment_id, patient_id)

    async def list_appointments(
        self, patient_id: str, filters: AppointmentFilters
    ) -> AppointmentListResponse:
        return await self.appointments.list_appointments(patient_id, filters)

    async def initiate_payment(
        self,
        appointment_id: UUID,
        patient_id: str | None = None,
    ) -> PaymentSession:
        """
        Start or resume payment for a pending appointment.

        Calling again while a payment is initiated returns the same session.

        Raises:
            NotFound: If appointment not found
            ForbiddenException: If the appointment belongs to another patient
            InvalidState: If the appointment is not pending or its hold expired
            GatewayUnavailable: If the gateway order could not be opened
            GatewayRejected: If the gateway refused to open the order
        """
        appointment = await self.appointments.get_appointment(appointment_id, patient_id)
        if appointment.status != AppointmentStatus.PENDING:
            raise InvalidState(
                f"Appointment is not awaiting payment (status: {appointment.status.value})"
            )

        return await self.payments.initiate(PaymentSubjectType.APPOINTMENT, appointment_id)

    async def _check_payment_owner(self, payment_id: UUID, patient_id: str | None) -> None:
        if patient_id is None:
            return
        if await self.payments.owner_of(payment_id) != patient_id:
            raise ForbiddenException("Access denied to this payment")

    async def get_payment_session(
        self,
        payment_id: UUID,
        patient_id: str | None = None,
    ) -> PaymentSession:
        """Recover a payment session by id after the client lost it."""
        await self._check_payment_owner(payment_id, patient_id)
        return await self.payments.get_session(payment_id)

    async def confirm_payment(
        self,
        payment_id: UUID,
        gateway_result: dict[str, Any],
        patient_id: str | None = None,
    ) -> PaymentConfirmation:
        """
        Apply a gateway result. Safe to call any number of times.

        Raises:
            NotFound: If payment not found
            VerificationFailed: If the result cannot be attributed to the payment
            GatewayUnavailable: If verification needs the gateway and it is down
            InvalidState: If the payment succeeded for a subject no longer payable
        """
        await self._check_payment_owner(payment_id, patient_id)
        return await self.payments.confirm(payment_id, gateway_result)

    async def cancel_appointment(
        self,
        appointment_id: UUID,
        patient_id: str | None = None,
    ) -> AppointmentResponse:
        return await self.appointments.cancel_appointment(appointment_id, patient_id)

    # Token path

    async def generate_token(
        self,
        patient_id: str,
        department_id: str,
        doctor_id: str | None = None,
    ) -> TokenResponse:
        return await self.tokens.generate_token(patient_id, department_id, doctor_id)

    async def get_token(self, token_id: UUID) -> TokenResponse:
        return await self.tokens.get_token(token_id)

    async def advance_token(self, token_id: UUID, new_status: str | TokenStatus) -> TokenResponse:
        return await self.tokens.advance_token(token_id, new_status)

    async def cancel_token(self, token_id: UUID) -> TokenResponse:
        return await self.tokens.cancel_token(token_id)

    async def remove_token(self, token_id: UUID, administrative: bool = False) -> None:
        await self.tokens.remove_token(token_id, administrative=administrative)

    async def list_tokens(
        self,
        department_id: str,
        queue_date: date | None = None,
        status: TokenStatus | None = None,
    ) -> list[TokenResponse]:
        return await self.tokens.list_tokens(department_id, queue_date, status)

    async def queue_stats(self, department_id: str, queue_date: date | None = None) -> QueueStats:
        return await self.tokens.queue_stats(department_id, queue_date)

    # Invoices

    async def open_invoice(self, data: InvoiceCreate) -> InvoiceResponse:
        return await self.invoices.open_invoice(data)

    async def get_invoice(self, invoice_id: UUID) -> InvoiceResponse:
        return await self.invoices.get_invoice(invoice_id)

    async def initiate_invoice_payment(self, invoice_id: UUID) -> PaymentSession:
        """Start or resume payment for an unpaid invoice."""
        invoice = await self.invoices.get_invoice(invoice_id)
        if invoice.status != InvoiceStatus.UNPAID:
            raise InvalidState(f"Invoice is already {invoice.status.value}")

        return await self.payments.initiate(PaymentSubjectType.INVOICE, invoice_id)

    # Background work

    async def expire_stale_holds(self) -> int:
        expired = await self.appointments.expire_stale_holds()
        if expired:
            logger.info("stale_holds_expired", count=expired)
        return expired

    async def reconcile_stale_payments(self) -> dict[str, int]:
        return await self.payments.reconcile_stale_payments()

    async def close(self) -> None:
        await self.gateway.close()


def build_visit_engine(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: redis.Redis | None = None,
    clock: Clock | None = None,
    gateway: PaymentGateway | None = None,
) -> VisitLifecycleEngine:
    """Wire an engine from configuration."""
    return VisitLifecycleEngine(
        session_factory=session_factory,
        gateway=gateway or build_payment_gateway(settings),
        emitter=NotificationEmitter(redis_client, settings.events_channel),
        settings=settings,
        clock=clock,
        cache=CacheManager(redis_client) if redis_client is not None else None,
    )
