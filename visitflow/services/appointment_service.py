"""Appointment service for the booking side of a visit."""

from collections.abc import Callable
from datetime import date, datetime, timedelta, tzinfo
from decimal import Decimal
from uuid import UUID, uuid4

import structlog
from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.engine import Row
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from visitflow.core.clock import Clock, as_utc
from visitflow.core.exceptions import (
    ForbiddenException,
    InvalidState,
    NotFound,
    SlotUnavailable,
    ValidationException,
)
from visitflow.core.locks import KeyedLock, slot_key, subject_key
from visitflow.models.appointments import appointments
from visitflow.schemas.appointments import (
    AppointmentFilters,
    AppointmentListResponse,
    AppointmentResponse,
    AppointmentStatus,
    SlotAvailability,
)
from visitflow.schemas.payments import PaymentSubjectType
from visitflow.services.notification_service import DomainEvent, NotificationEmitter
from visitflow.services.payment_service import Settlement
from visitflow.services.slot_ledger import SlotLedger

logger = structlog.get_logger(__name__)

HOLD_EXPIRED = "hold_expired"


class AppointmentService:
    """
    Service for managing appointments.

    Every status change of an appointment happens under its payment-subject
    lock, so booking, payment confirmation, cancellation and the expiry sweep
    never interleave on the same appointment.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: SlotLedger,
        locks: KeyedLock,
        clock: Clock,
        emitter: NotificationEmitter,
        clinic_tz: tzinfo,
        hold_window: timedelta,
        fee_for: Callable[[str], Decimal],
    ):
        """Initialize service with its collaborators."""
        self.session_factory = session_factory
        self.ledger = ledger
        self.locks = locks
        self.clock = clock
        self.emitter = emitter
        self.clinic_tz = clinic_tz
        self.hold_window = hold_window
        self.fee_for = fee_for

    @staticmethod
    def _lock_key(appointment_id: UUID) -> tuple:
        return subject_key(PaymentSubjectType.APPOINTMENT.value, appointment_id)

    @staticmethod
    async def _get_row(db: AsyncSession, appointment_id: UUID) -> Row:
        result = await db.execute(select(appointments).where(appointments.c.id == appointment_id))
        row = result.fetchone()
        if row is None:
            raise NotFound("Appointment not found")
        return row

    @staticmethod
    def _check_owner(row: Row, patient_id: str | None) -> None:
        if patient_id is not None and row.patient_id != patient_id:
            raise ForbiddenException("Access denied to this appointment")

    @staticmethod
    def _to_response(row: Row) -> AppointmentResponse:
        return AppointmentResponse.model_validate(dict(row._mapping))

    def _hold_elapsed(self, row: Row, now: datetime) -> bool:
        return as_utc(row.hold_expires_at) <= now

    def _event_payload(self, row: Row, **extra: object) -> dict[str, object]:
        return {
            "appointment_id": str(row.id),
            "patient_id": row.patient_id,
            "doctor_id": row.doctor_id,
            "date": row.appointment_date.isoformat(),
            "time_slot": row.time_slot,
            **extra,
        }

    async def book_appointment(
        self,
        patient_id: str,
        doctor_id: str,
        appointment_date: date,
        time_slot: str,
    ) -> AppointmentResponse:
        """
        Hold a slot for a patient as a pending appointment.

        Args:
            patient_id: Booking patient
            doctor_id: Doctor whose slot is requested
            appointment_date: Calendar day in the clinic timezone
            time_slot: Slot label, ``HH:MM`` or ``hh:mm AM``

        Returns:
            Pending appointment with its hold deadline and fee

        Raises:
            ValidationException: If the slot is malformed, off-grid or in the past
            SlotUnavailable: If another appointment holds the slot
        """
        label = self.ledger.grid.normalize(time_slot)
        now = self.clock.now()

        if appointment_date < self.clock.today(self.clinic_tz):
            raise ValidationException("Cannot book an appointment in the past")
        if self.ledger.grid.starts_at(appointment_date, label, self.clinic_tz) <= now:
            raise ValidationException(f"Time slot {label} has already started")

        appointment_id = uuid4()

        async with self.locks.hold(slot_key(doctor_id, appointment_date, label)):
            async with self.session_factory() as db:
                await self.ledger.try_reserve(db, doctor_id, appointment_date, label, appointment_id)

                try:
                    await db.execute(
                        insert(appointments).values(
                            id=appointment_id,
                            patient_id=patient_id,
                            doctor_id=doctor_id,
                            appointment_date=appointment_date,
                            time_slot=label,
                            status=AppointmentStatus.PENDING.value,
                            fee=self.fee_for(doctor_id),
                            hold_expires_at=now + self.hold_window,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    raise SlotUnavailable(
                        f"Slot {label} on {appointment_date} is already booked"
                    ) from None

                row = await self._get_row(db, appointment_id)

        self.ledger.invalidate(doctor_id, appointment_date)
        logger.info(
            "appointment_booked",
            appointment_id=str(appointment_id),
            patient_id=patient_id,
            doctor_id=doctor_id,
            date=appointment_date.isoformat(),
            time_slot=label,
        )
        return self._to_response(row)

    async def get_appointment(
        self,
        appointment_id: UUID,
        patient_id: str | None = None,
    ) -> AppointmentResponse:
        """
        Get appointment by ID.

        Raises:
            NotFound: If appointment not found
            ForbiddenException: If a patient asks for someone else's appointment
        """
        async with self.session_factory() as db:
            row = await self._get_row(db, appointment_id)

        self._check_owner(row, patient_id)
        return self._to_response(row)

    async def list_appointments(
        self,
        patient_id: str,
        filters: AppointmentFilters,
    ) -> AppointmentListResponse:
        """List a patient's appointments with filtering and pagination."""
        conditions = [appointments.c.patient_id == patient_id]

        if filters.status:
            conditions.append(appointments.c.status == filters.status.value)
        if filters.doctor_id:
            conditions.append(appointments.c.doctor_id == filters.doctor_id)
        if filters.from_date:
            conditions.append(appointments.c.appointment_date >= filters.from_date)
        if filters.to_date:
            conditions.append(appointments.c.appointment_date <= filters.to_date)

        async with self.session_factory() as db:
            count_result = await db.execute(
                select(func.count()).select_from(appointments).where(and_(*conditions))
            )
            total = count_result.scalar() or 0

            offset = (filters.page - 1) * filters.page_size
            result = await db.execute(
                select(appointments)
                .where(and_(*conditions))
                .order_by(appointments.c.appointment_date.desc(), appointments.c.time_slot.desc())
                .limit(filters.page_size)
                .offset(offset)
            )
            rows = result.fetchall()

        return AppointmentListResponse(
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            items=[self._to_response(row) for row in rows],
        )

    async def list_available_slots(self, doctor_id: str, slot_date: date) -> list[SlotAvailability]:
        """Day grid for a doctor; best-effort, booking is the authority."""
        async with self.session_factory() as db:
            return await self.ledger.list_available(db, doctor_id, slot_date)

    async def _cancel(self, db: AsyncSession, row: Row, reason: str, now: datetime) -> bool:
        """Cancel a pending appointment and free its slot inside the caller's transaction."""
        result = await db.execute(
            update(appointments)
            .where(
                and_(
                    appointments.c.id == row.id,
                    appointments.c.status == AppointmentStatus.PENDING.value,
                )
            )
            .values(
                status=AppointmentStatus.CANCELLED.value,
                cancellation_reason=reason,
                cancelled_at=now,
                updated_at=now,
            )
        )
        if not result.rowcount:
            return False

        await self.ledger.release(db, row.id)
        return True

    async def cancel_appointment(
        self,
        appointment_id: UUID,
        patient_id: str | None = None,
        reason: str = "cancelled_by_patient",
    ) -> AppointmentResponse:
        """
        Cancel a pending appointment and release its slot.

        Raises:
            NotFound: If appointment not found
            ForbiddenException: If a patient cancels someone else's appointment
            InvalidState: If the appointment is not pending
        """
        async with self.locks.hold(self._lock_key(appointment_id)):
            async with self.session_factory() as db:
                row = await self._get_row(db, appointment_id)
                self._check_owner(row, patient_id)

                if row.status != AppointmentStatus.PENDING.value:
                    raise InvalidState(
                        f"Only pending appointments can be cancelled (status: {row.status})"
                    )

                await self._cancel(db, row, reason, self.clock.now())
                await db.commit()
                row = await self._get_row(db, appointment_id)

        self.ledger.invalidate(row.doctor_id, row.appointment_date)
        logger.info("appointment_cancelled", appointment_id=str(row.id), reason=reason)
        self.emitter.emit(DomainEvent.APPOINTMENT_CANCELLED, self._event_payload(row, reason=reason))
        return self._to_response(row)

    async def expire_stale_holds(self) -> int:
        """
        Cancel pending appointments whose hold window has elapsed.

        Returns:
            Number of appointments cancelled
        """
        now = self.clock.now()
        async with self.session_factory() as db:
            result = await db.execute(
                select(appointments.c.id).where(
                    and_(
                        appointments.c.status == AppointmentStatus.PENDING.value,
                        appointments.c.hold_expires_at <= now,
                    )
                )
            )
            candidates = [row.id for row in result]

        expired = 0
        for appointment_id in candidates:
            async with self.locks.hold(self._lock_key(appointment_id)):
                async with self.session_factory() as db:
                    row = await self._get_row(db, appointment_id)
                    # Re-check under the lock, a confirmation may have won
                    if row.status != AppointmentStatus.PENDING.value or not self._hold_elapsed(row, now):
                        continue

                    if not await self._cancel(db, row, HOLD_EXPIRED, now):
                        continue
                    await db.commit()

            expired += 1
            self._log_hold_expired(row)
            self.emitter.emit(
                DomainEvent.APPOINTMENT_CANCELLED,
                self._event_payload(row, reason=HOLD_EXPIRED),
            )

        return expired

    def _log_hold_expired(self, row: Row) -> None:
        self.ledger.invalidate(row.doctor_id, row.appointment_date)
        logger.info(
            "appointment_hold_expired",
            appointment_id=str(row.id),
            doctor_id=row.doctor_id,
            date=row.appointment_date.isoformat(),
            time_slot=row.time_slot,
            hold_expires_at=as_utc(row.hold_expires_at).isoformat(),
        )

    # Payment subject hooks

    async def check_payable(self, db: AsyncSession, subject_id: UUID) -> Decimal:
        row = await self._get_row(db, subject_id)
        if row.status != AppointmentStatus.PENDING.value:
            raise InvalidState(f"Appointment is not awaiting payment (status: {row.status})")
        if self._hold_elapsed(row, self.clock.now()):
            raise InvalidState("Appointment hold has expired")
        return row.fee

    async def attach(self, db: AsyncSession, subject_id: UUID, payment_id: UUID) -> None:
        await db.execute(
            update(appointments)
            .where(appointments.c.id == subject_id)
            .values(payment_id=payment_id, updated_at=self.clock.now())
        )

    async def settle(
        self, db: AsyncSession, subject_id: UUID, payment_id: UUID, now: datetime
    ) -> Settlement:
        """Confirm the appointment, or report why the payment cannot be applied."""
        row = await self._get_row(db, subject_id)

        if row.status != AppointmentStatus.PENDING.value:
            return Settlement(accepted=False, subject_status=row.status)

        if self._hold_elapsed(row, now):
            await self._cancel(db, row, HOLD_EXPIRED, now)
            return Settlement(
                accepted=False,
                subject_status=AppointmentStatus.CANCELLED.value,
                after_commit=[lambda: self._log_hold_expired(row)],
                events=[
                    (
                        DomainEvent.APPOINTMENT_CANCELLED,
                        self._event_payload(row, reason=HOLD_EXPIRED),
                    )
                ],
            )

        await db.execute(
            update(appointments)
            .where(appointments.c.id == subject_id)
            .values(
                status=AppointmentStatus.CONFIRMED.value,
                payment_id=payment_id,
                confirmed_at=now,
                updated_at=now,
            )
        )
        logger.info("appointment_confirmed", appointment_id=str(subject_id), payment_id=str(payment_id))

        return Settlement(
            accepted=True,
            subject_status=AppointmentStatus.CONFIRMED.value,
            events=[
                (
                    DomainEvent.APPOINTMENT_CONFIRMED,
                    self._event_payload(row, payment_id=str(payment_id)),
                )
            ],
        )

    async def status_of(self, db: AsyncSession, subject_id: UUID) -> str | None:
        result = await db.execute(
            select(appointments.c.status).where(appointments.c.id == subject_id)
        )
        return result.scalar_one_or_none()

    async def owner_of(self, db: AsyncSession, subject_id: UUID) -> str | None:
        result = await db.execute(
            select(appointments.c.patient_id).where(appointments.c.id == subject_id)
        )
        return result.scalar_one_or_none()
