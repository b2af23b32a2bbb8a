"""Slot availability ledger: exclusive holds on (doctor, day, slot)."""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from uuid import UUID, uuid4

import structlog
from sqlalchemy import and_, delete, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from visitflow.core.clock import Clock
from visitflow.core.exceptions import SlotUnavailable, ValidationException
from visitflow.core.redis_client import CacheManager, availability_cache_key
from visitflow.models.appointments import slot_reservations
from visitflow.schemas.appointments import SlotAvailability

logger = structlog.get_logger(__name__)

_LABEL_FORMATS = ("%H:%M", "%I:%M %p", "%I:%M%p")


def parse_clock_time(value: str) -> time:
    """Parse ``HH:MM`` or ``hh:mm AM`` into a time of day."""
    cleaned = value.strip().upper()
    for fmt in _LABEL_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).time()
        except ValueError:
            continue
    raise ValidationException(f"Invalid time slot format '{value}'")


@dataclass(frozen=True)
class Reservation:
    """Ledger entry proving an exclusive hold of a slot."""

    id: UUID
    doctor_id: str
    slot_date: date
    time_slot: str
    appointment_id: UUID


class SlotGrid:
    """Fixed-width bookable intervals of a clinic day."""

    def __init__(
        self,
        opens_at: str,
        closes_at: str,
        slot_minutes: int,
        break_start: str | None = None,
        break_end: str | None = None,
    ):
        self.opens_at = parse_clock_time(opens_at)
        self.closes_at = parse_clock_time(closes_at)
        self.slot_minutes = slot_minutes
        self.break_start = parse_clock_time(break_start) if break_start else None
        self.break_end = parse_clock_time(break_end) if break_end else None
        self._labels = self._build()

    def _build(self) -> tuple[str, ...]:
        anchor = date(2000, 1, 1)
        current = datetime.combine(anchor, self.opens_at)
        end = datetime.combine(anchor, self.closes_at)
        step = timedelta(minutes=self.slot_minutes)
        labels = []

        while current + step <= end:
            slot_time = current.time()
            in_break = (
                self.break_start is not None
                and self.break_end is not None
                and self.break_start <= slot_time < self.break_end
            )
            if not in_break:
                labels.append(slot_time.strftime("%H:%M"))
            current += step

        return tuple(labels)

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    def normalize(self, label: str) -> str:
        """
        Canonicalise a slot label and check it lies on the grid.

        Raises:
            ValidationException: If the label is malformed or off-grid
        """
        canonical = parse_clock_time(label).strftime("%H:%M")
        if canonical not in self._labels:
            raise ValidationException(f"Time slot '{label}' is not a bookable slot")
        return canonical

    def starts_at(self, slot_date: date, label: str, tz: tzinfo) -> datetime:
        """Aware start time of a slot in the clinic timezone."""
        return datetime.combine(slot_date, parse_clock_time(label), tzinfo=tz)


class SlotLedger:
    """Tracks which slots are held by pending or confirmed appointments."""

    def __init__(
        self,
        grid: SlotGrid,
        clock: Clock,
        clinic_tz: tzinfo,
        cache: CacheManager | None = None,
        cache_ttl: int = 5,
    ):
        self.grid = grid
        self.clock = clock
        self.clinic_tz = clinic_tz
        self.cache = cache
        self.cache_ttl = cache_ttl

    async def try_reserve(
        self,
        db: AsyncSession,
        doctor_id: str,
        slot_date: date,
        time_slot: str,
        appointment_id: UUID,
    ) -> Reservation:
        """
        Hold a slot for an appointment inside the caller's transaction.

        Must be the first write of the transaction: on a conflict the
        transaction is rolled back before raising.

        Raises:
            SlotUnavailable: If the slot is already held
        """
        held = await db.execute(
            select(slot_reservations.c.id).where(
                and_(
                    slot_reservations.c.doctor_id == doctor_id,
                    slot_reservations.c.slot_date == slot_date,
                    slot_reservations.c.time_slot == time_slot,
                )
            )
        )
        if held.first() is not None:
            raise SlotUnavailable(f"Slot {time_slot} on {slot_date} is already booked")

        reservation = Reservation(
            id=uuid4(),
            doctor_id=doctor_id,
            slot_date=slot_date,
            time_slot=time_slot,
            appointment_id=appointment_id,
        )

        try:
            await db.execute(
                insert(slot_reservations).values(
                    id=reservation.id,
                    doctor_id=doctor_id,
                    slot_date=slot_date,
                    time_slot=time_slot,
                    appointment_id=appointment_id,
                    created_at=self.clock.now(),
                )
            )
        except IntegrityError:
            # Another process won the race between our check and insert
            await db.rollback()
            raise SlotUnavailable(f"Slot {time_slot} on {slot_date} is already booked") from None

        return reservation

    async def release(self, db: AsyncSession, appointment_id: UUID) -> bool:
        """Free the slot held by an appointment. Returns False if nothing was held."""
        result = await db.execute(
            delete(slot_reservations).where(slot_reservations.c.appointment_id == appointment_id)
        )
        return bool(result.rowcount)

    async def list_available(
        self,
        db: AsyncSession,
        doctor_id: str,
        slot_date: date,
    ) -> list[SlotAvailability]:
        """
        Day grid with availability flags, ordered by time.

        Best-effort: may be served from cache. ``try_reserve`` is the
        authority.
        """
        cache_key = availability_cache_key(doctor_id, slot_date)
        if self.cache is not None:
            cached = self.cache.get_json(cache_key)
            if cached is not None:
                return [SlotAvailability.model_validate(item) for item in cached]

        result = await db.execute(
            select(slot_reservations.c.time_slot).where(
                and_(
                    slot_reservations.c.doctor_id == doctor_id,
                    slot_reservations.c.slot_date == slot_date,
                )
            )
        )
        held = {row.time_slot for row in result}
        now = self.clock.now()

        slots = [
            SlotAvailability(
                time_slot=label,
                available=label not in held
                and self.grid.starts_at(slot_date, label, self.clinic_tz) > now,
            )
            for label in self.grid.labels
        ]

        if self.cache is not None:
            self.cache.set_json(
                cache_key,
                [slot.model_dump() for slot in slots],
                ttl=self.cache_ttl,
            )

        return slots

    def invalidate(self, doctor_id: str, slot_date: date) -> None:
        """Drop the cached availability for a doctor's day."""
        if self.cache is not None:
            self.cache.delete(availability_cache_key(doctor_id, slot_date))
