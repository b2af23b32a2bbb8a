"""Walk-in token service: queue numbering and status progression."""

from datetime import date, tzinfo
from uuid import UUID, uuid4

import structlog
from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.engine import Row
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from visitflow.core.clock import Clock, as_utc
from visitflow.core.exceptions import InvalidState, InvalidTransition, NotFound
from visitflow.core.locks import KeyedLock, queue_key, record_key
from visitflow.core.redis_client import CacheManager, queue_stats_cache_key
from visitflow.models.tokens import tokens
from visitflow.schemas.common import parse_status
from visitflow.schemas.tokens import (
    TERMINAL_TOKEN_STATUSES,
    TOKEN_TRANSITIONS,
    QueueStats,
    TokenResponse,
    TokenStatus,
)
from visitflow.services.notification_service import DomainEvent, NotificationEmitter
from visitflow.services.sequence import next_value

logger = structlog.get_logger(__name__)

# Timestamp column stamped when a token enters a status
_STATUS_TIMESTAMPS = {
    TokenStatus.IN_PROGRESS: "called_at",
    TokenStatus.COMPLETED: "completed_at",
    TokenStatus.CANCELLED: "cancelled_at",
}


class TokenService:
    """Service for managing walk-in tokens."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: KeyedLock,
        clock: Clock,
        emitter: NotificationEmitter,
        clinic_tz: tzinfo,
        cache: CacheManager | None = None,
        stats_ttl: int = 5,
    ):
        """Initialize service with its collaborators."""
        self.session_factory = session_factory
        self.locks = locks
        self.clock = clock
        self.emitter = emitter
        self.clinic_tz = clinic_tz
        self.cache = cache
        self.stats_ttl = stats_ttl

    @staticmethod
    async def _get_row(db: AsyncSession, token_id: UUID) -> Row:
        result = await db.execute(select(tokens).where(tokens.c.id == token_id))
        row = result.fetchone()
        if row is None:
            raise NotFound("Token not found")
        return row

    @staticmethod
    def _to_response(row: Row) -> TokenResponse:
        return TokenResponse.model_validate(dict(row._mapping))

    def _invalidate_stats(self, department_id: str, queue_date: date) -> None:
        if self.cache is not None:
            self.cache.delete(queue_stats_cache_key(department_id, queue_date))

    async def generate_token(
        self,
        patient_id: str,
        department_id: str,
        doctor_id: str | None = None,
    ) -> TokenResponse:
        """
        Register a walk-in and give it the next queue number of the day.

        Numbers start at 1 for each (department, clinic day) and are never
        reused, even after a token is removed.
        """
        queue_date = self.clock.today(self.clinic_tz)
        token_id = uuid4()

        async with self.locks.hold(queue_key(department_id, queue_date)):
            async with self.session_factory() as db:
                queue_number = await next_value(
                    db, f"queue:{department_id}", queue_date.isoformat()
                )
                await db.execute(
                    insert(tokens).values(
                        id=token_id,
                        patient_id=patient_id,
                        department_id=department_id,
                        doctor_id=doctor_id,
                        queue_date=queue_date,
                        queue_number=queue_number,
                        status=TokenStatus.WAITING.value,
                        issued_at=self.clock.now(),
                    )
                )
                await db.commit()
                row = await self._get_row(db, token_id)

        self._invalidate_stats(department_id, queue_date)
        token = self._to_response(row)
        logger.info(
            "token_generated",
            token_id=str(token_id),
            department_id=department_id,
            queue_number=queue_number,
            token_code=token.token_code,
        )
        return token

    async def get_token(self, token_id: UUID) -> TokenResponse:
        async with self.session_factory() as db:
            return self._to_response(await self._get_row(db, token_id))

    async def advance_token(self, token_id: UUID, new_status: str | TokenStatus) -> TokenResponse:
        """
        Move a token along its state machine.

        Raises:
            InvalidState: If ``new_status`` is not a token status
            NotFound: If token not found
            InvalidTransition: If the edge is not allowed from the current status
        """
        target = parse_status(TokenStatus, new_status)

        async with self.locks.hold(record_key("token", token_id)):
            async with self.session_factory() as db:
                row = await self._get_row(db, token_id)
                current = TokenStatus(row.status)

                if target not in TOKEN_TRANSITIONS[current]:
                    raise InvalidTransition(
                        f"Cannot move token from {current.value} to {target.value}"
                    )

                values = {"status": target.value, _STATUS_TIMESTAMPS[target]: self.clock.now()}
                result = await db.execute(
                    update(tokens)
                    .where(and_(tokens.c.id == token_id, tokens.c.status == current.value))
                    .values(**values)
                )
                if not result.rowcount:
                    raise InvalidTransition(
                        f"Token left {current.value} before it could move to {target.value}"
                    )
                await db.commit()
                row = await self._get_row(db, token_id)

        self._invalidate_stats(row.department_id, row.queue_date)
        token = self._to_response(row)
        logger.info(
            "token_advanced",
            token_id=str(token_id),
            from_status=current.value,
            to_status=target.value,
        )
        self.emitter.emit(
            DomainEvent.TOKEN_ADVANCED,
            {
                "token_id": str(token_id),
                "token_code": token.token_code,
                "department_id": token.department_id,
                "from_status": current.value,
                "to_status": target.value,
            },
        )
        return token

    async def cancel_token(self, token_id: UUID) -> TokenResponse:
        """Cancel a waiting or in-progress token."""
        return await self.advance_token(token_id, TokenStatus.CANCELLED)

    async def remove_token(self, token_id: UUID, administrative: bool = False) -> None:
        """
        Hard-delete a token.

        Only completed or cancelled tokens may be removed unless the removal
        is administrative. The day's counter is left untouched.
        """
        async with self.locks.hold(record_key("token", token_id)):
            async with self.session_factory() as db:
                row = await self._get_row(db, token_id)
                if TokenStatus(row.status) not in TERMINAL_TOKEN_STATUSES and not administrative:
                    raise InvalidState(
                        f"Only completed or cancelled tokens can be removed (status: {row.status})"
                    )

                await db.execute(delete(tokens).where(tokens.c.id == token_id))
                await db.commit()

        self._invalidate_stats(row.department_id, row.queue_date)
        logger.info(
            "token_removed",
            token_id=str(token_id),
            status=row.status,
            administrative=administrative,
        )

    async def list_tokens(
        self,
        department_id: str,
        queue_date: date | None = None,
        status: TokenStatus | None = None,
    ) -> list[TokenResponse]:
        """List a department's tokens for a day in issuance order."""
        queue_date = queue_date or self.clock.today(self.clinic_tz)
        conditions = [tokens.c.department_id == department_id, tokens.c.queue_date == queue_date]
        if status:
            conditions.append(tokens.c.status == status.value)

        async with self.session_factory() as db:
            result = await db.execute(
                select(tokens).where(and_(*conditions)).order_by(tokens.c.queue_number)
            )
            return [self._to_response(row) for row in result.fetchall()]

    async def queue_stats(self, department_id: str, queue_date: date | None = None) -> QueueStats:
        """
        Queue counters for a department's day. Best-effort, may be cached.
        """
        queue_date = queue_date or self.clock.today(self.clinic_tz)
        cache_key = queue_stats_cache_key(department_id, queue_date)

        if self.cache is not None:
            cached = self.cache.get_json(cache_key)
            if cached is not None:
                return QueueStats.model_validate(cached)

        where = and_(tokens.c.department_id == department_id, tokens.c.queue_date == queue_date)
        async with self.session_factory() as db:
            counts = await db.execute(
                select(tokens.c.status, func.count()).where(where).group_by(tokens.c.status)
            )
            by_status = {status: count for status, count in counts.all()}

            called = await db.execute(
                select(tokens.c.issued_at, tokens.c.called_at).where(
                    and_(where, tokens.c.called_at.is_not(None))
                )
            )
            waits = [
                (as_utc(row.called_at) - as_utc(row.issued_at)).total_seconds() / 60
                for row in called
            ]

        stats = QueueStats(
            department_id=department_id,
            date=queue_date,
            waiting_count=by_status.get(TokenStatus.WAITING.value, 0),
            in_progress_count=by_status.get(TokenStatus.IN_PROGRESS.value, 0),
            completed_count=by_status.get(TokenStatus.COMPLETED.value, 0),
            cancelled_count=by_status.get(TokenStatus.CANCELLED.value, 0),
            average_wait_minutes=round(sum(waits) / len(waits), 1) if waits else None,
        )

        if self.cache is not None:
            self.cache.set_json(cache_key, stats.model_dump(mode="json"), ttl=self.stats_ttl)

        return stats
