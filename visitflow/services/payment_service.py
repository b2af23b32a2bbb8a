"""Payment session manager: one payment attempt per payable subject."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Protocol, TypeVar
from uuid import UUID, uuid4

import structlog
from sqlalchemy import and_, insert, select, update
from sqlalchemy.engine import Row
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from visitflow.core.clock import Clock
from visitflow.core.exceptions import (
    AppException,
    GatewayUnavailable,
    InvalidState,
    NotFound,
    VerificationFailed,
)
from visitflow.core.locks import KeyedLock, subject_key
from visitflow.models.payments import payments
from visitflow.schemas.payments import (
    TERMINAL_PAYMENT_STATUSES,
    GatewayOrderStatus,
    PaymentConfirmation,
    PaymentSession,
    PaymentStatus,
    PaymentSubjectType,
)
from visitflow.services.notification_service import DomainEvent, NotificationEmitter
from visitflow.services.payment_gateway import PaymentGateway

logger = structlog.get_logger(__name__)

T = TypeVar("T")

ACTIVE_STATUSES = (PaymentStatus.INITIATED.value, PaymentStatus.SUCCESS.value)


@dataclass
class Settlement:
    """What a subject did with a successful payment."""

    accepted: bool
    subject_status: str | None
    events: list[tuple[DomainEvent, dict[str, Any]]] = field(default_factory=list)
    # Side effects that must only run once the settlement is committed
    after_commit: list[Callable[[], None]] = field(default_factory=list)


class PaymentSubjectHandler(Protocol):
    """Subject-side hooks, run inside the payment's subject lock and transaction."""

    async def check_payable(self, db: AsyncSession, subject_id: UUID) -> Decimal:
        """Return the amount due, or raise NotFound / InvalidState."""
        ...

    async def attach(self, db: AsyncSession, subject_id: UUID, payment_id: UUID) -> None:
        """Link a freshly initiated payment to its subject."""
        ...

    async def settle(
        self, db: AsyncSession, subject_id: UUID, payment_id: UUID, now: datetime
    ) -> Settlement:
        """Apply a verified successful payment to the subject."""
        ...

    async def status_of(self, db: AsyncSession, subject_id: UUID) -> str | None:
        """Current subject status for reporting."""
        ...

    async def owner_of(self, db: AsyncSession, subject_id: UUID) -> str | None:
        """Patient that owns the subject."""
        ...


class PaymentSessionManager:
    """
    Mediates payment attempts against the external gateway.

    Idempotent by subject: while a payment is initiated or succeeded for a
    subject, every ``initiate`` returns that same record. The subject lock is
    held only to record state, never across a gateway round trip.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        locks: KeyedLock,
        clock: Clock,
        emitter: NotificationEmitter,
        currency: str,
        gateway_timeout: float = 10.0,
        payment_timeout: timedelta = timedelta(minutes=20),
        reconcile_max_attempts: int = 5,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.locks = locks
        self.clock = clock
        self.emitter = emitter
        self.currency = currency
        self.gateway_timeout = gateway_timeout
        self.payment_timeout = payment_timeout
        self.reconcile_max_attempts = reconcile_max_attempts
        self._handlers: dict[PaymentSubjectType, PaymentSubjectHandler] = {}

    def register_subject(
        self, subject_type: PaymentSubjectType, handler: PaymentSubjectHandler
    ) -> None:
        self._handlers[subject_type] = handler

    def _handler(self, subject_type: PaymentSubjectType) -> PaymentSubjectHandler:
        try:
            return self._handlers[subject_type]
        except KeyError:
            raise InvalidState(f"No payable subject registered for '{subject_type.value}'") from None

    async def _call_gateway(self, call: Awaitable[T]) -> T:
        """Run a gateway call under the configured timeout."""
        try:
            return await asyncio.wait_for(call, timeout=self.gateway_timeout)
        except TimeoutError as e:
            raise GatewayUnavailable("Payment gateway timed out") from e

    @staticmethod
    async def _get_row(db: AsyncSession, payment_id: UUID) -> Row:
        result = await db.execute(select(payments).where(payments.c.id == payment_id))
        row = result.fetchone()
        if row is None:
            raise NotFound("Payment not found")
        return row

    @staticmethod
    async def _lock_row(db: AsyncSession, payment_id: UUID) -> Row:
        """Read a payment and hold its row lock until the transaction ends."""
        result = await db.execute(
            select(payments).where(payments.c.id == payment_id).with_for_update()
        )
        row = result.fetchone()
        if row is None:
            raise NotFound("Payment not found")
        return row

    @staticmethod
    async def _find_active(
        db: AsyncSession, subject_type: PaymentSubjectType, subject_id: UUID
    ) -> Row | None:
        result = await db.execute(
            select(payments).where(
                and_(
                    payments.c.subject_type == subject_type.value,
                    payments.c.subject_id == subject_id,
                    payments.c.status.in_(ACTIVE_STATUSES),
                )
            )
        )
        return result.fetchone()

    @staticmethod
    def _to_session(row: Row) -> PaymentSession:
        return PaymentSession(
            payment_id=row.id,
            subject_type=PaymentSubjectType(row.subject_type),
            subject_id=row.subject_id,
            provider=row.provider,
            status=PaymentStatus(row.status),
            amount=row.amount,
            currency=row.currency,
            payload=row.payload,
            created_at=row.created_at,
        )

    @staticmethod
    def _to_confirmation(row: Row, subject_status: str | None) -> PaymentConfirmation:
        return PaymentConfirmation(
            payment_id=row.id,
            status=PaymentStatus(row.status),
            subject_type=PaymentSubjectType(row.subject_type),
            subject_id=row.subject_id,
            subject_status=subject_status,
            failure_reason=row.failure_reason,
        )

    async def initiate(
        self,
        subject_type: PaymentSubjectType,
        subject_id: UUID,
    ) -> PaymentSession:
        """
        Start, or resume, the payment for a subject.

        Args:
            subject_type: Kind of payable subject
            subject_id: Appointment or invoice id

        Returns:
            The subject's single active payment session

        Raises:
            NotFound: If the subject does not exist
            InvalidState: If the subject is not payable
            GatewayUnavailable: If the gateway order could not be opened
            GatewayRejected: If the gateway refused to open the order
        """
        handler = self._handler(subject_type)

        async with self.locks.hold(subject_key(subject_type.value, subject_id)):
            async with self.session_factory() as db:
                row = await self._find_active(db, subject_type, subject_id)

                if row is None:
                    amount = await handler.check_payable(db, subject_id)
                    now = self.clock.now()
                    payment_id = uuid4()

                    try:
                        await db.execute(
                            insert(payments).values(
                                id=payment_id,
                                subject_type=subject_type.value,
                                subject_id=subject_id,
                                amount=amount,
                                currency=self.currency,
                                provider=self.gateway.provider,
                                status=PaymentStatus.INITIATED.value,
                                reconcile_attempts=0,
                                created_at=now,
                                updated_at=now,
                            )
                        )
                        await handler.attach(db, subject_id, payment_id)
                        await db.commit()
                    except IntegrityError:
                        # Another worker opened the subject's payment first
                        await db.rollback()
                        row = await self._find_active(db, subject_type, subject_id)
                        if row is None:
                            raise
                        logger.info("payment_resumed", payment_id=str(row.id))
                    else:
                        row = await self._get_row(db, payment_id)
                        logger.info(
                            "payment_initiated",
                            payment_id=str(payment_id),
                            subject_type=subject_type.value,
                            subject_id=str(subject_id),
                            amount=str(amount),
                        )
                elif row.status == PaymentStatus.INITIATED.value:
                    await handler.check_payable(db, subject_id)
                    logger.info("payment_resumed", payment_id=str(row.id))

        if row.status == PaymentStatus.INITIATED.value and row.gateway_ref is None:
            row = await self._open_gateway_session(row)

        return self._to_session(row)

    async def _open_gateway_session(self, row: Row) -> Row:
        """
        Open the gateway order for an initiated payment and store it.

        ``gateway.open`` is idempotent by payment id, so concurrent openers
        converge on one order; only the first store wins.
        """
        order = await self._call_gateway(
            self.gateway.open(row.amount, row.currency, subject_ref=str(row.id))
        )

        async with self.session_factory() as db:
            await db.execute(
                update(payments)
                .where(
                    and_(
                        payments.c.id == row.id,
                        payments.c.gateway_ref.is_(None),
                        payments.c.status == PaymentStatus.INITIATED.value,
                    )
                )
                .values(
                    gateway_ref=order.gateway_ref,
                    payload=order.payload,
                    updated_at=self.clock.now(),
                )
            )
            await db.commit()
            return await self._get_row(db, row.id)

    async def get_session(self, payment_id: UUID) -> PaymentSession:
        """
        Fetch the stored session for a payment.

        Clients carry only the payment id across interruptions and recover
        the gateway parameters here.
        """
        async with self.session_factory() as db:
            row = await self._get_row(db, payment_id)

        if row.status == PaymentStatus.INITIATED.value and row.gateway_ref is None:
            row = await self._open_gateway_session(row)

        return self._to_session(row)

    async def owner_of(self, payment_id: UUID) -> str | None:
        """Patient that owns the payment's subject."""
        async with self.session_factory() as db:
            row = await self._get_row(db, payment_id)
            handler = self._handler(PaymentSubjectType(row.subject_type))
            return await handler.owner_of(db, row.subject_id)

    async def confirm(
        self,
        payment_id: UUID,
        gateway_result: dict[str, Any],
    ) -> PaymentConfirmation:
        """
        Apply a gateway result to a payment exactly once.

        Terminal payments return their stored outcome without re-processing.

        Raises:
            NotFound: If the payment does not exist
            VerificationFailed: If the result is not attributable to this payment
            GatewayUnavailable: If verification needs the gateway and it is down
            InvalidState: If the payment succeeded for a subject no longer payable
        """
        async with self.session_factory() as db:
            row = await self._get_row(db, payment_id)
            if PaymentStatus(row.status) in TERMINAL_PAYMENT_STATUSES:
                handler = self._handler(PaymentSubjectType(row.subject_type))
                return self._to_confirmation(row, await handler.status_of(db, row.subject_id))

        if row.gateway_ref is None:
            raise VerificationFailed("Payment has no open gateway session")

        try:
            verification = await self._call_gateway(self.gateway.verify(gateway_result))
        except VerificationFailed as e:
            logger.warning(
                "payment_verification_failed",
                payment_id=str(payment_id),
                reason=e.message,
            )
            raise

        if verification.payment_ref != row.gateway_ref:
            logger.warning(
                "payment_verification_failed",
                payment_id=str(payment_id),
                reason="gateway_ref_mismatch",
                claimed_ref=verification.payment_ref,
            )
            raise VerificationFailed("Gateway result does not belong to this payment")

        return await self._record_outcome(
            payment_id,
            success=verification.success,
            failure_reason=None if verification.success else "declined",
        )

    async def _record_outcome(
        self,
        payment_id: UUID,
        success: bool,
        failure_reason: str | None,
    ) -> PaymentConfirmation:
        async with self.session_factory() as db:
            row = await self._get_row(db, payment_id)

        subject_type = PaymentSubjectType(row.subject_type)
        handler = self._handler(subject_type)
        settlement: Settlement | None = None

        async with self.locks.hold(subject_key(subject_type.value, row.subject_id)):
            async with self.session_factory() as db:
                row = await self._lock_row(db, payment_id)
                if PaymentStatus(row.status) in TERMINAL_PAYMENT_STATUSES:
                    return self._to_confirmation(row, await handler.status_of(db, row.subject_id))

                now = self.clock.now()
                if success:
                    settlement = await handler.settle(db, row.subject_id, payment_id, now)
                    status = PaymentStatus.SUCCESS if settlement.accepted else PaymentStatus.FAILED
                    reason = None if settlement.accepted else "subject_not_payable"
                    subject_status = settlement.subject_status
                else:
                    status = PaymentStatus.FAILED
                    reason = failure_reason
                    subject_status = await handler.status_of(db, row.subject_id)

                result = await db.execute(
                    update(payments)
                    .where(
                        and_(
                            payments.c.id == payment_id,
                            payments.c.status == PaymentStatus.INITIATED.value,
                        )
                    )
                    .values(
                        status=status.value,
                        failure_reason=reason,
                        completed_at=now,
                        updated_at=now,
                    )
                )
                if not result.rowcount:
                    # Another worker recorded the outcome first; drop this settlement
                    await db.rollback()
                    row = await self._get_row(db, payment_id)
                    return self._to_confirmation(row, await handler.status_of(db, row.subject_id))
                await db.commit()
                row = await self._get_row(db, payment_id)

        logger.info(
            "payment_completed",
            payment_id=str(payment_id),
            status=status.value,
            failure_reason=reason,
        )

        if settlement is not None:
            for hook in settlement.after_commit:
                hook()
            for event, payload in settlement.events:
                self.emitter.emit(event, payload)

            if not settlement.accepted:
                logger.warning(
                    "payment_refund_required",
                    payment_id=str(payment_id),
                    subject_type=subject_type.value,
                    subject_id=str(row.subject_id),
                    subject_status=subject_status,
                )
                raise InvalidState(
                    f"{subject_type.value.capitalize()} is no longer payable "
                    f"(status: {subject_status})"
                )

        return self._to_confirmation(row, subject_status)

    async def reconcile_stale_payments(self) -> dict[str, int]:
        """
        Resolve payments left initiated past the gateway timeout.

        Policy: poll the gateway once per sweep; captured orders are applied
        as successes, anything else is failed. Polls the gateway cannot answer
        (outage, unknown order) count against ``reconcile_max_attempts``
        before the payment is failed anyway. One bad payment is logged and
        deferred without stopping the rest of the pass.
        """
        cutoff = self.clock.now() - self.payment_timeout
        async with self.session_factory() as db:
            result = await db.execute(
                select(payments)
                .where(
                    and_(
                        payments.c.status == PaymentStatus.INITIATED.value,
                        payments.c.created_at <= cutoff,
                    )
                )
                .order_by(payments.c.created_at)
            )
            stale = result.fetchall()

        summary = {"succeeded": 0, "failed": 0, "deferred": 0}
        for row in stale:
            try:
                outcome = await self._reconcile(row)
            except Exception as e:
                logger.error(
                    "payment_reconciliation_error",
                    payment_id=str(row.id),
                    error=str(e),
                    exc_info=True,
                )
                outcome = "deferred"
            summary[outcome] += 1

        if stale:
            logger.info("payment_reconciliation_completed", **summary)
        return summary

    async def _reconcile(self, row: Row) -> str:
        if row.gateway_ref is None:
            return await self._reconcile_outcome(row, False, "gateway_timeout")

        try:
            gateway_status = await self._call_gateway(self.gateway.fetch_status(row.gateway_ref))
        except AppException as e:
            # Unreachable, or the gateway no longer knows the order
            attempts = await self._bump_reconcile_attempts(row.id)
            if attempts >= self.reconcile_max_attempts:
                return await self._reconcile_outcome(row, False, "reconcile_exhausted")
            logger.warning(
                "payment_reconciliation_deferred",
                payment_id=str(row.id),
                attempts=attempts,
                error=e.message,
            )
            return "deferred"

        if gateway_status is GatewayOrderStatus.CAPTURED:
            return await self._reconcile_outcome(row, True, None)
        if gateway_status is GatewayOrderStatus.FAILED:
            return await self._reconcile_outcome(row, False, "declined")
        return await self._reconcile_outcome(row, False, "gateway_timeout")

    async def _reconcile_outcome(self, row: Row, success: bool, reason: str | None) -> str:
        try:
            confirmation = await self._record_outcome(row.id, success=success, failure_reason=reason)
        except AppException as e:
            # Captured for a subject that is gone; recorded failed, refund logged
            logger.warning("payment_reconciled", payment_id=str(row.id), outcome=e.message)
            return "failed"

        logger.info(
            "payment_reconciled",
            payment_id=str(row.id),
            status=confirmation.status.value,
            failure_reason=confirmation.failure_reason,
        )
        return "succeeded" if confirmation.status is PaymentStatus.SUCCESS else "failed"

    async def _bump_reconcile_attempts(self, payment_id: UUID) -> int:
        async with self.session_factory() as db:
            await db.execute(
                update(payments)
                .where(payments.c.id == payment_id)
                .values(
                    reconcile_attempts=payments.c.reconcile_attempts + 1,
                    updated_at=self.clock.now(),
                )
            )
            await db.commit()
            row = await self._get_row(db, payment_id)
            return row.reconcile_attempts
