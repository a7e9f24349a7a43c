"""BillingRecordStore: the only writer of billing_records.

Every write re-reads the row, checks the expected status against the state
machine in payguard.domain.billing, validates the ledger invariants and commits
under SQLAlchemy's optimistic version check. A concurrent writer surfaces as
ConcurrentModificationError; the caller re-reads and reports the final state.
"""

import uuid
from datetime import UTC, datetime
from decimal import Decimal

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from payguard.core.exceptions import (
    ConcurrentModificationError,
    InvariantViolationError,
    NotFoundError,
    PreconditionFailedError,
    ValidationError,
)
from payguard.db.models.billing_record import BillingRecord
from payguard.domain.billing import (
    BillingStatus,
    BillingType,
    assert_transition,
    check_invariants,
    ensure_utc,
    validate_amount,
)
from payguard.domain.billing import is_overdue as record_is_overdue
from payguard.domain.risk import PaymentHistory

logger = structlog.get_logger(__name__)

UNKNOWN_PAYMENT_ERROR = "Unknown payment error"


def _as_uuid(value: uuid.UUID | str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise NotFoundError("BillingRecord", value) from exc


class BillingRecordStore:
    """Persistence and state transitions for billing records."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    async def create_billing_record(
        self,
        owner_id: str,
        amount: Decimal,
        due_date: datetime | None,
        type: BillingType | str = BillingType.SUBSCRIPTION,
        subscription_id: uuid.UUID | None = None,
        description: str | None = None,
        currency: str = "usd",
    ) -> BillingRecord:
        """Create a new Pending record."""
        if not owner_id or not owner_id.strip():
            raise ValidationError("owner_id must not be empty")

        amount = Decimal(amount)
        try:
            billing_type = BillingType(type)
        except ValueError as exc:
            raise ValidationError(f"Unknown billing type '{type}'") from exc
        if billing_type == BillingType.REFUND:
            raise ValidationError("Refund entries are created by process_refund only")
        try:
            validate_amount(amount, billing_type)
        except InvariantViolationError as exc:
            raise ValidationError(str(exc)) from exc

        record = BillingRecord(
            id=uuid.uuid4(),
            owner_id=owner_id,
            subscription_id=subscription_id,
            amount=amount,
            amount_paid=Decimal("0"),
            currency=currency.lower(),
            type=billing_type.value,
            status=BillingStatus.PENDING.value,
            description=description,
            due_date=due_date,
        )
        check_invariants(record)

        async with self.session_factory() as session:
            session.add(record)
            await session.commit()
            await session.refresh(record)

        logger.info(
            "billing_record_created",
            record_id=str(record.id),
            owner_id=owner_id,
            amount=str(amount),
            type=billing_type.value,
        )
        return record

    async def get(self, record_id: uuid.UUID | str) -> BillingRecord:
        async with self.session_factory() as session:
            return await self._load(session, _as_uuid(record_id))

    async def _load(self, session: AsyncSession, record_id: uuid.UUID) -> BillingRecord:
        result = await session.execute(select(BillingRecord).where(BillingRecord.id == record_id))
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError("BillingRecord", record_id)
        return record

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def transition(
        self,
        record_id: uuid.UUID | str,
        expected_status: BillingStatus | str,
        target_status: BillingStatus | str,
        **fields,
    ) -> BillingRecord:
        """Move a record from ``expected_status`` to ``target_status``.

        Raises:
            NotFoundError: record does not exist
            PreconditionFailedError: record is not in ``expected_status``
            InvalidTransitionError: edge is not in the state machine
            ConcurrentModificationError: another writer committed first
        """
        record_id = _as_uuid(record_id)
        expected = BillingStatus(expected_status)
        target = BillingStatus(target_status)

        async with self.session_factory() as session:
            record = await self._load(session, record_id)

            current = BillingStatus(record.status)
            if current != expected:
                raise PreconditionFailedError(
                    f"Billing record {record_id} is {current.value}, expected {expected.value}"
                )
            assert_transition(current, target)

            record.status = target.value
            for name, value in fields.items():
                if not hasattr(BillingRecord, name):
                    raise ValueError(f"BillingRecord has no field '{name}'")
                setattr(record, name, value)

            check_invariants(record)

            try:
                await session.commit()
            except StaleDataError as exc:
                await session.rollback()
                raise ConcurrentModificationError("BillingRecord", record_id) from exc

        logger.info(
            "billing_record_transitioned",
            record_id=str(record_id),
            from_status=current.value,
            to_status=target.value,
        )
        return record

    async def mark_paid(
        self,
        record_id: uuid.UUID | str,
        correlation_id: str | None,
        now: datetime | None = None,
    ) -> BillingRecord:
        now = now or datetime.now(UTC)
        return await self.transition(
            record_id,
            BillingStatus.PENDING,
            BillingStatus.PAID,
            paid_at=now,
            processed_at=now,
            gateway_correlation_id=correlation_id,
            transaction_id=correlation_id,
            failure_reason=None,
        )

    async def mark_failed(
        self,
        record_id: uuid.UUID | str,
        reason: str | None,
        correlation_id: str | None = None,
        now: datetime | None = None,
    ) -> BillingRecord:
        now = now or datetime.now(UTC)
        fields: dict = {
            "failure_reason": (reason or "").strip() or UNKNOWN_PAYMENT_ERROR,
            "processed_at": now,
        }
        if correlation_id:
            fields["gateway_correlation_id"] = correlation_id
        return await self.transition(record_id, BillingStatus.PENDING, BillingStatus.FAILED, **fields)

    async def rearm(self, record_id: uuid.UUID | str) -> BillingRecord:
        """Failed -> Pending, ready for another charge."""
        return await self.transition(record_id, BillingStatus.FAILED, BillingStatus.PENDING, failure_reason=None)

    async def cancel(self, record_id: uuid.UUID | str) -> BillingRecord:
        return await self.transition(record_id, BillingStatus.PENDING, BillingStatus.CANCELLED)

    async def append_refund_entry(
        self,
        record_id: uuid.UUID | str,
        amount: Decimal,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> tuple[BillingRecord, BillingRecord]:
        """Flip a Paid record to Refunded and append its negative Refund entry.

        Both writes commit in one transaction or not at all.

        Returns:
            (original, refund_entry)
        """
        record_id = _as_uuid(record_id)
        amount = Decimal(amount)
        now = now or datetime.now(UTC)

        async with self.session_factory() as session:
            original = await self._load(session, record_id)

            current = BillingStatus(original.status)
            if current != BillingStatus.PAID:
                raise PreconditionFailedError(f"Billing record {record_id} is {current.value}, expected Paid")
            assert_transition(current, BillingStatus.REFUNDED)
            if amount <= 0 or amount > Decimal(original.amount):
                raise PreconditionFailedError(f"Refund amount {amount} must be in (0, {original.amount}]")

            original.status = BillingStatus.REFUNDED.value
            original.paid_at = None
            original.refunded_at = now

            refund = BillingRecord(
                id=uuid.uuid4(),
                owner_id=original.owner_id,
                subscription_id=original.subscription_id,
                amount=-amount,
                currency=original.currency,
                type=BillingType.REFUND.value,
                status=BillingStatus.REFUNDED.value,
                description=reason or f"Refund for billing record {record_id}",
                gateway_correlation_id=original.gateway_correlation_id,
                processed_at=now,
                refunded_at=now,
                parent_record_id=original.id,
            )

            check_invariants(original)
            check_invariants(refund)
            session.add(refund)

            try:
                await session.commit()
            except StaleDataError as exc:
                await session.rollback()
                raise ConcurrentModificationError("BillingRecord", record_id) from exc

        logger.info(
            "billing_record_refunded",
            record_id=str(record_id),
            refund_record_id=str(refund.id),
            amount=str(amount),
        )
        return original, refund

    async def apply_partial_payment(self, record_id: uuid.UUID | str, amount: Decimal) -> BillingRecord:
        """Collect part of a Pending charge.

        The charged ``amount`` is never rewritten; collections accumulate in
        ``amount_paid``. Settling the full remainder moves the record to Paid.
        """
        record_id = _as_uuid(record_id)
        amount = Decimal(amount)

        async with self.session_factory() as session:
            record = await self._load(session, record_id)

            if BillingStatus(record.status) != BillingStatus.PENDING:
                raise PreconditionFailedError(f"Billing record {record_id} is {record.status}, expected Pending")
            remaining = record.outstanding
            if amount <= 0 or amount > remaining:
                raise PreconditionFailedError(f"Partial payment amount {amount} must be in (0, {remaining}]")

            record.amount_paid = Decimal(record.amount_paid or 0) + amount
            if record.outstanding == 0:
                now = datetime.now(UTC)
                assert_transition(BillingStatus.PENDING, BillingStatus.PAID)
                record.status = BillingStatus.PAID.value
                record.paid_at = now
                record.processed_at = now

            check_invariants(record)

            try:
                await session.commit()
            except StaleDataError as exc:
                await session.rollback()
                raise ConcurrentModificationError("BillingRecord", record_id) from exc

        logger.info(
            "billing_partial_payment_applied",
            record_id=str(record_id),
            amount=str(amount),
            amount_paid=str(record.amount_paid),
            remaining=str(record.outstanding),
        )
        return record

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_pending(self) -> list[BillingRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BillingRecord)
                .where(BillingRecord.status == BillingStatus.PENDING.value)
                .order_by(BillingRecord.due_date.asc(), BillingRecord.created_at.asc())
            )
            return list(result.scalars().all())

    async def list_overdue(self, now: datetime | None = None) -> list[BillingRecord]:
        """Pending records whose due date has passed. Pure read."""
        now = now or datetime.now(UTC)
        async with self.session_factory() as session:
            result = await session.execute(
                select(BillingRecord)
                .where(
                    BillingRecord.status == BillingStatus.PENDING.value,
                    BillingRecord.due_date.isnot(None),
                    BillingRecord.due_date < now,
                )
                .order_by(BillingRecord.due_date.asc())
            )
            return list(result.scalars().all())

    async def is_overdue(self, record_id: uuid.UUID | str, now: datetime | None = None) -> bool:
        record = await self.get(record_id)
        return record_is_overdue(record.status, ensure_utc(record.due_date), now)

    async def get_owner_history(self, owner_id: str) -> list[BillingRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BillingRecord)
                .where(BillingRecord.owner_id == owner_id)
                .order_by(BillingRecord.created_at.desc())
            )
            return list(result.scalars().all())

    async def get_subscription_history(self, subscription_id: uuid.UUID | str) -> list[BillingRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BillingRecord)
                .where(BillingRecord.subscription_id == _as_uuid(subscription_id))
                .order_by(BillingRecord.created_at.desc())
            )
            return list(result.scalars().all())

    async def find_by_correlation_id(self, correlation_id: str) -> BillingRecord | None:
        """The charge (non-refund) record carrying this gateway correlation id."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(BillingRecord)
                .where(
                    BillingRecord.gateway_correlation_id == correlation_id,
                    BillingRecord.type != BillingType.REFUND.value,
                )
                .order_by(BillingRecord.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def get_payment_history(self, owner_id: str) -> PaymentHistory:
        """Average and count of the owner's Paid charges."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.avg(BillingRecord.amount), func.count(BillingRecord.id)).where(
                    BillingRecord.owner_id == owner_id,
                    BillingRecord.status == BillingStatus.PAID.value,
                    BillingRecord.type != BillingType.REFUND.value,
                )
            )
            average, count = result.one()

        average_amount = Decimal(str(average)).quantize(Decimal("0.01")) if average is not None else Decimal("0")
        return PaymentHistory(user_id=owner_id, average_amount=average_amount, payment_count=count or 0)
