"""BillingRecord model: one ledger entry (charge or refund) for an owner."""

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid

from payguard.db.base import Base


class BillingRecord(Base):
    __tablename__ = "billing_records"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(String(255), nullable=False, index=True)
    subscription_id = Column(Uuid(as_uuid=True), ForeignKey("subscriptions.id"), nullable=True, index=True)

    amount = Column(Numeric(12, 2), nullable=False)  # Negative only for Refund entries
    amount_paid = Column(Numeric(12, 2), nullable=False, default=0)  # Collected through partial payments
    currency = Column(String(3), nullable=False, default="usd")
    type = Column(String(50), nullable=False)  # BillingType values
    status = Column(String(50), nullable=False, default="Pending", index=True)  # BillingStatus values
    description = Column(Text, nullable=True)

    # Gateway references
    gateway_correlation_id = Column(String(255), nullable=True, index=True)  # e.g. Stripe payment intent id
    transaction_id = Column(String(255), nullable=True)

    failure_reason = Column(Text, nullable=True)  # Set exactly when status is Failed

    due_date = Column(DateTime(timezone=True), nullable=True, index=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)  # Set exactly when status is Paid
    processed_at = Column(DateTime(timezone=True), nullable=True)

    # Refund linkage
    parent_record_id = Column(Uuid(as_uuid=True), ForeignKey("billing_records.id"), nullable=True, index=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    # Optimistic concurrency: UPDATE ... WHERE version = :expected
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC))

    __table_args__ = (CheckConstraint("amount >= 0 OR type = 'Refund'", name="ck_billing_records_amount_sign"),)
    __mapper_args__ = {"version_id_col": version}

    @property
    def outstanding(self) -> Decimal:
        """What is still to be collected on a charge: amount less partial payments."""
        return Decimal(self.amount) - Decimal(self.amount_paid or 0)
