"""Pydantic schemas for payment processing outcomes.

The processor reports declines, gate rejections and exhausted retries as
outcomes, not exceptions. Only not-found and precondition failures raise.
"""

from decimal import Decimal
from enum import StrEnum
from uuid import UUID

from pydantic import BaseModel


class PaymentOutcomeStatus(StrEnum):
    SUCCEEDED = "succeeded"
    ALREADY_PAID = "already_paid"  # idempotent replay on a Paid record
    IN_PROGRESS = "in_progress"  # another worker holds the record lock
    REJECTED = "rejected"  # security gate denied, never retried
    DECLINED = "declined"  # gateway declined every attempt
    NO_PAYMENT_METHOD = "no_payment_method"
    ERROR = "error"  # gateway kept raising until retries ran out


class PaymentOutcome(BaseModel):
    status: PaymentOutcomeStatus
    record_id: UUID
    billing_status: str
    attempts: int = 0  # gateway charge calls made by this run
    correlation_id: str | None = None
    message: str | None = None
    suspended: bool = False

    @property
    def paid(self) -> bool:
        return self.status in (PaymentOutcomeStatus.SUCCEEDED, PaymentOutcomeStatus.ALREADY_PAID)


class RefundOutcomeStatus(StrEnum):
    REFUNDED = "refunded"
    FAILED = "failed"
    IN_PROGRESS = "in_progress"


class RefundOutcome(BaseModel):
    status: RefundOutcomeStatus
    record_id: UUID
    refund_record_id: UUID | None = None
    amount: Decimal | None = None
    message: str | None = None
