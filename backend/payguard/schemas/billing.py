"""Pydantic schemas for the billing, security and webhook HTTP surface."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from payguard.domain.billing import BillingType

# ==================== BILLING RECORDS ====================


class CreateBillingRecordRequest(BaseModel):
    owner_id: str = Field(min_length=1, max_length=255)
    amount: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    due_date: datetime | None = None
    type: BillingType = BillingType.SUBSCRIPTION
    subscription_id: UUID | None = None
    description: str | None = None
    currency: str = Field(default="usd", min_length=3, max_length=3)


class BillingRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    owner_id: str
    subscription_id: UUID | None
    amount: Decimal
    amount_paid: Decimal = Decimal("0")
    outstanding: Decimal  # amount less partial payments
    currency: str
    type: str
    status: str
    display_status: str | None = None  # status, or "Overdue" for a Pending record past due
    description: str | None
    gateway_correlation_id: str | None
    transaction_id: str | None
    failure_reason: str | None
    due_date: datetime | None
    paid_at: datetime | None
    processed_at: datetime | None
    parent_record_id: UUID | None
    refunded_at: datetime | None
    created_at: datetime
    updated_at: datetime


class OverdueResponse(BaseModel):
    record_id: UUID
    is_overdue: bool


class PayRequest(BaseModel):
    origin_ip: str | None = None  # defaults to the caller's address


class PaymentAccepted(BaseModel):
    record_id: UUID
    status: str  # accepted | already_paid
    billing_status: str


class RefundRequest(BaseModel):
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    reason: str | None = None


class PartialPaymentRequest(BaseModel):
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)


class BillingHistoryResponse(BaseModel):
    owner_id: str
    average_amount: Decimal
    payment_count: int
    records: list[BillingRecordResponse]


# ==================== SECURITY ====================


class SecurityReportResponse(BaseModel):
    user_id: str
    start: datetime
    end: datetime
    total_attempts: int
    successful_attempts: int
    failed_attempts: int
    risk_score: int
    average_amount: Decimal
    origins: list[str]


# ==================== WEBHOOKS ====================


class WebhookAckResponse(BaseModel):
    received: bool = True
    event_id: str
    status: str


class WebhookEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_id: str
    event_type: str
    success: bool
    retry_count: int
    max_retries: int
    error_message: str | None
    received_at: datetime
    last_attempt_at: datetime | None
    processed_at: datetime | None


class FailedWebhooksResponse(BaseModel):
    retryable: list[WebhookEventResponse]
    permanently_failed: list[WebhookEventResponse]


class WebhookStatsResponse(BaseModel):
    window_hours: int
    total_events: int
    successful_events: int
    failed_events: int
    permanently_failed_events: int
    pending_retry_events: int
    success_rate: float
    average_processing_ms: float | None
    events_by_type: dict[str, int]
