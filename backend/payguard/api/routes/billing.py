"""Billing routes: record lifecycle, payment, retry, refund and ledger queries."""

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from uuid import UUID

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Request

from payguard.api.deps import get_billing_store, get_payment_processor
from payguard.core.exceptions import PayGuardError, PreconditionFailedError
from payguard.db.models.billing_record import BillingRecord
from payguard.domain.billing import BillingStatus, classify, ensure_utc
from payguard.schemas.billing import (
    BillingHistoryResponse,
    BillingRecordResponse,
    CreateBillingRecordRequest,
    OverdueResponse,
    PartialPaymentRequest,
    PaymentAccepted,
    PayRequest,
    RefundRequest,
)
from payguard.schemas.payments import PaymentOutcome, RefundOutcome
from payguard.services.billing_store import BillingRecordStore
from payguard.services.payment_processor import PaymentProcessor

logger = structlog.get_logger(__name__)

router = APIRouter()


def _to_response(record: BillingRecord, now: datetime | None = None) -> BillingRecordResponse:
    response = BillingRecordResponse.model_validate(record)
    response.display_status = classify(record.status, ensure_utc(record.due_date), now or datetime.now(UTC))
    return response


def _origin_ip(request: Request, payload: PayRequest | None) -> str | None:
    if payload is not None and payload.origin_ip:
        return payload.origin_ip
    return request.client.host if request.client else None


@router.post("/records", response_model=BillingRecordResponse, status_code=201)
async def create_billing_record(
    body: CreateBillingRecordRequest,
    store: BillingRecordStore = Depends(get_billing_store),
):
    record = await store.create_billing_record(
        owner_id=body.owner_id,
        amount=body.amount,
        due_date=body.due_date,
        type=body.type,
        subscription_id=body.subscription_id,
        description=body.description,
        currency=body.currency,
    )
    return _to_response(record)


@router.get("/records/{record_id}", response_model=BillingRecordResponse)
async def get_billing_record(record_id: UUID, store: BillingRecordStore = Depends(get_billing_store)):
    return _to_response(await store.get(record_id))


@router.get("/records/{record_id}/overdue", response_model=OverdueResponse)
async def check_overdue(record_id: UUID, store: BillingRecordStore = Depends(get_billing_store)):
    return OverdueResponse(record_id=record_id, is_overdue=await store.is_overdue(record_id))


@router.get("/overdue", response_model=list[BillingRecordResponse])
async def list_overdue(store: BillingRecordStore = Depends(get_billing_store)):
    now = datetime.now(UTC)
    return [_to_response(r, now) for r in await store.list_overdue(now)]


@router.get("/pending", response_model=list[BillingRecordResponse])
async def list_pending(store: BillingRecordStore = Depends(get_billing_store)):
    now = datetime.now(UTC)
    return [_to_response(r, now) for r in await store.list_pending()]


async def _run_payment_in_background(
    run: Callable[..., Awaitable[PaymentOutcome]],
    record_id: UUID,
    origin_ip: str | None,
) -> None:
    """Drive a full retry chain after the response has been sent."""
    try:
        outcome = await run(record_id, origin_ip=origin_ip)
    except PayGuardError as exc:
        # The record changed between the request check and the run
        logger.warning("background_payment_skipped", record_id=str(record_id), error=str(exc))
        return
    logger.info(
        "background_payment_finished",
        record_id=str(record_id),
        outcome=outcome.status.value,
        billing_status=outcome.billing_status,
        attempts=outcome.attempts,
    )


@router.post("/records/{record_id}/pay", response_model=PaymentAccepted, status_code=202)
async def pay_billing_record(
    record_id: UUID,
    request: Request,
    background_tasks: BackgroundTasks,
    payload: PayRequest | None = None,
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    """Queue a charge for a Pending record.

    The retry chain can back off for minutes, so it runs after the response.
    Poll the record for its outcome. A Paid record is reported without a new run.
    """
    record = await processor.store.get(record_id)
    if record.status == BillingStatus.PAID.value:
        return PaymentAccepted(record_id=record.id, status="already_paid", billing_status=record.status)
    if record.status != BillingStatus.PENDING.value:
        raise PreconditionFailedError(f"Billing record {record.id} is {record.status}, expected Pending")

    background_tasks.add_task(
        _run_payment_in_background, processor.process_payment, record.id, _origin_ip(request, payload)
    )
    return PaymentAccepted(record_id=record.id, status="accepted", billing_status=record.status)


@router.post("/records/{record_id}/retry", response_model=PaymentAccepted, status_code=202)
async def retry_billing_record(
    record_id: UUID,
    request: Request,
    background_tasks: BackgroundTasks,
    payload: PayRequest | None = None,
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    """Queue a manual retry of a Failed record."""
    record = await processor.store.get(record_id)
    if record.status == BillingStatus.PAID.value:
        return PaymentAccepted(record_id=record.id, status="already_paid", billing_status=record.status)
    if record.status != BillingStatus.FAILED.value:
        raise PreconditionFailedError(f"Only failed payments can be retried (status is {record.status})")

    background_tasks.add_task(
        _run_payment_in_background, processor.retry_failed_payment, record.id, _origin_ip(request, payload)
    )
    return PaymentAccepted(record_id=record.id, status="accepted", billing_status=record.status)


@router.post("/records/{record_id}/refund", response_model=RefundOutcome)
async def refund_billing_record(
    record_id: UUID,
    body: RefundRequest,
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    return await processor.process_refund(record_id, body.amount, body.reason)


@router.post("/records/{record_id}/partial-payment", response_model=BillingRecordResponse)
async def apply_partial_payment(
    record_id: UUID,
    body: PartialPaymentRequest,
    store: BillingRecordStore = Depends(get_billing_store),
):
    return _to_response(await store.apply_partial_payment(record_id, body.amount))


@router.get("/users/{owner_id}/history", response_model=BillingHistoryResponse)
async def get_billing_history(owner_id: str, store: BillingRecordStore = Depends(get_billing_store)):
    now = datetime.now(UTC)
    records = await store.get_owner_history(owner_id)
    history = await store.get_payment_history(owner_id)
    return BillingHistoryResponse(
        owner_id=owner_id,
        average_amount=history.average_amount,
        payment_count=history.payment_count,
        records=[_to_response(r, now) for r in records],
    )
