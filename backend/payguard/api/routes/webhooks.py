"""Webhook routes: signature-verified gateway events and ledger inspection."""

import json
from dataclasses import asdict

import stripe
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from payguard.api.deps import get_webhook_ledger, get_webhook_processor
from payguard.core.config import Settings, get_settings
from payguard.schemas.billing import (
    FailedWebhooksResponse,
    WebhookAckResponse,
    WebhookEventResponse,
    WebhookStatsResponse,
)
from payguard.services.webhook_ledger import WebhookEventLedger
from payguard.services.webhook_processor import GatewayEvent, WebhookProcessor

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/payments", response_model=WebhookAckResponse)
async def payment_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
    settings: Settings = Depends(get_settings),
):
    """Receive a gateway event.

    Always acknowledges a verified event with 200: handler failures are
    recorded in the webhook ledger and re-driven by the retry sweeper.
    """
    if not settings.stripe_webhook_secret:
        logger.error("stripe_webhook_secret_missing")
        raise HTTPException(status_code=503, detail="Payment webhook endpoint is not configured")

    body = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing stripe-signature header")

    try:
        stripe.Webhook.construct_event(body, sig_header, settings.stripe_webhook_secret)
        event = GatewayEvent.from_dict(json.loads(body))
    except (ValueError, KeyError, TypeError):
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    logger.info("payment_webhook_received", event_id=event.id, event_type=event.type)
    result = await processor.handle(event)
    return WebhookAckResponse(event_id=result.event_id, status=result.status)


@router.get("/failed", response_model=FailedWebhooksResponse)
async def list_failed_webhooks(ledger: WebhookEventLedger = Depends(get_webhook_ledger)):
    retryable = await ledger.get_failed_for_retry()
    permanent = await ledger.get_permanently_failed()
    return FailedWebhooksResponse(
        retryable=[WebhookEventResponse.model_validate(e) for e in retryable],
        permanently_failed=[WebhookEventResponse.model_validate(e) for e in permanent],
    )


@router.get("/stats", response_model=WebhookStatsResponse)
async def webhook_stats(hours: int = 24, ledger: WebhookEventLedger = Depends(get_webhook_ledger)):
    stats = await ledger.get_processing_stats(hours=hours)
    return WebhookStatsResponse(**asdict(stats))
