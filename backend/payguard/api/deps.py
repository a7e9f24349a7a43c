"""FastAPI dependencies wiring the payment services together.

Override any of these in tests via app.dependency_overrides.
"""

from fastapi import Depends
from redis.asyncio import Redis

from payguard.core.config import Settings, get_settings
from payguard.core.locking import RecordLock
from payguard.db.base import get_session_factory
from payguard.db.redis import get_redis
from payguard.integrations.gateway import PaymentGateway
from payguard.integrations.notifier import LogNotifier, Notifier
from payguard.security.attempts import AttemptLedger
from payguard.security.gate import PaymentSecurityGate
from payguard.services.billing_store import BillingRecordStore
from payguard.services.payment_processor import PaymentProcessor
from payguard.services.subscription_service import SubscriptionService
from payguard.services.webhook_ledger import WebhookEventLedger
from payguard.services.webhook_processor import WebhookProcessor


def get_gateway(settings: Settings = Depends(get_settings)) -> PaymentGateway:
    """StripeGateway when a secret key is configured, FakeGateway for local dev."""
    if settings.stripe_secret_key:
        from payguard.integrations.stripe_gateway import StripeGateway

        return StripeGateway(settings.stripe_secret_key)

    from payguard.integrations.gateway_fake import FakeGateway

    return FakeGateway()


def get_notifier() -> Notifier:
    return LogNotifier()


def get_billing_store() -> BillingRecordStore:
    return BillingRecordStore(get_session_factory())


def get_webhook_ledger() -> WebhookEventLedger:
    return WebhookEventLedger(get_session_factory())


def get_subscription_service(notifier: Notifier = Depends(get_notifier)) -> SubscriptionService:
    return SubscriptionService(get_session_factory(), notifier)


def get_security_gate(
    redis: Redis = Depends(get_redis),
    store: BillingRecordStore = Depends(get_billing_store),
    settings: Settings = Depends(get_settings),
) -> PaymentSecurityGate:
    ledger = AttemptLedger(
        redis,
        window_seconds=settings.rate_limit_window_seconds,
        log_retention_seconds=settings.attempt_log_retention_seconds,
        location_ttl_seconds=settings.location_ttl_seconds,
    )
    return PaymentSecurityGate(ledger, history=store, settings=settings)


def get_payment_processor(
    redis: Redis = Depends(get_redis),
    store: BillingRecordStore = Depends(get_billing_store),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
    gate: PaymentSecurityGate = Depends(get_security_gate),
    settings: Settings = Depends(get_settings),
) -> PaymentProcessor:
    return PaymentProcessor(
        store=store,
        subscriptions=subscriptions,
        gateway=gateway,
        notifier=notifier,
        gate=gate,
        lock=RecordLock(redis, namespace="billing", ttl=settings.record_lock_ttl_seconds),
        settings=settings,
    )


def get_webhook_processor(
    redis: Redis = Depends(get_redis),
    ledger: WebhookEventLedger = Depends(get_webhook_ledger),
    store: BillingRecordStore = Depends(get_billing_store),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
    notifier: Notifier = Depends(get_notifier),
    settings: Settings = Depends(get_settings),
) -> WebhookProcessor:
    return WebhookProcessor(
        ledger=ledger,
        store=store,
        subscriptions=subscriptions,
        notifier=notifier,
        lock=RecordLock(redis, namespace="webhook", ttl=settings.record_lock_ttl_seconds),
        record_lock=RecordLock(redis, namespace="billing", ttl=settings.record_lock_ttl_seconds),
        settings=settings,
    )
