"""Shared test fixtures: fake Redis, file-backed SQLite, fake gateway and wired services."""

import random

import pytest
from fakeredis import FakeAsyncRedis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from payguard.core.config import Settings
from payguard.core.locking import RecordLock
from payguard.db.base import Base
from payguard.integrations.gateway_fake import FakeGateway
from payguard.security.attempts import AttemptLedger
from payguard.security.gate import PaymentSecurityGate
from payguard.services.billing_store import BillingRecordStore
from payguard.services.payment_processor import PaymentProcessor
from payguard.services.subscription_service import SubscriptionService
from payguard.services.webhook_ledger import WebhookEventLedger
from payguard.services.webhook_processor import WebhookProcessor


class RecordingNotifier:
    """Notifier test double that records every call as (method, args)."""

    def __init__(self):
        self.calls: list[tuple[str, tuple]] = []

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    async def send_payment_success(self, record):
        self.calls.append(("send_payment_success", (record,)))

    async def send_payment_failed(self, record, reason):
        self.calls.append(("send_payment_failed", (record, reason)))

    async def send_subscription_suspended(self, subscription, reason):
        self.calls.append(("send_subscription_suspended", (subscription, reason)))

    async def send_refund_processed(self, record, refund):
        self.calls.append(("send_refund_processed", (record, refund)))


class RecordingSleep:
    """Replaces asyncio.sleep in the processor; records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def settings():
    """Production thresholds with zero-length backoff."""
    return Settings(
        _env_file=None,
        backoff_unit_seconds=0,
        decline_retry_floor_seconds=0,
        max_jitter_seconds=0,
        stripe_secret_key="",
        stripe_webhook_secret="whsec_test",
        webhook_sweeper_enabled=False,
    )


@pytest.fixture
async def redis():
    """Provide fakeredis async client."""
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
async def engine(tmp_path):
    """SQLite engine with all tables created. File-backed so sessions get separate connections."""
    import payguard.db.models  # noqa: F401

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payguard.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def gateway():
    return FakeGateway(scenario="happy_path")


@pytest.fixture
def store(session_factory):
    return BillingRecordStore(session_factory)


@pytest.fixture
def subscriptions(session_factory, notifier):
    return SubscriptionService(session_factory, notifier)


@pytest.fixture
def attempt_ledger(redis, settings):
    return AttemptLedger(redis, window_seconds=settings.rate_limit_window_seconds)


@pytest.fixture
def gate(attempt_ledger, store, settings):
    return PaymentSecurityGate(attempt_ledger, history=store, settings=settings)


@pytest.fixture
def webhook_ledger(session_factory):
    return WebhookEventLedger(session_factory)


@pytest.fixture
def make_processor(store, subscriptions, notifier, gate, redis, settings, sleeper):
    """Factory: PaymentProcessor wired to fakes, with a chosen gateway."""

    def _make(gateway, **overrides) -> PaymentProcessor:
        kwargs = {
            "store": store,
            "subscriptions": subscriptions,
            "gateway": gateway,
            "notifier": notifier,
            "gate": gate,
            "lock": RecordLock(redis, namespace="billing"),
            "settings": settings,
            "sleep": sleeper,
            "rng": random.Random(7),
        }
        kwargs.update(overrides)
        return PaymentProcessor(**kwargs)

    return _make


@pytest.fixture
def processor(make_processor, gateway):
    return make_processor(gateway)


@pytest.fixture
def webhook_processor(webhook_ledger, store, subscriptions, notifier, redis, settings):
    return WebhookProcessor(
        ledger=webhook_ledger,
        store=store,
        subscriptions=subscriptions,
        notifier=notifier,
        lock=RecordLock(redis, namespace="webhook"),
        record_lock=RecordLock(redis, namespace="billing"),
        settings=settings,
    )
