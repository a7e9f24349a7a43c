"""PayGuard FastAPI application."""

import asyncio
import signal
import uuid
from contextlib import asynccontextmanager

# Logging is configured before the remaining payguard imports so no module
# grabs a structlog logger with the default processor chain.
from payguard.core.config import get_settings
from payguard.core.logging import configure_structlog

_boot_settings = get_settings()
configure_structlog(log_level="DEBUG" if _boot_settings.debug else "INFO", json_logs=not _boot_settings.debug)

import structlog  # noqa: E402
from fastapi import FastAPI, Request  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402
from starlette.exceptions import HTTPException  # noqa: E402

from payguard.api.routes import api_router  # noqa: E402
from payguard.core.exceptions import PayGuardError  # noqa: E402
from payguard.core.locking import RecordLock  # noqa: E402
from payguard.db import close_db, close_redis, get_redis, get_session_factory, init_db, init_redis  # noqa: E402
from payguard.integrations.notifier import LogNotifier  # noqa: E402
from payguard.middleware.correlation import get_correlation_id, setup_correlation_middleware  # noqa: E402
from payguard.queue.webhook_sweeper import WebhookRetrySweeper  # noqa: E402
from payguard.services.billing_store import BillingRecordStore  # noqa: E402
from payguard.services.subscription_service import SubscriptionService  # noqa: E402
from payguard.services.webhook_ledger import WebhookEventLedger  # noqa: E402
from payguard.services.webhook_processor import WebhookProcessor  # noqa: E402

logger = structlog.get_logger(__name__)


def build_webhook_sweeper() -> WebhookRetrySweeper:
    """Sweeper over the shared engine and Redis client; call after init_db/init_redis."""
    settings = get_settings()
    sessions = get_session_factory()
    notifier = LogNotifier()
    ledger = WebhookEventLedger(sessions)

    processor = WebhookProcessor(
        ledger=ledger,
        store=BillingRecordStore(sessions),
        subscriptions=SubscriptionService(sessions, notifier),
        notifier=notifier,
        lock=RecordLock(get_redis(), namespace="webhook", ttl=settings.record_lock_ttl_seconds),
        record_lock=RecordLock(get_redis(), namespace="billing", ttl=settings.record_lock_ttl_seconds),
        settings=settings,
    )
    return WebhookRetrySweeper(
        processor,
        ledger,
        interval_seconds=settings.webhook_sweep_interval_seconds,
        retention_days=settings.webhook_retention_days,
    )


def _install_drain_signal(app: FastAPI) -> None:
    app.state.shutting_down = False

    def _on_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("draining", signal="SIGTERM")

    signal.signal(signal.SIGTERM, _on_sigterm)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    _install_drain_signal(app)
    logger.info("payguard_starting", app_name=settings.app_name, debug=settings.debug)

    await init_db()
    await init_redis()

    sweeper: WebhookRetrySweeper | None = None
    sweep_task: asyncio.Task | None = None
    if settings.webhook_sweeper_enabled:
        sweeper = build_webhook_sweeper()
        sweep_task = asyncio.create_task(sweeper.run(), name="webhook-retry-sweeper")
    logger.info("payguard_ready", webhook_sweeper=sweeper is not None)

    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.stop()
            await sweep_task
        await close_redis()
        await close_db()
        logger.info("payguard_stopped")


def _error_response(request: Request, status_code: int, body: dict, *, event: str, level: str, **log_fields) -> JSONResponse:
    """Log the failure under a fresh debug_id and return it to the caller."""
    debug_id = uuid.uuid4().hex
    getattr(logger, level)(
        event,
        status_code=status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        method=request.method,
        path=request.url.path,
        **log_fields,
    )
    return JSONResponse(status_code=status_code, content={**body, "debug_id": debug_id})


async def payguard_exception_handler(request: Request, exc: PayGuardError) -> JSONResponse:
    error_type = type(exc).__name__
    return _error_response(
        request,
        exc.status_code,
        {"detail": str(exc), "error_type": error_type},
        event="payguard_error",
        level="warning",
        error_type=error_type,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error_response(
        request,
        exc.status_code,
        {"detail": exc.detail},
        event="http_error",
        level="info" if exc.status_code < 500 else "error",
        detail=exc.detail,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unexpected failures: traceback goes to the log, the client sees a bare 500."""
    return _error_response(
        request,
        500,
        {"detail": "Internal server error"},
        event="unhandled_error",
        level="error",
        error_type=type(exc).__name__,
        exc_info=exc,
    )


def register_exception_handlers(app: FastAPI) -> None:
    handlers = {
        PayGuardError: payguard_exception_handler,
        HTTPException: http_exception_handler,
        Exception: generic_exception_handler,
    }
    for exc_class, handler in handlers.items():
        app.add_exception_handler(exc_class, handler)


def create_app() -> FastAPI:
    settings = get_settings()
    application = FastAPI(
        title=settings.app_name,
        version="0.1.0",
        description="Billing records, bounded payment retries, idempotent webhooks and payment fraud controls",
        lifespan=lifespan,
    )
    setup_correlation_middleware(application)
    register_exception_handlers(application)
    application.include_router(api_router, prefix="/api")
    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("payguard.main:app", host="0.0.0.0", port=8000, reload=_boot_settings.debug)
