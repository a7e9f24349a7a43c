"""StripeGateway: PaymentGateway backed by the stripe async SDK.

Card declines come back as ChargeResult(DECLINED). Every other Stripe error
propagates so the processor takes its exception backoff path. Only the
read-only payment-method lookup is retried in place.
"""

from decimal import Decimal

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from payguard.core.config import get_settings
from payguard.integrations.gateway import ChargeResult, ChargeStatus

logger = structlog.get_logger(__name__)

ZERO_DECIMAL_CURRENCIES = {"jpy", "krw", "vnd", "clp", "pyg", "ugx", "xaf", "xof"}


def _to_minor_units(amount: Decimal, currency: str) -> int:
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return int(Decimal(amount).quantize(Decimal("1")))
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


def _search_literal(value: str) -> str:
    """Quote ``value`` for a Stripe search query string clause."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


class StripeGateway:
    def __init__(self, api_key: str | None = None):
        self.api_key = api_key or get_settings().stripe_secret_key

    def _configure(self) -> None:
        stripe.api_key = self.api_key

    @retry(
        retry=retry_if_exception_type((stripe.APIConnectionError, stripe.RateLimitError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
        before_sleep=lambda rs: logger.warning(
            "stripe_lookup_retrying",
            attempt=rs.attempt_number,
            sleep_seconds=rs.next_action.sleep,
        ),
    )
    async def get_default_payment_method(self, owner_id: str) -> str | None:
        """Find the Stripe customer tagged with ``owner_id`` and return its default method."""
        self._configure()
        result = await stripe.Customer.search_async(query=f"metadata['owner_id']:{_search_literal(owner_id)}", limit=1)
        if not result.data:
            logger.info("stripe_customer_not_found", owner_id=owner_id)
            return None

        customer = result.data[0]
        invoice_settings = getattr(customer, "invoice_settings", None)
        method = getattr(invoice_settings, "default_payment_method", None)
        if method is None:
            return None
        # Expanded objects carry the id as an attribute
        return method if isinstance(method, str) else method.id

    async def charge(
        self,
        method: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> ChargeResult:
        self._configure()
        payment_method = await stripe.PaymentMethod.retrieve_async(method)

        try:
            intent = await stripe.PaymentIntent.create_async(
                amount=_to_minor_units(amount, currency),
                currency=currency.lower(),
                customer=getattr(payment_method, "customer", None),
                payment_method=method,
                confirm=True,
                off_session=True,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as exc:
            error = exc.error
            intent = getattr(error, "payment_intent", None) if error else None
            correlation_id = getattr(intent, "id", None)
            logger.info("stripe_charge_declined", code=exc.code, correlation_id=correlation_id)
            return ChargeResult(
                status=ChargeStatus.DECLINED,
                correlation_id=correlation_id,
                error_message=exc.user_message or str(exc),
            )

        if intent.status == "succeeded":
            return ChargeResult(status=ChargeStatus.SUCCEEDED, correlation_id=intent.id)

        last_error = getattr(intent, "last_payment_error", None)
        return ChargeResult(
            status=ChargeStatus.DECLINED,
            correlation_id=intent.id,
            error_message=getattr(last_error, "message", None) or f"Payment intent status: {intent.status}",
        )

    async def refund(self, correlation_id: str, amount: Decimal) -> bool:
        self._configure()
        intent = await stripe.PaymentIntent.retrieve_async(correlation_id)
        refund = await stripe.Refund.create_async(
            payment_intent=correlation_id,
            amount=_to_minor_units(amount, intent.currency),
        )
        logger.info("stripe_refund_created", correlation_id=correlation_id, refund_status=refund.status)
        return refund.status in ("succeeded", "pending")
