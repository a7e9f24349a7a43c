"""PaymentGateway protocol: the seam between the processor and the payment provider.

Implementations:
- StripeGateway (payguard.integrations.stripe_gateway): production, stripe async SDK
- FakeGateway (payguard.integrations.gateway_fake): scenario-driven test double

Contract:
- A decline is a returned ChargeResult, never an exception.
- Any raised exception is treated as a transport / provider failure and retried.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum
from typing import Protocol, runtime_checkable


class ChargeStatus(StrEnum):
    SUCCEEDED = "succeeded"
    DECLINED = "declined"


@dataclass(frozen=True)
class ChargeResult:
    status: ChargeStatus
    correlation_id: str | None = None  # gateway payment intent id
    error_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == ChargeStatus.SUCCEEDED


@runtime_checkable
class PaymentGateway(Protocol):
    async def get_default_payment_method(self, owner_id: str) -> str | None:
        """Return the owner's default payment method id, or None if they have none."""
        ...

    async def charge(
        self,
        method: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> ChargeResult:
        """Charge ``amount`` to ``method``. The same idempotency key never charges twice.

        ``metadata`` is attached to the payment so its webhook events can be
        traced back to the billing record and the attempt that created it.
        """
        ...

    async def refund(self, correlation_id: str, amount: Decimal) -> bool:
        """Refund ``amount`` of the charge identified by ``correlation_id``."""
        ...


RECORD_ID_KEY = "billing_record_id"
RECORD_VERSION_KEY = "billing_record_version"


def attempt_metadata(record_id: object, version: int) -> dict[str, str]:
    """Metadata tying a charge to the billing record version it was made against."""
    return {RECORD_ID_KEY: str(record_id), RECORD_VERSION_KEY: str(version)}
