"""FakeGateway: scenario-based test double for the PaymentGateway protocol.

Scenarios:
- happy_path: every charge and refund succeeds
- card_declined: every charge is declined
- decline_then_success: first charge declined, later charges succeed
- flaky_network: first charge raises ConnectionError, later charges succeed
- gateway_down: every charge raises ConnectionError
- no_payment_method: the owner has no default payment method
- refund_rejected: charges succeed, refunds return False
- refund_error: charges succeed, refunds raise ConnectionError

All calls return instantly and are recorded for assertions.
"""

from decimal import Decimal

from payguard.integrations.gateway import ChargeResult, ChargeStatus

DECLINE_MESSAGE = "Your card was declined."


class FakeGateway:
    VALID_SCENARIOS = {
        "happy_path",
        "card_declined",
        "decline_then_success",
        "flaky_network",
        "gateway_down",
        "no_payment_method",
        "refund_rejected",
        "refund_error",
    }

    def __init__(self, scenario: str = "happy_path"):
        if scenario not in self.VALID_SCENARIOS:
            raise ValueError(f"Unknown scenario: {scenario}. Valid scenarios: {self.VALID_SCENARIOS}")
        self.scenario = scenario
        self.charges: list[dict] = []
        self.refunds: list[dict] = []
        self._charged_keys: dict[str, ChargeResult] = {}

    @property
    def charge_count(self) -> int:
        return len(self.charges)

    async def get_default_payment_method(self, owner_id: str) -> str | None:
        if self.scenario == "no_payment_method":
            return None
        return f"pm_fake_{owner_id}"

    async def charge(
        self,
        method: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> ChargeResult:
        self.charges.append(
            {
                "method": method,
                "amount": Decimal(amount),
                "currency": currency,
                "idempotency_key": idempotency_key,
                "metadata": dict(metadata or {}),
            }
        )
        attempt = len(self.charges)

        # Providers replay the stored result for a repeated idempotency key
        if idempotency_key in self._charged_keys:
            return self._charged_keys[idempotency_key]

        if self.scenario == "gateway_down" or (self.scenario == "flaky_network" and attempt == 1):
            raise ConnectionError("Connection to payment gateway timed out")

        if self.scenario == "card_declined" or (self.scenario == "decline_then_success" and attempt == 1):
            return ChargeResult(
                status=ChargeStatus.DECLINED,
                correlation_id=f"pi_fake_{attempt}",
                error_message=DECLINE_MESSAGE,
            )

        result = ChargeResult(status=ChargeStatus.SUCCEEDED, correlation_id=f"pi_fake_{attempt}")
        self._charged_keys[idempotency_key] = result
        return result

    async def refund(self, correlation_id: str, amount: Decimal) -> bool:
        self.refunds.append({"correlation_id": correlation_id, "amount": Decimal(amount)})

        if self.scenario == "refund_error":
            raise ConnectionError("Connection to payment gateway timed out")
        return self.scenario != "refund_rejected"
