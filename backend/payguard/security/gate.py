"""Payment security gate: rate limits, suspicious-activity checks, amount limits.

Evaluated before every gateway charge. Checks run in order and short-circuit:

1. Rate limiting (per user, per origin IP)
2. Suspicious activity (geographic anomaly, risk score, unusual amount)
3. Amount limits (relative to history, absolute ceiling)

Any internal error denies the payment.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Protocol, runtime_checkable

import structlog

from payguard.core.config import Settings, get_settings
from payguard.domain.risk import (
    PaymentAttempt,
    PaymentHistory,
    calculate_risk_score,
    is_unusual_amount,
    max_allowed_amount,
)
from payguard.security.attempts import AttemptLedger

logger = structlog.get_logger(__name__)


@runtime_checkable
class GeoResolver(Protocol):
    """Maps an origin IP to an ISO country code, or None when unknown."""

    async def country_for(self, ip: str) -> str | None: ...


class UnknownGeoResolver:
    """Default resolver: location is never known, so no geographic anomaly fires."""

    async def country_for(self, ip: str) -> str | None:
        return None


@runtime_checkable
class PaymentHistoryProvider(Protocol):
    async def get_payment_history(self, owner_id: str) -> PaymentHistory: ...


@dataclass(frozen=True)
class PaymentRequest:
    user_id: str
    amount: Decimal
    origin_ip: str | None = None


@dataclass(frozen=True)
class GateDecision:
    approved: bool
    reason: str | None = None
    check: str | None = None  # rate_limit | suspicious_activity | amount_limit | error
    risk_score: int = 0

    @classmethod
    def approve(cls, risk_score: int = 0) -> "GateDecision":
        return cls(approved=True, risk_score=risk_score)

    @classmethod
    def deny(cls, check: str, reason: str, risk_score: int = 0) -> "GateDecision":
        return cls(approved=False, check=check, reason=reason, risk_score=risk_score)


@dataclass
class SecurityReport:
    user_id: str
    start: datetime
    end: datetime
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    risk_score: int = 0
    average_amount: Decimal = Decimal("0")
    origins: list[str] = field(default_factory=list)


class PaymentSecurityGate:
    """Approves or denies payment attempts before they reach the gateway."""

    def __init__(
        self,
        ledger: AttemptLedger,
        history: PaymentHistoryProvider,
        geo: GeoResolver | None = None,
        settings: Settings | None = None,
    ):
        self.ledger = ledger
        self.history = history
        self.geo = geo or UnknownGeoResolver()
        self.settings = settings or get_settings()

    async def evaluate(self, request: PaymentRequest, now: datetime | None = None) -> GateDecision:
        """Run all checks. Fails closed: an unexpected error is a denial."""
        now = now or datetime.now(UTC)
        try:
            decision = await self._evaluate(request, now)
        except Exception as exc:
            logger.error(
                "payment_gate_error",
                user_id=request.user_id,
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            decision = GateDecision.deny("error", "Security validation failed")

        log = logger.info if decision.approved else logger.warning
        log(
            "payment_gate_decision",
            user_id=request.user_id,
            amount=str(request.amount),
            origin_ip=request.origin_ip,
            approved=decision.approved,
            check=decision.check,
            reason=decision.reason,
            risk_score=decision.risk_score,
        )
        return decision

    async def _evaluate(self, request: PaymentRequest, now: datetime) -> GateDecision:
        rate_limited = await self._check_rate_limits(request, now)
        if rate_limited is not None:
            return rate_limited

        history = await self.history.get_payment_history(request.user_id)

        attempts = await self.ledger.recent_attempts(request.user_id, now)
        risk_score = calculate_risk_score(
            attempts,
            now=now,
            high_amount_threshold=Decimal(str(self.settings.risk_high_amount_threshold)),
            rapid_window=timedelta(seconds=self.settings.risk_rapid_window_seconds),
        )

        if await self._is_geographic_anomaly(request):
            return GateDecision.deny("suspicious_activity", "Suspicious payment activity detected", risk_score)

        if risk_score > self.settings.risk_score_threshold:
            return GateDecision.deny("suspicious_activity", "Suspicious payment activity detected", risk_score)

        if is_unusual_amount(request.amount, history, Decimal(str(self.settings.unusual_amount_multiplier))):
            return GateDecision.deny("suspicious_activity", "Suspicious payment activity detected", risk_score)

        limit = max_allowed_amount(
            history,
            multiplier=Decimal(str(self.settings.max_amount_multiplier)),
            absolute_ceiling=Decimal(str(self.settings.absolute_amount_ceiling)),
        )
        if request.amount > limit:
            return GateDecision.deny("amount_limit", "Payment amount exceeds allowed limits", risk_score)

        return GateDecision.approve(risk_score)

    async def _check_rate_limits(self, request: PaymentRequest, now: datetime) -> GateDecision | None:
        user_hit = await self.ledger.hit("user", request.user_id, self.settings.rate_limit_user_per_hour, now)
        if not user_hit.allowed:
            return GateDecision.deny("rate_limit", "Too many payment attempts. Please try again later.")

        if request.origin_ip:
            ip_hit = await self.ledger.hit("ip", request.origin_ip, self.settings.rate_limit_ip_per_hour, now)
            if not ip_hit.allowed:
                await self.ledger.rollback(user_hit)
                return GateDecision.deny("rate_limit", "Too many payment attempts. Please try again later.")

        return None

    async def _is_geographic_anomaly(self, request: PaymentRequest) -> bool:
        if not request.origin_ip:
            return False

        country = await self.geo.country_for(request.origin_ip)
        if country is None:
            return False

        established = await self.ledger.get_location(request.user_id)
        return established is not None and established != country

    # ------------------------------------------------------------------
    # Attempt logging and reporting
    # ------------------------------------------------------------------

    async def log_payment_attempt(
        self,
        user_id: str,
        amount: Decimal,
        success: bool,
        origin_ip: str | None = None,
        error_message: str | None = None,
        now: datetime | None = None,
    ) -> None:
        """Record a gateway outcome for risk scoring. Never raises."""
        now = now or datetime.now(UTC)
        try:
            await self.ledger.record_attempt(
                PaymentAttempt(
                    user_id=user_id,
                    amount=Decimal(amount),
                    success=success,
                    at=now,
                    origin_ip=origin_ip,
                    error_message=error_message,
                )
            )
            # First successful payment from a resolvable origin establishes the user's country
            if success and origin_ip and await self.ledger.get_location(user_id) is None:
                country = await self.geo.country_for(origin_ip)
                if country:
                    await self.ledger.set_location(user_id, country)
        except Exception as exc:
            logger.error("payment_attempt_log_failed", user_id=user_id, error=str(exc), exc_info=True)
            return

        logger.info(
            "payment_attempt_logged",
            user_id=user_id,
            amount=str(amount),
            success=success,
            origin_ip=origin_ip,
            error=error_message,
        )

    async def generate_security_report(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        now: datetime | None = None,
    ) -> SecurityReport:
        """Summarize logged attempts in ``[start, end]`` plus the current risk score."""
        now = now or datetime.now(UTC)
        attempts = await self.ledger.attempts_between(user_id, start, end)
        recent = await self.ledger.recent_attempts(user_id, now)

        report = SecurityReport(user_id=user_id, start=start, end=end)
        report.total_attempts = len(attempts)
        report.successful_attempts = sum(1 for a in attempts if a.success)
        report.failed_attempts = report.total_attempts - report.successful_attempts
        report.risk_score = calculate_risk_score(
            recent,
            now=now,
            high_amount_threshold=Decimal(str(self.settings.risk_high_amount_threshold)),
            rapid_window=timedelta(seconds=self.settings.risk_rapid_window_seconds),
        )
        if attempts:
            total = sum((a.amount for a in attempts), Decimal("0"))
            report.average_amount = (total / len(attempts)).quantize(Decimal("0.01"))
        report.origins = sorted({a.origin_ip for a in attempts if a.origin_ip})
        return report
