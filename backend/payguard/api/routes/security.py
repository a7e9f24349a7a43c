"""Security routes: per-user payment security report."""

from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends

from payguard.api.deps import get_security_gate
from payguard.schemas.billing import SecurityReportResponse
from payguard.security.gate import PaymentSecurityGate

router = APIRouter()


@router.get("/users/{user_id}/report", response_model=SecurityReportResponse)
async def get_security_report(
    user_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
    gate: PaymentSecurityGate = Depends(get_security_gate),
):
    """Attempt summary for ``[start, end]``, defaulting to the last 24 hours."""
    end = end or datetime.now(UTC)
    start = start or end - timedelta(hours=24)
    report = await gate.generate_security_report(user_id, start, end)
    return SecurityReportResponse(
        user_id=report.user_id,
        start=report.start,
        end=report.end,
        total_attempts=report.total_attempts,
        successful_attempts=report.successful_attempts,
        failed_attempts=report.failed_attempts,
        risk_score=report.risk_score,
        average_amount=report.average_amount,
        origins=report.origins,
    )
