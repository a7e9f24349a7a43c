"""WebhookEvent model: idempotency and retry ledger for inbound gateway events."""

from datetime import UTC, datetime

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String, Text

from payguard.db.base import Base


class WebhookEvent(Base):
    """One row per gateway event id. The primary key is the dedupe guarantee."""

    __tablename__ = "webhook_events"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False, index=True)

    success = Column(Boolean, nullable=False, default=False, index=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    error_message = Column(Text, nullable=True)

    received_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC), index=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    processing_duration_ms = Column(Integer, nullable=True)

    # "metadata" is reserved on declarative classes
    event_metadata = Column("metadata", Text, nullable=True)
    payload = Column(Text, nullable=True)  # Raw event JSON, used for re-delivery

    __table_args__ = (CheckConstraint("retry_count <= max_retries", name="ck_webhook_events_retry_bound"),)

    @property
    def is_permanently_failed(self) -> bool:
        return not self.success and self.retry_count >= self.max_retries
