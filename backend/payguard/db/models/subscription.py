"""Subscription model: the service agreement a billing record may belong to."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Integer, String, Text, Uuid

from payguard.db.base import Base


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(String(255), nullable=False, index=True)
    status = Column(String(50), nullable=False, default="Active")  # SubscriptionStatus values

    # Payment failure tracking
    failed_payment_attempts = Column(Integer, nullable=False, default=0)
    last_payment_failed_at = Column(DateTime(timezone=True), nullable=True)
    last_payment_error = Column(Text, nullable=True)
    suspended_at = Column(DateTime(timezone=True), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC))

    __mapper_args__ = {"version_id_col": version}
