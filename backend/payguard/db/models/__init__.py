"""Re-export all models so Base.metadata sees them."""

from payguard.db.models.billing_record import BillingRecord
from payguard.db.models.subscription import Subscription
from payguard.db.models.webhook_event import WebhookEvent

__all__ = [
    "BillingRecord",
    "Subscription",
    "WebhookEvent",
]
