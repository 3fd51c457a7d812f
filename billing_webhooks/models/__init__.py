"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from billing_webhooks.models.base import Base
from billing_webhooks.models.user import User
from billing_webhooks.models.plan import SubscriptionPlan
from billing_webhooks.models.subscription import Subscription, SubscriptionStatus, BillingInterval
from billing_webhooks.models.usage_quota import UsageQuota, UsageMetricType
from billing_webhooks.models.stripe_customer import StripeCustomer
from billing_webhooks.models.webhook_event import WebhookEvent

# Export all for convenience
__all__ = [
    "Base", "User", "SubscriptionPlan", "Subscription", "SubscriptionStatus",
    "BillingInterval", "UsageQuota", "UsageMetricType", "StripeCustomer", "WebhookEvent"
]
