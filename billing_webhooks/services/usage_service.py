"""Usage quota service - quota limits derived from subscription plans"""
import logging
from typing import Dict, List, Optional
from datetime import datetime

from sqlalchemy.orm import Session

from billing_webhooks.models.plan import SubscriptionPlan
from billing_webhooks.models.usage_quota import UsageQuota, UsageMetricType

logger = logging.getLogger(__name__)

# Alert thresholds (percent of limit) per metric
ALERT_THRESHOLDS: Dict[UsageMetricType, int] = {
    UsageMetricType.USERS: 80,
    UsageMetricType.PROJECTS: 80,
    UsageMetricType.STORAGE: 85,
    UsageMetricType.API_CALLS: 90,
}

# API call allowance for plans without an explicit max_api_calls
DEFAULT_API_CALL_LIMITS = {
    "STARTER": 10_000,
    "PRO": 100_000,
}
ENTERPRISE_API_CALL_LIMIT = 1_000_000


def get_plan_api_call_limit(plan: SubscriptionPlan) -> int:
    if plan.max_api_calls:
        return plan.max_api_calls
    return DEFAULT_API_CALL_LIMITS.get((plan.name or "").upper(), ENTERPRISE_API_CALL_LIMIT)


def get_plan_limits(plan: SubscriptionPlan) -> Dict[UsageMetricType, int]:
    """Quota limits for a plan; metrics the plan leaves unset are unlimited"""
    limits = {}
    if plan.max_users:
        limits[UsageMetricType.USERS] = plan.max_users
    if plan.max_projects:
        limits[UsageMetricType.PROJECTS] = plan.max_projects
    if plan.max_storage:
        limits[UsageMetricType.STORAGE] = int(plan.max_storage)
    # Every plan meters API calls
    limits[UsageMetricType.API_CALLS] = get_plan_api_call_limit(plan)
    return limits


def update_quota(
    subscription_id: int,
    metric_type: UsageMetricType,
    limit_amount: int,
    db: Session,
    hard_limit: bool = True,
    alert_threshold: Optional[int] = None,
    reset_date: Optional[datetime] = None,
) -> UsageQuota:
    """Create or update the quota for one metric

    Updating resets the exceeded/alert flags but keeps the usage counted so far.
    """
    quota = db.query(UsageQuota).filter(
        UsageQuota.subscription_id == subscription_id,
        UsageQuota.metric_type == metric_type.value
    ).first()

    if quota is None:
        quota = UsageQuota(
            subscription_id=subscription_id,
            metric_type=metric_type.value,
            current_amount=0,
        )
        db.add(quota)

    quota.limit_amount = limit_amount
    quota.hard_limit = hard_limit
    quota.alert_threshold = alert_threshold
    quota.reset_date = reset_date
    quota.exceeded = False
    quota.alert_sent = False
    db.flush()
    return quota


def initialize_quotas_for_plan(
    subscription_id: int,
    plan: SubscriptionPlan,
    db: Session,
    reset_date: Optional[datetime] = None,
) -> List[UsageQuota]:
    """Upsert one quota per metric the plan limits"""
    quotas = [
        update_quota(
            subscription_id,
            metric_type,
            limit,
            db,
            alert_threshold=ALERT_THRESHOLDS[metric_type],
            reset_date=reset_date,
        )
        for metric_type, limit in get_plan_limits(plan).items()
    ]
    logger.info(f"📊 Usage quotas initialized for subscription {subscription_id}: {len(quotas)} metrics")
    return quotas
