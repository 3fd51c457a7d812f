"""Reconciliation handlers - apply Stripe's state to local billing records

Every handler is an idempotent upsert: retries replay handlers, so running
one twice with the same input must leave the same state. Notifications are
queued on the context and sent by the orchestrator after commit.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from billing_webhooks.core.config import settings
from billing_webhooks.core.errors import LinkageError, PlanNotFoundError, UnmappedStatusError
from billing_webhooks.models.plan import SubscriptionPlan
from billing_webhooks.models.stripe_customer import StripeCustomer
from billing_webhooks.models.subscription import Subscription, SubscriptionStatus, BillingInterval
from billing_webhooks.models.user import User
from billing_webhooks.schemas.events import (
    StripeCheckoutSessionObject, StripeCustomerObject, StripeInvoiceObject, StripeSubscriptionObject
)
from billing_webhooks.services.notification_service import Notification, NotificationKind
from billing_webhooks.services.stripe_service import StripeGateway
from billing_webhooks.services.usage_service import initialize_quotas_for_plan

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationContext:
    """Everything a handler may touch during one attempt"""
    db: Session
    gateway: StripeGateway
    high_value_threshold: int = field(default_factory=lambda: settings.HIGH_VALUE_PAYMENT_THRESHOLD_CENTS)
    notifications: List[Notification] = field(default_factory=list)

    def queue(self, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        self.notifications.append(Notification(kind, payload))


# ============================================================================
# STATUS MAPPING
# ============================================================================

# Total over the statuses we support. "paused" is deliberately absent: whether
# it deserves its own local state is undecided, so it fails loudly for now.
STRIPE_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.INCOMPLETE_EXPIRED,
}


def map_stripe_status(stripe_status: Optional[str]) -> SubscriptionStatus:
    """Translate a Stripe subscription status

    Raises:
        UnmappedStatusError: status has no local counterpart
    """
    try:
        return STRIPE_STATUS_MAP[stripe_status]
    except KeyError:
        raise UnmappedStatusError(stripe_status)


def map_stripe_interval(stripe_interval: Optional[str]) -> BillingInterval:
    return BillingInterval.YEAR if (stripe_interval or "").upper() == "YEAR" else BillingInterval.MONTH


# ============================================================================
# HELPERS
# ============================================================================

def _from_timestamp(ts: Optional[int]) -> Optional[datetime]:
    return datetime.fromtimestamp(ts, tz=timezone.utc) if ts else None


def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timezone-aware columns back naive
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _get_subscription_by_stripe_id(stripe_subscription_id: str, db: Session) -> Optional[Subscription]:
    return db.query(Subscription).filter(
        Subscription.stripe_subscription_id == stripe_subscription_id
    ).first()


def _subscription_payload(sub_record: Subscription) -> Dict[str, Any]:
    return {
        "subscription_id": sub_record.stripe_subscription_id,
        "user_id": sub_record.user_id,
        "user_email": sub_record.user.email if sub_record.user else None,
        "plan_name": sub_record.plan.name if sub_record.plan else None,
        "status": sub_record.status,
    }


def _resolve_customer(subscription: StripeSubscriptionObject, ctx: ReconciliationContext) -> StripeCustomerObject:
    if isinstance(subscription.customer, StripeCustomerObject):
        return subscription.customer
    return ctx.gateway.retrieve_customer(subscription.customer_id)


def _resolve_user(subscription: StripeSubscriptionObject, ctx: ReconciliationContext) -> User:
    customer = _resolve_customer(subscription, ctx)
    user_id = customer.user_reference
    if not user_id:
        raise LinkageError(f"No userId found in customer metadata for subscription: {subscription.id}")

    user = ctx.db.query(User).filter(User.id == user_id).first()
    if not user:
        raise LinkageError(f"User {user_id} referenced by customer {customer.id} does not exist")
    return user


def _resolve_plan(subscription: StripeSubscriptionObject, db: Session) -> SubscriptionPlan:
    price_id = subscription.price_id
    if not price_id:
        raise PlanNotFoundError(None)

    plan = db.query(SubscriptionPlan).filter(SubscriptionPlan.stripe_price_id == price_id).first()
    if not plan:
        raise PlanNotFoundError(price_id)
    return plan


def _apply_period_fields(sub_record: Subscription, subscription: StripeSubscriptionObject) -> None:
    period_start = _from_timestamp(subscription.period_start)
    period_end = _from_timestamp(subscription.period_end)
    if period_start:
        sub_record.current_period_start = period_start
    if period_end:
        sub_record.current_period_end = period_end
    sub_record.cancel_at_period_end = subscription.cancel_at_period_end
    sub_record.canceled_at = _from_timestamp(subscription.canceled_at)


# ============================================================================
# SUBSCRIPTION HANDLERS
# ============================================================================

def handle_subscription_created(subscription: StripeSubscriptionObject, ctx: ReconciliationContext) -> None:
    db = ctx.db
    user = _resolve_user(subscription, ctx)
    plan = _resolve_plan(subscription, db)
    status = map_stripe_status(subscription.status)

    sub_record = _get_subscription_by_stripe_id(subscription.id, db)
    created = sub_record is None
    if created:
        sub_record = Subscription(stripe_subscription_id=subscription.id)
        db.add(sub_record)
        logger.info(f"Creating subscription record for user {user.id} with subscription {subscription.id}")
    else:
        logger.info(f"Subscription {subscription.id} already recorded, re-syncing")

    item = subscription.primary_item
    recurring = item.price.recurring if item else None

    sub_record.user_id = user.id
    sub_record.plan_id = plan.id
    sub_record.stripe_customer_id = subscription.customer_id
    sub_record.stripe_price_id = plan.stripe_price_id
    sub_record.status = status.value
    _apply_period_fields(sub_record, subscription)
    sub_record.trial_start = _from_timestamp(subscription.trial_start)
    sub_record.trial_end = _from_timestamp(subscription.trial_end)
    sub_record.amount = (item.price.unit_amount if item else None) or 0
    sub_record.currency = item.price.currency if item else "usd"
    sub_record.interval = map_stripe_interval(recurring.interval if recurring else None).value
    sub_record.interval_count = recurring.interval_count if recurring else 1
    db.flush()

    initialize_quotas_for_plan(sub_record.id, plan, db, reset_date=sub_record.current_period_end)

    db.refresh(sub_record)
    logger.info(f"💰 Subscription {subscription.id} synced for user {user.id}. Plan: {plan.name}, status: {status.value}")

    if created:
        ctx.queue(NotificationKind.SUBSCRIPTION_CREATED, _subscription_payload(sub_record))


def handle_subscription_updated(subscription: StripeSubscriptionObject, ctx: ReconciliationContext) -> None:
    sub_record = _get_subscription_by_stripe_id(subscription.id, ctx.db)
    if not sub_record:
        # Update raced ahead of create; the created event establishes the row
        logger.warning(f"⚠️ Subscription not found for update: {subscription.id}")
        return

    previous_status = sub_record.status
    new_status = map_stripe_status(subscription.status).value

    sub_record.status = new_status
    _apply_period_fields(sub_record, subscription)
    ctx.db.flush()

    logger.info(f"🔄 Updated subscription {subscription.id}: {previous_status} → {new_status}")

    if previous_status != new_status:
        _queue_status_change(sub_record, previous_status, new_status, ctx)


def _queue_status_change(sub_record: Subscription, previous_status: str, new_status: str,
                         ctx: ReconciliationContext) -> None:
    payload = _subscription_payload(sub_record)
    payload["previous_status"] = previous_status

    if previous_status == SubscriptionStatus.TRIALING.value and new_status == SubscriptionStatus.ACTIVE.value:
        ctx.queue(NotificationKind.TRIAL_CONVERTED, payload)
    elif new_status == SubscriptionStatus.PAST_DUE.value:
        ctx.queue(NotificationKind.SUBSCRIPTION_PAST_DUE, payload)
    elif new_status == SubscriptionStatus.UNPAID.value:
        ctx.queue(NotificationKind.SUBSCRIPTION_UNPAID, payload)


def handle_subscription_deleted(subscription: StripeSubscriptionObject, ctx: ReconciliationContext) -> None:
    sub_record = _get_subscription_by_stripe_id(subscription.id, ctx.db)
    if not sub_record:
        logger.warning(f"⚠️ Subscription not found for deletion: {subscription.id}")
        return

    previous_status = sub_record.status
    sub_record.status = SubscriptionStatus.CANCELED.value
    # Prefer Stripe's timestamps so a replay lands on the same value
    sub_record.canceled_at = (
        _from_timestamp(subscription.canceled_at)
        or _from_timestamp(subscription.ended_at)
        or sub_record.canceled_at
        or datetime.now(timezone.utc)
    )
    ctx.db.flush()

    logger.info(f"❌ Canceled subscription: {subscription.id}")

    if previous_status != SubscriptionStatus.CANCELED.value:
        ctx.queue(NotificationKind.SUBSCRIPTION_CANCELED, _subscription_payload(sub_record))


# ============================================================================
# INVOICE HANDLERS
# ============================================================================

def _get_invoice_subscription(invoice: StripeInvoiceObject, ctx: ReconciliationContext) -> Optional[Subscription]:
    subscription_id = invoice.subscription_id
    if not subscription_id:
        # One-off purchase, nothing to reconcile
        logger.debug(f"Invoice {invoice.id} has no subscription")
        return None

    sub_record = _get_subscription_by_stripe_id(subscription_id, ctx.db)
    if not sub_record:
        logger.warning(f"⚠️ Subscription {subscription_id} not found for invoice: {invoice.id}")
    return sub_record


def handle_invoice_payment_succeeded(invoice: StripeInvoiceObject, ctx: ReconciliationContext) -> None:
    sub_record = _get_invoice_subscription(invoice, ctx)
    if not sub_record:
        return

    logger.info(
        f"💳 Payment succeeded for subscription {sub_record.stripe_subscription_id}: "
        f"{invoice.amount_paid / 100} {invoice.currency}"
    )

    new_period_end = _from_timestamp(invoice.period_end)
    current_period_end = _as_utc(sub_record.current_period_end)
    if new_period_end and (current_period_end is None or new_period_end > current_period_end):
        sub_record.current_period_end = new_period_end
        ctx.db.flush()

    payload = _subscription_payload(sub_record)
    payload.update({"invoice_id": invoice.id, "amount": invoice.amount_paid, "currency": invoice.currency})
    ctx.queue(NotificationKind.PAYMENT_SUCCEEDED, payload)


def handle_invoice_payment_failed(invoice: StripeInvoiceObject, ctx: ReconciliationContext) -> None:
    sub_record = _get_invoice_subscription(invoice, ctx)
    if not sub_record:
        return

    logger.warning(
        f"⚠️ Payment failed for subscription {sub_record.stripe_subscription_id}: "
        f"{invoice.amount_due / 100} {invoice.currency}"
    )

    payload = _subscription_payload(sub_record)
    payload.update({"invoice_id": invoice.id, "amount": invoice.amount_due, "currency": invoice.currency})
    ctx.queue(NotificationKind.PAYMENT_FAILED, payload)

    if invoice.amount_due >= ctx.high_value_threshold:
        ctx.queue(NotificationKind.HIGH_VALUE_PAYMENT_FAILED, dict(payload))


# ============================================================================
# CUSTOMER & CHECKOUT HANDLERS
# ============================================================================

def _sync_customer(customer: StripeCustomerObject, ctx: ReconciliationContext) -> Optional[StripeCustomer]:
    db = ctx.db
    mapping = db.query(StripeCustomer).filter(StripeCustomer.stripe_customer_id == customer.id).first()

    user_id = customer.user_reference
    if user_id:
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise LinkageError(f"User {user_id} referenced by customer {customer.id} does not exist")
        if mapping is None:
            mapping = StripeCustomer(stripe_customer_id=customer.id, user_id=user.id)
            db.add(mapping)
        mapping.user_id = user.id
        user.stripe_customer_id = customer.id

    if mapping is None:
        logger.info(f"Customer {customer.id} carries no userId and is not mapped; nothing to sync")
        return None

    mapping.email = customer.email
    mapping.name = customer.name
    db.flush()
    return mapping


def handle_customer_created(customer: StripeCustomerObject, ctx: ReconciliationContext) -> None:
    mapping = _sync_customer(customer, ctx)
    if mapping:
        logger.info(f"Created customer mapping {customer.id} → user {mapping.user_id}")


def handle_customer_updated(customer: StripeCustomerObject, ctx: ReconciliationContext) -> None:
    mapping = _sync_customer(customer, ctx)
    if mapping:
        logger.info(f"Updated customer {customer.id}")


def handle_checkout_session_completed(session: StripeCheckoutSessionObject, ctx: ReconciliationContext) -> None:
    # customer.subscription.created is authoritative; this is for traceability only
    if session.mode == "subscription" and session.subscription:
        logger.info(f"Checkout session {session.id} completed for subscription {session.subscription}")
    else:
        logger.info(f"Checkout session {session.id} completed (mode={session.mode})")
