"""Notification fan-out - best-effort user and operator alerts

``NotificationService.notify`` never raises. A broken email or Slack
integration must not make a reconciled webhook look failed, or Stripe would
redeliver an event that is already applied.
"""
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
import resend

from billing_webhooks.core.config import settings
from billing_webhooks.core.logging import notification_logger
from billing_webhooks.core.metrics import notifications_counter

logger = logging.getLogger(__name__)


class NotificationKind(str, enum.Enum):
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    TRIAL_CONVERTED = "trial_converted"
    SUBSCRIPTION_PAST_DUE = "subscription_past_due"
    SUBSCRIPTION_UNPAID = "subscription_unpaid"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    HIGH_VALUE_PAYMENT_FAILED = "high_value_payment_failed"
    WEBHOOK_PROCESSING_FAILED = "webhook_processing_failed"
    WEBHOOK_INTEGRITY_FAILURE = "webhook_integrity_failure"


class Audience(str, enum.Enum):
    USER = "user"      # email to the subscriber
    TEAM = "team"      # Slack channel
    ADMIN = "admin"    # email to the operator inbox


@dataclass(frozen=True)
class Route:
    audiences: tuple
    slack_channel: Optional[str] = None


ROUTES: Dict[NotificationKind, Route] = {
    NotificationKind.SUBSCRIPTION_CREATED: Route((Audience.USER, Audience.TEAM), "sales"),
    NotificationKind.SUBSCRIPTION_CANCELED: Route((Audience.USER, Audience.TEAM), "churn"),
    NotificationKind.TRIAL_CONVERTED: Route((Audience.TEAM,), "conversions"),
    NotificationKind.SUBSCRIPTION_PAST_DUE: Route((Audience.TEAM,), "billing-alerts"),
    NotificationKind.SUBSCRIPTION_UNPAID: Route((Audience.TEAM, Audience.ADMIN), "billing-alerts"),
    NotificationKind.PAYMENT_SUCCEEDED: Route((Audience.USER,)),
    NotificationKind.PAYMENT_FAILED: Route((Audience.USER, Audience.TEAM), "billing-alerts"),
    NotificationKind.HIGH_VALUE_PAYMENT_FAILED: Route((Audience.ADMIN,)),
    NotificationKind.WEBHOOK_PROCESSING_FAILED: Route((Audience.TEAM, Audience.ADMIN), "webhook-alerts"),
    NotificationKind.WEBHOOK_INTEGRITY_FAILURE: Route((Audience.TEAM, Audience.ADMIN), "webhook-alerts"),
}


@dataclass
class Notification:
    """A notification queued by a handler, sent once its transaction commits"""
    kind: NotificationKind
    payload: Dict[str, Any] = field(default_factory=dict)


def _format_amount(payload: Dict[str, Any]) -> str:
    amount = payload.get("amount")
    if amount is None:
        return ""
    currency = (payload.get("currency") or "usd").upper()
    return f"{amount / 100:.2f} {currency}"


def render_message(kind: NotificationKind, payload: Dict[str, Any]) -> tuple[str, str]:
    """Build (subject, text) for a notification"""
    who = payload.get("user_email") or payload.get("user_id") or "unknown user"
    plan = payload.get("plan_name") or "unknown plan"
    amount = _format_amount(payload)

    if kind == NotificationKind.SUBSCRIPTION_CREATED:
        return "Your subscription is active", f"🎉 New subscription! {who} subscribed to {plan}"
    if kind == NotificationKind.SUBSCRIPTION_CANCELED:
        return "Your subscription was canceled", f"😞 Subscription canceled: {who} ({plan})"
    if kind == NotificationKind.TRIAL_CONVERTED:
        return "Trial converted", f"🎯 Trial converted: {who} ({plan})"
    if kind == NotificationKind.SUBSCRIPTION_PAST_DUE:
        return "Subscription past due", f"⚠️ Subscription past due: {who} ({plan})"
    if kind == NotificationKind.SUBSCRIPTION_UNPAID:
        return "Subscription About to Cancel", f"🚨 Subscription unpaid (will cancel): {who} ({plan})"
    if kind == NotificationKind.PAYMENT_SUCCEEDED:
        return "Payment received", f"💳 Payment of {amount} received for {plan}"
    if kind == NotificationKind.PAYMENT_FAILED:
        return "Payment failed", f"🚨 Payment failed: {who} ({plan}) - {amount}"
    if kind == NotificationKind.HIGH_VALUE_PAYMENT_FAILED:
        return "High-Value Payment Failure", f"🚨 High-value payment failed: {who} ({plan}) - {amount}"
    if kind == NotificationKind.WEBHOOK_INTEGRITY_FAILURE:
        return (
            "Webhook integrity failure",
            f"❌ Webhook {payload.get('event_type')} ({payload.get('event_id')}) references data "
            f"missing locally after {payload.get('attempts')} attempts: {payload.get('error')}",
        )
    if kind == NotificationKind.WEBHOOK_PROCESSING_FAILED:
        return (
            "Webhook processing failed",
            f"❌ Webhook {payload.get('event_type')} ({payload.get('event_id')}) failed after "
            f"{payload.get('attempts')} attempts: {payload.get('error')}",
        )
    return kind.value, str(payload)


# ============================================================================
# CHANNELS
# ============================================================================

class EmailChannel:
    """Transactional email via Resend"""

    name = "email"

    def __init__(self, api_key: Optional[str] = None, from_email: Optional[str] = None,
                 admin_email: Optional[str] = None):
        self.api_key = settings.RESEND_API_KEY if api_key is None else api_key
        self.from_email = settings.RESEND_FROM_EMAIL if from_email is None else from_email
        self.admin_email = settings.ADMIN_EMAIL if admin_email is None else admin_email

    def send(self, to: Optional[str], subject: str, text: str) -> bool:
        if not self.api_key:
            logger.warning("RESEND_API_KEY is not set; skipping email")
            return False
        if not to:
            logger.warning(f"No recipient for email '{subject}'; skipping")
            return False

        resend.api_key = self.api_key
        response = resend.Emails.send(
            {
                "from": self.from_email,
                "to": to,
                "subject": subject,
                "html": f"<p>{text}</p>",
            }
        )

        # Resend returns dict with 'id' field on success
        email_id = response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
        if not email_id:
            raise RuntimeError(f"Email send returned invalid response: {response}")
        logger.info(f"Email sent successfully to {to} (id: {email_id})")
        return True


class SlackChannel:
    """Slack alerts via Incoming Webhook"""

    name = "slack"

    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 5.0):
        self.webhook_url = settings.SLACK_WEBHOOK_URL if webhook_url is None else webhook_url
        self.timeout = timeout

    def send(self, text: str, channel: Optional[str] = None) -> bool:
        if not self.webhook_url:
            logger.debug("SLACK_WEBHOOK_URL is not set; skipping Slack alert")
            return False
        prefix = f"[#{channel}] " if channel else ""
        response = httpx.post(self.webhook_url, json={"text": f"{prefix}{text}"}, timeout=self.timeout)
        response.raise_for_status()
        return True


# ============================================================================
# FAN-OUT
# ============================================================================

class NotificationService:
    """Routes a notification to its audiences; never raises to the caller"""

    def __init__(self, email: Optional[EmailChannel] = None, slack: Optional[SlackChannel] = None):
        self.email = email or EmailChannel()
        self.slack = slack or SlackChannel()

    def notify(self, kind: NotificationKind, payload: Optional[Dict[str, Any]] = None) -> None:
        payload = payload or {}
        try:
            route = ROUTES.get(kind, Route((Audience.ADMIN,)))
            subject, text = render_message(kind, payload)
            notification_logger.info(f"📢 {kind.value}: {text}")
        except Exception as e:
            logger.error(f"Failed to prepare notification {kind}: {e}", exc_info=True)
            return

        for audience in route.audiences:
            if audience == Audience.USER:
                self._deliver(self.email.name, self.email.send, payload.get("user_email"), subject, text)
            elif audience == Audience.ADMIN:
                self._deliver(self.email.name, self.email.send, self.email.admin_email, subject, text)
            elif audience == Audience.TEAM:
                self._deliver(self.slack.name, self.slack.send, text, route.slack_channel)

    def notify_all(self, notifications: List[Notification]) -> None:
        for notification in notifications:
            self.notify(notification.kind, notification.payload)

    @staticmethod
    def _deliver(channel_name: str, send, *args) -> None:
        try:
            sent = send(*args)
            notifications_counter.labels(channel=channel_name, status="sent" if sent else "skipped").inc()
        except Exception as e:
            notifications_counter.labels(channel=channel_name, status="failed").inc()
            logger.error(f"Notification via {channel_name} failed: {e}", exc_info=True)
