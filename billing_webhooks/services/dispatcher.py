"""Event dispatcher - routes a trusted event to its reconciliation handler"""
import logging
from typing import Callable, Dict

from billing_webhooks.core.errors import HandlingError
from billing_webhooks.schemas.events import EventType, TrustedEvent
from billing_webhooks.services.reconciliation_service import (
    ReconciliationContext,
    handle_checkout_session_completed,
    handle_customer_created,
    handle_customer_updated,
    handle_invoice_payment_failed,
    handle_invoice_payment_succeeded,
    handle_subscription_created,
    handle_subscription_deleted,
    handle_subscription_updated,
)

logger = logging.getLogger(__name__)

EVENT_HANDLERS: Dict[EventType, Callable] = {
    EventType.CUSTOMER_SUBSCRIPTION_CREATED: handle_subscription_created,
    EventType.CUSTOMER_SUBSCRIPTION_UPDATED: handle_subscription_updated,
    EventType.CUSTOMER_SUBSCRIPTION_DELETED: handle_subscription_deleted,
    EventType.INVOICE_PAYMENT_SUCCEEDED: handle_invoice_payment_succeeded,
    EventType.INVOICE_PAYMENT_FAILED: handle_invoice_payment_failed,
    EventType.CUSTOMER_CREATED: handle_customer_created,
    EventType.CUSTOMER_UPDATED: handle_customer_updated,
    EventType.CHECKOUT_SESSION_COMPLETED: handle_checkout_session_completed,
}


def _lookup_handler(event_type: str):
    try:
        return EVENT_HANDLERS.get(EventType(event_type))
    except ValueError:
        return None


def dispatch(event: TrustedEvent, ctx: ReconciliationContext) -> bool:
    """Run the handler for an event

    Returns:
        True if a handler ran, False if the event type is not handled

    Raises:
        HandlingError: the handler failed; the original exception is its cause
    """
    handler = _lookup_handler(event.type)
    if handler is None:
        logger.info(f"Unhandled webhook event type: {event.type}")
        return False

    try:
        handler(event.data.object, ctx)
    except HandlingError:
        raise
    except Exception as e:
        raise HandlingError(event.type, event.id, e) from e
    return True
