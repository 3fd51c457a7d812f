"""Idempotency store - the webhook_events processing ledger

These helpers only flush; the retry orchestrator owns commit/rollback so the
ledger update and the reconciliation mutations land in one transaction.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_webhooks.models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)

# processing_error is Text, but keep runaway tracebacks out of the ledger
MAX_ERROR_LENGTH = 4000


def lookup_event(event_id: str, db: Session, for_update: bool = False) -> Optional[WebhookEvent]:
    """Fetch the processing record for an event ID

    With ``for_update`` the row stays locked until the caller's transaction
    ends, serializing concurrent deliveries of the same event.
    """
    query = db.query(WebhookEvent).filter(WebhookEvent.event_id == event_id)
    if for_update:
        query = query.with_for_update()
    return query.first()


def record_attempt_start(event_id: str, event_type: str, payload: Dict[str, Any], db: Session) -> WebhookEvent:
    """Upsert the record at the start of a processing attempt

    New events get a record with processed=False. An existing unprocessed
    record has its previous error cleared. A processed record is returned
    untouched; skipping it is the caller's decision.
    """
    webhook_event = lookup_event(event_id, db, for_update=True)

    if webhook_event is None:
        webhook_event = WebhookEvent(
            event_id=event_id,
            event_type=event_type,
            raw_payload=payload,
            processed=False,
            attempts=1,
        )
        db.add(webhook_event)
        try:
            db.flush()
        except IntegrityError:
            # A concurrent delivery inserted the same event ID first. Nothing
            # else has been written in this transaction yet, so roll back and
            # lock the winner's row instead.
            db.rollback()
            logger.info(f"Webhook event {event_id} was recorded concurrently, re-reading")
            webhook_event = lookup_event(event_id, db, for_update=True)
            if webhook_event is None:
                raise
        else:
            return webhook_event

    if webhook_event.processed:
        return webhook_event

    webhook_event.processed = False
    webhook_event.processing_error = None
    webhook_event.attempts = (webhook_event.attempts or 0) + 1
    db.flush()
    return webhook_event


def record_success(event_id: str, db: Session) -> Optional[WebhookEvent]:
    """Mark the event processed"""
    webhook_event = lookup_event(event_id, db)
    if webhook_event is None:
        logger.warning(f"record_success called for unknown webhook event {event_id}")
        return None
    webhook_event.processed = True
    webhook_event.processing_error = None
    webhook_event.processed_at = datetime.now(timezone.utc)
    db.flush()
    return webhook_event


def record_failure(
    event_id: str,
    error_message: str,
    db: Session,
    event_type: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> Optional[WebhookEvent]:
    """Overwrite the record's error with the latest attempt's failure

    Called after the failed attempt's transaction was rolled back, which also
    discards a record created by that attempt, so the record is re-created
    here when ``event_type`` and ``payload`` are given.
    """
    error_message = (error_message or "Unknown error")[:MAX_ERROR_LENGTH]
    webhook_event = lookup_event(event_id, db, for_update=True)

    if webhook_event is None:
        if event_type is None or payload is None:
            logger.warning(f"Cannot record failure for unknown webhook event {event_id}")
            return None
        webhook_event = WebhookEvent(
            event_id=event_id,
            event_type=event_type,
            raw_payload=payload,
            attempts=1,
        )
        db.add(webhook_event)
    elif webhook_event.processed:
        # A concurrent delivery finished the event; its outcome is final
        logger.info(f"Webhook event {event_id} already processed, not recording failure")
        return webhook_event
    else:
        # The rollback also discarded this attempt's increment
        webhook_event.attempts = (webhook_event.attempts or 0) + 1

    webhook_event.processed = False
    webhook_event.processing_error = error_message
    db.flush()
    return webhook_event


def reset_for_retry(event_id: str, db: Session) -> Optional[WebhookEvent]:
    """Clear the error on an unprocessed record ahead of a manual retry"""
    webhook_event = lookup_event(event_id, db, for_update=True)
    if webhook_event is None or webhook_event.processed:
        return webhook_event
    webhook_event.processing_error = None
    db.flush()
    return webhook_event
