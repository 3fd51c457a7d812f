"""Webhook admin API routes - inspect, retry and clean up processed events"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from billing_webhooks.api.webhooks import get_webhook_processor
from billing_webhooks.core.config import settings
from billing_webhooks.core.security import require_admin_token
from billing_webhooks.db.session import get_db
from billing_webhooks.schemas.webhooks import (
    CleanupResponse, EventTypeSummaryList, RetryResponse, WebhookEventDetail,
    WebhookEventList, WebhookHealth, WebhookStats
)
from billing_webhooks.services.idempotency_service import reset_for_retry
from billing_webhooks.services.webhook_admin_service import (
    cleanup_old_events, get_event, get_event_type_summary, get_webhook_health,
    get_webhook_stats, list_events, list_failed_events
)
from billing_webhooks.services.webhook_service import WebhookProcessor

router = APIRouter(
    prefix="/api/admin/webhooks",
    tags=["webhook-admin"],
    dependencies=[Depends(require_admin_token)],
)
logger = logging.getLogger(__name__)


@router.get("/stats", response_model=WebhookStats)
def webhook_stats(days: int = Query(7, ge=1, le=365), db: Session = Depends(get_db)):
    """Processing statistics over the last N days"""
    return get_webhook_stats(db, days)


@router.get("/health", response_model=WebhookHealth)
def webhook_health(db: Session = Depends(get_db)):
    """Processing health over the last hour"""
    return get_webhook_health(db)


@router.get("/events", response_model=WebhookEventList)
def recent_events(
    event_type: Optional[str] = None,
    processed: Optional[bool] = None,
    has_error: Optional[bool] = None,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db)
):
    """Recent webhook events with optional filtering"""
    events = list_events(db, event_type=event_type, processed=processed, has_error=has_error, limit=limit)
    return {"data": events, "total": len(events)}


@router.get("/events/failed", response_model=WebhookEventList)
def failed_events(limit: int = Query(20, ge=1, le=500), db: Session = Depends(get_db)):
    """Events that are unprocessed or carry an error"""
    events = list_failed_events(db, limit=limit)
    return {"data": events, "total": len(events)}


@router.get("/events/summary", response_model=EventTypeSummaryList)
def event_types_summary(days: int = Query(7, ge=1, le=365), db: Session = Depends(get_db)):
    """Per-event-type counts and success rate"""
    return {"data": get_event_type_summary(db, days), "period": f"{days} days"}


@router.delete("/events/cleanup", response_model=CleanupResponse)
def cleanup_events(days: Optional[int] = Query(None, ge=1), db: Session = Depends(get_db)):
    """Delete processed events older than N days"""
    days = days or settings.WEBHOOK_EVENT_RETENTION_DAYS
    deleted = cleanup_old_events(db, days)
    return {
        "deleted_count": deleted,
        "older_than_days": days,
        "message": f"Cleaned up {deleted} old webhook events",
    }


@router.get("/events/{event_id}", response_model=WebhookEventDetail)
def event_details(event_id: str, db: Session = Depends(get_db)):
    """Full ledger row including the stored payload"""
    webhook_event = get_event(event_id, db)
    if not webhook_event:
        raise HTTPException(404, "Webhook event not found")
    return webhook_event


@router.post("/events/{event_id}/retry", response_model=RetryResponse)
async def retry_event(
    event_id: str,
    db: Session = Depends(get_db),
    processor: WebhookProcessor = Depends(get_webhook_processor)
):
    """Clear the event's error and replay its stored payload"""
    webhook_event = get_event(event_id, db)
    if not webhook_event:
        raise HTTPException(404, "Webhook event not found")
    if webhook_event.processed:
        raise HTTPException(400, "Webhook event already processed")

    reset_for_retry(event_id, db)
    db.commit()
    logger.info(f"Admin retry requested for webhook event {event_id}")

    try:
        result = await processor.reprocess_stored(event_id)
    except Exception as e:
        logger.error(f"Admin retry of webhook event {event_id} failed: {e}", exc_info=True)
        raise HTTPException(500, f"Retry failed: {e}")

    return {
        "event_id": event_id,
        "processed": True,
        "attempts": result.attempts,
        "message": "Webhook event reprocessed",
    }
