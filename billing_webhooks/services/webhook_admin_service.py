"""Webhook admin service - ledger reporting and maintenance"""
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from billing_webhooks.models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)

# Above this share of failed events in the last hour the pipeline reports unhealthy
UNHEALTHY_FAILURE_RATE = 0.1


def _since(days: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=days)


def list_events(
    db: Session,
    event_type: Optional[str] = None,
    processed: Optional[bool] = None,
    has_error: Optional[bool] = None,
    limit: int = 50,
) -> List[WebhookEvent]:
    """Most recent events first, optionally filtered"""
    query = db.query(WebhookEvent)
    if event_type:
        query = query.filter(WebhookEvent.event_type == event_type)
    if processed is not None:
        query = query.filter(WebhookEvent.processed == processed)
    if has_error is True:
        query = query.filter(WebhookEvent.processing_error.isnot(None))
    elif has_error is False:
        query = query.filter(WebhookEvent.processing_error.is_(None))
    return query.order_by(WebhookEvent.created_at.desc(), WebhookEvent.id.desc()).limit(limit).all()


def list_failed_events(db: Session, limit: int = 20) -> List[WebhookEvent]:
    """Events that still need attention: unprocessed or carrying an error"""
    return db.query(WebhookEvent).filter(
        or_(WebhookEvent.processed.is_(False), WebhookEvent.processing_error.isnot(None))
    ).order_by(WebhookEvent.created_at.desc(), WebhookEvent.id.desc()).limit(limit).all()


def get_event(event_id: str, db: Session) -> Optional[WebhookEvent]:
    return db.query(WebhookEvent).filter(WebhookEvent.event_id == event_id).first()


def get_webhook_stats(db: Session, days: int = 7) -> Dict[str, Any]:
    events = db.query(WebhookEvent.event_type, WebhookEvent.processed, WebhookEvent.processing_error).filter(
        WebhookEvent.created_at >= _since(days)
    ).all()

    total = len(events)
    processed = sum(1 for e in events if e.processed)
    failed = sum(1 for e in events if e.processing_error)
    error_rate = (failed / total) * 100 if total else 0.0

    return {
        "total_events": total,
        "processed_events": processed,
        "failed_events": failed,
        "event_types": dict(Counter(e.event_type for e in events)),
        "error_rate": round(error_rate, 2),
        "period": f"{days} days",
    }


def get_event_type_summary(db: Session, days: int = 7) -> List[Dict[str, Any]]:
    events = db.query(WebhookEvent.event_type, WebhookEvent.processed).filter(
        WebhookEvent.created_at >= _since(days)
    ).all()

    totals: Counter = Counter()
    processed: Counter = Counter()
    for event in events:
        totals[event.event_type] += 1
        if event.processed:
            processed[event.event_type] += 1

    return [
        {
            "event_type": event_type,
            "total_count": count,
            "processed_count": processed[event_type],
            "failed_count": count - processed[event_type],
            "success_rate": round(processed[event_type] / count * 100),
        }
        for event_type, count in sorted(totals.items())
    ]


def get_webhook_health(db: Session) -> Dict[str, Any]:
    """Health over the last hour of deliveries"""
    since = datetime.now(timezone.utc) - timedelta(hours=1)
    events = db.query(WebhookEvent.processed, WebhookEvent.processing_error, WebhookEvent.created_at).filter(
        WebhookEvent.created_at >= since
    ).all()

    total = len(events)
    processed = sum(1 for e in events if e.processed)
    failed = sum(1 for e in events if e.processing_error)
    unhealthy = total > 0 and failed / total > UNHEALTHY_FAILURE_RATE

    return {
        "status": "unhealthy" if unhealthy else "healthy",
        "total_events_last_hour": total,
        "processed_events_last_hour": processed,
        "failed_events_last_hour": failed,
        "success_rate_last_hour": round(processed / total * 100) if total else 100,
        "last_event_at": max((e.created_at for e in events), default=None),
    }


def cleanup_old_events(db: Session, older_than_days: int = 30) -> int:
    """Delete processed events older than the cutoff; unprocessed ones are kept for inspection"""
    cutoff = _since(older_than_days)
    deleted = db.query(WebhookEvent).filter(
        WebhookEvent.created_at < cutoff,
        WebhookEvent.processed.is_(True),
    ).delete(synchronize_session=False)
    db.commit()
    logger.info(f"🧹 Cleaned up {deleted} old webhook events (older than {older_than_days} days)")
    return deleted
