"""WebhookEvent model"""
from sqlalchemy import Column, Integer, String, Boolean, Text, JSON, DateTime
from datetime import datetime, timezone
from billing_webhooks.models.base import Base


class WebhookEvent(Base):
    """Processing record for a Stripe webhook event, one row per event ID

    Doubles as the idempotency ledger: a row with processed=True is final and
    later deliveries of the same event ID are acknowledged without replaying.
    """
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    raw_payload = Column(JSON, nullable=False)  # Verified event body, kept for replay/audit
    processed = Column(Boolean, default=False, nullable=False, index=True)
    processing_error = Column(Text, nullable=True)  # Latest attempt's error only
    attempts = Column(Integer, default=0, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    def __repr__(self):
        return f"<WebhookEvent(event_id={self.event_id}, type={self.event_type}, processed={self.processed})>"
