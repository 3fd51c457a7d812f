"""Pydantic schemas for webhook admin responses"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class WebhookEventSummary(BaseModel):
    """Ledger row without its payload"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_id: str
    event_type: str
    processed: bool
    processing_error: Optional[str] = None
    attempts: int = 0
    created_at: datetime
    updated_at: datetime


class WebhookEventDetail(WebhookEventSummary):
    raw_payload: Dict[str, Any]
    processed_at: Optional[datetime] = None


class WebhookEventList(BaseModel):
    data: List[WebhookEventSummary]
    total: int


class WebhookStats(BaseModel):
    total_events: int
    processed_events: int
    failed_events: int
    event_types: Dict[str, int]
    error_rate: float  # percent, two decimals
    period: str


class EventTypeSummary(BaseModel):
    event_type: str
    total_count: int
    processed_count: int
    failed_count: int
    success_rate: int


class EventTypeSummaryList(BaseModel):
    data: List[EventTypeSummary]
    period: str


class WebhookHealth(BaseModel):
    status: str
    total_events_last_hour: int
    processed_events_last_hour: int
    failed_events_last_hour: int
    success_rate_last_hour: int
    last_event_at: Optional[datetime] = None


class RetryResponse(BaseModel):
    event_id: str
    processed: bool
    attempts: int
    message: str


class CleanupResponse(BaseModel):
    deleted_count: int
    older_than_days: int
    message: str
