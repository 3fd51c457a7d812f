"""Monitoring API routes for health checks and metrics"""
import logging

from fastapi import APIRouter, Depends, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.orm import Session

from billing_webhooks.db.session import get_db

router = APIRouter(tags=["monitoring"])
logger = logging.getLogger(__name__)


@router.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/health")
def health_check(db: Session = Depends(get_db)):
    """Health check endpoint - verifies the database is reachable"""
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Health check database query failed: {e}")
        return Response(content='{"status": "unhealthy"}', status_code=503, media_type="application/json")
    return {"status": "healthy"}
