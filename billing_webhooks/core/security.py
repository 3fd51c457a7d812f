"""Security dependencies"""
import logging
import secrets
from typing import Optional

from fastapi import Header, HTTPException, Request

from billing_webhooks.core.config import settings

security_logger = logging.getLogger("security")


def _client_host(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def require_admin_token(
    request: Request,
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")
) -> None:
    """Dependency: Require the shared admin API token"""
    expected = settings.ADMIN_API_TOKEN
    if not expected:
        security_logger.error("ADMIN_API_TOKEN is not configured; rejecting admin request")
        raise HTTPException(503, "Admin API is not configured")

    if not x_admin_token or not secrets.compare_digest(x_admin_token.encode(), expected.encode()):
        security_logger.warning(
            f"Rejected admin request - Path: {request.url.path}, Client: {_client_host(request)}"
        )
        raise HTTPException(401, "Invalid admin token")
