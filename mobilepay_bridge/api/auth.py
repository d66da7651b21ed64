"""API key authentication dependencies."""

import hmac
from typing import Optional

import structlog
from fastapi import Header

from mobilepay_bridge.config import settings
from mobilepay_bridge.exceptions import Unauthorized

logger = structlog.get_logger(__name__)


def _key_matches(presented: Optional[str], configured: str) -> bool:
    return bool(presented) and hmac.compare_digest(presented, configured)


def require_api_key(x_api_key: Optional[str] = Header(None, alias="X-API-Key")) -> None:
    """Public API key. An empty API_KEY leaves the public API open (development only)."""
    if not settings.API_KEY:
        return
    if not x_api_key:
        raise Unauthorized("Missing X-API-Key header")
    if not _key_matches(x_api_key, settings.API_KEY):
        logger.warning("invalid_api_key")
        raise Unauthorized("Invalid API key")


def require_admin_key(x_api_key: Optional[str] = Header(None, alias="X-API-Key")) -> None:
    """Admin API key. An empty ADMIN_API_KEY rejects every admin call."""
    if not settings.ADMIN_API_KEY:
        logger.error("admin_api_key_not_configured")
        raise Unauthorized("Admin API is not configured")
    if not _key_matches(x_api_key, settings.ADMIN_API_KEY):
        logger.warning("invalid_admin_api_key")
        raise Unauthorized("Invalid admin API key")
