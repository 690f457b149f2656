"""
Shared-secret auth for the identity endpoints

- Header: x-events-api-key, compared against EVENTS_API_KEY
- No key configured outside development: 500 (misconfiguration)
- No key configured in development: check skipped
"""
import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException

from identity_graph.config import Settings

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-events-api-key"


class ApiKeyAuth:
    """FastAPI dependency; runs before the body or the store are touched"""

    def __init__(self, settings: Settings):
        self.settings = settings

    def __call__(self, x_events_api_key: Optional[str] = Header(None)) -> None:
        expected = (self.settings.events_api_key or "").strip()
        if not expected:
            if self.settings.is_development:
                return
            logger.error("[Auth] EVENTS_API_KEY is not configured")
            raise HTTPException(status_code=500, detail="EVENTS_API_KEY is not configured")

        supplied = (x_events_api_key or "").strip()
        if not supplied or not hmac.compare_digest(supplied.encode(), expected.encode()):
            raise HTTPException(status_code=401, detail="Unauthorized")
