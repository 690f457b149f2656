"""
Identity Controller - HTTP route handlers

Validation happens here, before any store access:
- ValueError (incl. IdentityValidationError) -> 400
- IdentityError -> its status_code (config, store, closure bounds)
- anything else -> 500
"""
import logging
from typing import Any, Dict, Mapping, NoReturn, Optional

from fastapi import HTTPException

from identity_graph.config import Settings
from identity_graph.core.normalize import normalize_email, normalize_phone, normalize_user_id
from identity_graph.errors import ConfigurationError, IdentityError
from identity_graph.models.requests import AliasRequest, IdentityDeletionRequest
from identity_graph.models.responses import (
    AliasResponse,
    DeletionResponse,
    IngestionResponse,
    ProfileResponse,
    ResolveResponse,
)
from identity_graph.services.container import IdentityServices
from identity_graph.services.gdpr_service import validate_deletion_seed
from identity_graph.services.ingestion_service import parse_batch

logger = logging.getLogger(__name__)

ALIAS_SOURCE = "identity/alias"


def _raise_http(e: Exception, action: str) -> NoReturn:
    if isinstance(e, ValueError):
        raise HTTPException(status_code=400, detail=str(e))
    if isinstance(e, IdentityError):
        raise HTTPException(status_code=e.status_code, detail=str(e))
    logger.exception("[IdentityController] %s failed", action)
    raise HTTPException(status_code=500, detail=f"Failed to {action}: {str(e)}")


def _require_object(payload: Any) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValueError("Invalid payload: expected JSON object")
    return payload


class IdentityController:
    """Controller for the /identity endpoints"""

    def __init__(self, settings: Settings, services: Optional[IdentityServices]):
        self.settings = settings
        self.services = services

    def _require_services(self) -> IdentityServices:
        if self.services is None:
            raise ConfigurationError("ClickHouse is not configured (CLICKHOUSE_HOST missing)")
        return self.services

    def ingest_events(self, payload: Any, cookies: Optional[Mapping[str, str]] = None) -> Dict:
        """POST /identity/events"""
        try:
            events = parse_batch(payload, cookies, self.settings.max_batch_size)
            result = self._require_services().ingestion.ingest(events)
            return IngestionResponse(inserted=result.inserted).model_dump()
        except Exception as e:
            _raise_http(e, "ingest events")

    def merge_aliases(self, payload: Any) -> Dict:
        """POST /identity/alias"""
        try:
            request = AliasRequest.model_validate(_require_object(payload))

            user_id = normalize_user_id(request.userId)
            if not user_id:
                raise ValueError("userId is required")
            email = normalize_email(request.email)
            phone = normalize_phone(request.phone)
            if not email and not phone:
                raise ValueError("At least one of email or phone is required")

            merged = self._require_services().alias.merge(
                user_id=user_id,
                email=email,
                phone=phone,
                anonymous_id=request.anonymousId,
                source=ALIAS_SOURCE,
            )
            return AliasResponse(
                userId=user_id,
                mergedAnonymousIds=merged.merged_anonymous_ids,
                mergedCount=len(merged.merged_anonymous_ids),
                insertedRows=merged.inserted_rows,
            ).model_dump()
        except Exception as e:
            _raise_http(e, "merge aliases")

    def get_profile(self, user_id: Optional[str], email: Optional[str] = None) -> Dict:
        """GET /identity/admin"""
        try:
            if not normalize_user_id(user_id):
                raise ValueError("user_id query param is required")
            profile = self._require_services().profiles.get_identity_profile(user_id, email)
            return ProfileResponse(profile=profile.to_dict()).model_dump()
        except Exception as e:
            _raise_http(e, "load identity profile")

    def resolve_anonymous_id(self, anonymous_id: Optional[str]) -> Dict:
        """GET /identity/resolve"""
        try:
            if not (anonymous_id or "").strip():
                raise ValueError("anonymous_id query param is required")
            resolution = self._require_services().profiles.resolve_anonymous_id(anonymous_id)
            return ResolveResponse(**resolution).model_dump()
        except Exception as e:
            _raise_http(e, "resolve anonymous id")

    def delete_identity(self, payload: Any) -> Dict:
        """POST|DELETE /identity/gdpr"""
        try:
            seed = IdentityDeletionRequest.model_validate(_require_object(payload)).seed()
            validate_deletion_seed(seed)
            result = self._require_services().gdpr.delete(seed)
            return DeletionResponse(**result).model_dump()
        except Exception as e:
            _raise_http(e, "delete identity")
