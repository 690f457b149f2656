"""
Identity Profile Service - read path over the materialized marts

- get_identity_profile(): customer profile rollup for a user id (+ email)
- resolve_anonymous_id(): canonical user for one anonymous id

Both read only; a missing row is a valid, empty answer.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from identity_graph.core.identity_model import IdentityProfile, MatchMethod
from identity_graph.core.normalize import normalize_anonymous_id, normalize_email, normalize_user_id
from identity_graph.errors import IdentityValidationError
from identity_graph.repositories.identity_repository import IdentityRepository
from identity_graph.repositories.profile_cache import ProfileCache

logger = logging.getLogger(__name__)


def _to_string_list(value: Any) -> List[str]:
    """Non-blank strings of a storage array; anything else becomes []"""
    if not isinstance(value, (list, tuple)):
        return []
    return [entry.strip() for entry in value if isinstance(entry, str) and entry.strip()]


def _to_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _to_timestamp_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _row_sort_key(row: Dict[str, Any]):
    return (_to_int(row.get('edge_count')), _to_timestamp_text(row.get('last_seen')) or "")


def select_profile_row(rows: Sequence[Dict[str, Any]], user_id: str) -> Dict[str, Any]:
    """
    Exact canonical_user_id match first, else the most edges,
    ties broken by the most recent last_seen.
    """
    if not rows:
        return {}
    for row in rows:
        if row.get('canonical_user_id') == user_id:
            return row
    return max(rows, key=_row_sort_key)


def profile_from_row(row: Dict[str, Any], user_id: str) -> IdentityProfile:
    canonical_user_id = row.get('canonical_user_id')
    if not isinstance(canonical_user_id, str) or not canonical_user_id.strip():
        canonical_user_id = user_id

    return IdentityProfile(
        canonical_user_id=canonical_user_id,
        anonymous_ids=_to_string_list(row.get('anonymous_ids')),
        emails=_to_string_list(row.get('emails')),
        phones=_to_string_list(row.get('phones')),
        device_fingerprints=_to_string_list(row.get('device_fingerprints')),
        match_methods=_to_string_list(row.get('match_methods')),
        edge_count=_to_int(row.get('edge_count')),
        last_seen=_to_timestamp_text(row.get('last_seen')),
    )


class IdentityProfileService:
    """Profile and alias lookups, with an optional Redis cache in front"""

    def __init__(self, identity_repo: IdentityRepository, profile_cache: Optional[ProfileCache] = None):
        self.repo = identity_repo
        self.profile_cache = profile_cache

    def get_identity_profile(self, user_id: Any, email: Any = None) -> IdentityProfile:
        """
        Raises:
            IdentityValidationError: if user_id is missing
        """
        normalized_user_id = normalize_user_id(user_id)
        if not normalized_user_id:
            raise IdentityValidationError("user_id query param is required")
        normalized_email = normalize_email(email)

        if self.profile_cache:
            cached = self.profile_cache.get_profile(normalized_user_id, normalized_email)
            if cached:
                logger.debug("[IdentityProfile] cache hit for %s", normalized_user_id)
                return IdentityProfile.from_dict(cached)

        rows = self.repo.get_profile_rows(normalized_user_id, normalized_email)
        profile = profile_from_row(select_profile_row(rows, normalized_user_id), normalized_user_id)

        if self.profile_cache:
            self.profile_cache.store_profile(normalized_user_id, normalized_email, profile.to_dict())
        return profile

    def resolve_anonymous_id(self, anonymous_id: Any) -> Dict[str, Any]:
        normalized = normalize_anonymous_id(anonymous_id)
        if not normalized:
            raise IdentityValidationError("anonymous_id query param is required")

        row = self.repo.get_alias_candidate(normalized)
        if not row:
            return {
                'anonymousId': normalized,
                'canonicalUserId': None,
                'confidence': 0.0,
                'method': MatchMethod.UNRESOLVED.value,
            }
        return {
            'anonymousId': normalized,
            'canonicalUserId': row.get('canonical_user_id') or None,
            'confidence': float(row.get('confidence') or 0.0),
            'method': str(row.get('method') or MatchMethod.UNRESOLVED.value),
        }
