"""
Alias Merge Service

Stitches anonymous sessions to a known user at identify/login time:
1. Find every anonymous id ever observed with the user's email or phone
2. Add the current session's anonymous id, even without history
3. Append one deterministic edge per anonymous id

Edges are only ever appended; earlier observations stay untouched.
"""

import logging
from typing import Any, List, Optional

from identity_graph.core.identity_model import (
    DETERMINISTIC_CONFIDENCE,
    IdentityEdge,
    MatchMethod,
)
from identity_graph.core.normalize import (
    format_clickhouse_timestamp,
    normalize_anonymous_id,
    normalize_email,
    normalize_phone,
    normalize_user_id,
)
from identity_graph.errors import IdentityValidationError
from identity_graph.repositories.identity_repository import IdentityRepository
from identity_graph.repositories.profile_cache import ProfileCache

logger = logging.getLogger(__name__)


class AliasMergeResult:
    def __init__(self, merged_anonymous_ids: List[str], inserted_rows: int):
        self.merged_anonymous_ids = merged_anonymous_ids
        self.inserted_rows = inserted_rows


def deterministic_method(email: Optional[str], phone: Optional[str]) -> MatchMethod:
    """Priority: email+phone > email > phone > login"""
    if email and phone:
        return MatchMethod.DETERMINISTIC_EMAIL_PHONE
    if email:
        return MatchMethod.DETERMINISTIC_EMAIL
    if phone:
        return MatchMethod.DETERMINISTIC_PHONE
    return MatchMethod.DETERMINISTIC_LOGIN


class AliasMergeService:
    """Links historical anonymous sessions to a canonical user id"""

    def __init__(self, identity_repo: IdentityRepository, profile_cache: Optional[ProfileCache] = None):
        self.repo = identity_repo
        self.profile_cache = profile_cache

    def merge(
        self,
        user_id: Any,
        email: Any = None,
        phone: Any = None,
        anonymous_id: Any = None,
        source: str = "identity/alias",
    ) -> AliasMergeResult:
        """
        Merge anonymous sessions into user_id.

        Callers are expected to have checked that email or phone is present;
        with neither, only the explicit anonymous_id (if any) is linked.

        Raises:
            IdentityValidationError: if user_id is missing
        """
        normalized_user_id = normalize_user_id(user_id)
        if not normalized_user_id:
            raise IdentityValidationError("userId is required")

        normalized_email = normalize_email(email)
        normalized_phone = normalize_phone(phone)
        request_anonymous_id = normalize_anonymous_id(anonymous_id)

        anonymous_ids = self.repo.list_anonymous_ids_for_identifiers(
            email=normalized_email,
            phone=normalized_phone,
        )
        if request_anonymous_id and request_anonymous_id not in anonymous_ids:
            anonymous_ids.append(request_anonymous_id)

        if not anonymous_ids:
            logger.info("[AliasMerge] no anonymous sessions to merge for user %s", normalized_user_id)
            return AliasMergeResult([], 0)

        timestamp = format_clickhouse_timestamp()
        method = deterministic_method(normalized_email, normalized_phone)
        metadata = {
            'source': source,
            'alias_merge': True,
            'merged_identifiers': {
                'email': normalized_email,
                'phone': normalized_phone,
            },
        }

        edges = [
            IdentityEdge(
                anonymous_id=merged_anonymous_id,
                user_id=normalized_user_id,
                email=normalized_email,
                phone=normalized_phone,
                method=method,
                confidence=DETERMINISTIC_CONFIDENCE,
                first_seen=timestamp,
                last_seen=timestamp,
                metadata=metadata,
            )
            for merged_anonymous_id in anonymous_ids
        ]
        inserted = self.repo.insert_edges(edges)
        if self.profile_cache:
            self.profile_cache.invalidate_users([normalized_user_id])

        logger.info(
            "[AliasMerge] linked %d anonymous sessions to user %s via %s (source=%s)",
            len(anonymous_ids), normalized_user_id, method.value, source,
        )
        return AliasMergeResult(anonymous_ids, inserted)
