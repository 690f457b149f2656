"""
GDPR Deletion Service

1. Reject seeds that carry no usable identifier
2. Expand the seed to its connected component (LinkedIdentifierResolver)
3. Queue one ALTER TABLE ... DELETE mutation scoped to the closure

Deletion is asynchronous in ClickHouse MergeTree: the mutation is only
queued here. Marts must be rebuilt once it has completed.
"""

import logging
from typing import Any, Dict, Mapping, Optional

from identity_graph.errors import IdentityValidationError
from identity_graph.repositories.identity_repository import IdentityRepository
from identity_graph.repositories.profile_cache import ProfileCache
from identity_graph.services.linked_identifier_service import (
    LinkedIdentifierResolver,
    build_identity_delete_predicate,
)

logger = logging.getLogger(__name__)

MUTATION_NOTE = (
    "Deletion is asynchronous in ClickHouse MergeTree; "
    "run the identity mart rebuild after the mutation completes."
)


def validate_deletion_seed(seed: Mapping[str, Any]) -> None:
    if build_identity_delete_predicate(seed) is None:
        raise IdentityValidationError(
            "At least one identifier is required (userId, email, phone, anonymousId)"
        )


class GdprDeletionService:
    def __init__(
        self,
        identity_repo: IdentityRepository,
        resolver: LinkedIdentifierResolver,
        profile_cache: Optional[ProfileCache] = None,
    ):
        self.repo = identity_repo
        self.resolver = resolver
        self.profile_cache = profile_cache

    def delete(self, seed: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Raises:
            IdentityValidationError: nothing to delete
            ClosureLimitError: expansion did not converge within its bounds
        """
        validate_deletion_seed(seed)

        identifiers = self.resolver.resolve(seed)
        predicate = build_identity_delete_predicate(identifiers) if identifiers else None
        if predicate is None:
            raise IdentityValidationError("No matching identifiers found to delete")

        self.repo.delete_edges(predicate)
        logger.info(
            "[GDPR] queued identity_graph delete for %d user ids, %d emails, %d phones, "
            "%d anonymous ids, %d device fingerprints",
            len(identifiers.user_ids), len(identifiers.emails), len(identifiers.phones),
            len(identifiers.anonymous_ids), len(identifiers.device_fingerprints),
        )

        if self.profile_cache:
            self.profile_cache.invalidate_users(identifiers.user_ids)

        return {
            'mutationQueued': True,
            'identifierCount': identifiers.size(),
            'note': MUTATION_NOTE,
        }
