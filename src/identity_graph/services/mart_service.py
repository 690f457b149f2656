"""
Identity Mart Service

Rebuilds the derived tables from the identity_graph edge log:
- identity_alias_candidates: best canonical user per anonymous id
- identity_customer_profiles: rollup per canonical user
- identity_resolved_events: every event with its canonical user,
  identity confidence and method

Run after GDPR mutations complete and periodically for fresh profiles.
A failed rebuild leaves the previous marts in place.
"""

import logging
from typing import Dict, Optional

from identity_graph.core.aggregation import build_customer_profiles, resolve_alias_candidates, resolve_events
from identity_graph.repositories.clickhouse import (
    ALIAS_CANDIDATES_TABLE,
    CUSTOMER_PROFILES_TABLE,
    RESOLVED_EVENTS_TABLE,
)
from identity_graph.repositories.event_repository import EventRepository
from identity_graph.repositories.identity_repository import IdentityRepository
from identity_graph.repositories.profile_cache import ProfileCache

logger = logging.getLogger(__name__)


class IdentityMartService:
    def __init__(
        self,
        identity_repo: IdentityRepository,
        event_repo: EventRepository,
        profile_cache: Optional[ProfileCache] = None,
        enable_probabilistic_matching: bool = True,
    ):
        self.repo = identity_repo
        self.event_repo = event_repo
        self.profile_cache = profile_cache
        self.enable_probabilistic_matching = enable_probabilistic_matching

    def rebuild(self) -> Dict[str, int]:
        """Recompute all marts from scratch; returns row counts"""
        edges = self.repo.list_all_edges()
        logger.info("[IdentityMarts] rebuilding from %d edges", len(edges))

        aliases = resolve_alias_candidates(edges, self.enable_probabilistic_matching)
        profiles = build_customer_profiles(edges, aliases)
        resolved_events = resolve_events(self.event_repo.list_events(), aliases)

        counts = self.repo.replace_marts(list(aliases.values()), profiles, resolved_events)

        cleared = self.profile_cache.clear() if self.profile_cache else 0

        logger.info(
            "[IdentityMarts] wrote %d alias candidates, %d profiles, %d resolved events "
            "(cleared %d cached profiles)",
            counts[ALIAS_CANDIDATES_TABLE], counts[CUSTOMER_PROFILES_TABLE],
            counts[RESOLVED_EVENTS_TABLE], cleared,
        )
        return {
            'edges': len(edges),
            'aliasCandidates': counts[ALIAS_CANDIDATES_TABLE],
            'customerProfiles': counts[CUSTOMER_PROFILES_TABLE],
            'resolvedEvents': counts[RESOLVED_EVENTS_TABLE],
        }
