"""
Service wiring

Builds every store-backed service from one ClickHouseStore, so the app
and the scripts share the same object graph.
"""
from typing import Optional

from identity_graph.config import Settings
from identity_graph.repositories.clickhouse import ClickHouseStore
from identity_graph.repositories.event_repository import EventRepository
from identity_graph.repositories.identity_repository import IdentityRepository
from identity_graph.repositories.profile_cache import ProfileCache
from identity_graph.services.alias_service import AliasMergeService
from identity_graph.services.gdpr_service import GdprDeletionService
from identity_graph.services.ingestion_service import EventIngestionService
from identity_graph.services.linked_identifier_service import LinkedIdentifierResolver
from identity_graph.services.mart_service import IdentityMartService
from identity_graph.services.profile_service import IdentityProfileService


class IdentityServices:
    def __init__(self, store: ClickHouseStore, settings: Settings, profile_cache: Optional[ProfileCache] = None):
        self.store = store
        self.profile_cache = profile_cache

        identity_repo = IdentityRepository(store)
        event_repo = EventRepository(store)
        self.alias = AliasMergeService(identity_repo, profile_cache)
        self.ingestion = EventIngestionService(event_repo, identity_repo, self.alias)
        self.profiles = IdentityProfileService(identity_repo, profile_cache)
        self.resolver = LinkedIdentifierResolver(
            identity_repo,
            timeout_ms=settings.closure_timeout_ms,
            max_iterations=settings.closure_max_iterations,
        )
        self.gdpr = GdprDeletionService(identity_repo, self.resolver, profile_cache)
        self.marts = IdentityMartService(identity_repo, event_repo, profile_cache)
