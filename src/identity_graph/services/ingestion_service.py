"""
Event Ingestion Service

Pipeline for one POST /identity/events call:
1. Validate the batch shape (object or non-empty array of objects)
2. Parse every raw event into a CanonicalEvent before any write
3. Derive identity edges per event
4. Bulk insert events, then bulk insert edges
5. Run de-duplicated alias merges for identify calls, one at a time

Validation is all-or-nothing; persistence is not. Events that were
stored before an edge insert failed stay stored (PartialIngestionError).
Nothing here retries.
"""

import logging
from typing import Any, List, Mapping, NamedTuple, Optional, Sequence

from identity_graph.core.event_model import CanonicalEvent, parse_event
from identity_graph.core.identity_model import (
    DETERMINISTIC_CONFIDENCE,
    PROBABILISTIC_DEVICE_CONFIDENCE,
    IdentityEdge,
    MatchMethod,
)
from identity_graph.errors import IdentityValidationError, PartialIngestionError, StoreError
from identity_graph.repositories.event_repository import EventRepository
from identity_graph.repositories.identity_repository import IdentityRepository
from identity_graph.services.alias_service import AliasMergeService

logger = logging.getLogger(__name__)

INGESTION_SOURCE = "identity/events"


class AliasMergeRequest(NamedTuple):
    user_id: str
    email: Optional[str]
    phone: Optional[str]
    anonymous_id: Optional[str]


class IngestionResult:
    def __init__(self, inserted: int, identity_edges: int, alias_merges: int, merged_anonymous_ids: int):
        self.inserted = inserted
        self.identity_edges = identity_edges
        self.alias_merges = alias_merges
        self.merged_anonymous_ids = merged_anonymous_ids


def coerce_batch(payload: Any, max_batch_size: Optional[int] = None) -> List[Mapping[str, Any]]:
    """
    Accept a single event object or an array of event objects.

    Raises:
        IdentityValidationError: empty batch, non-object element, too many events
    """
    if isinstance(payload, dict):
        return [payload]
    if not isinstance(payload, list):
        raise IdentityValidationError("Invalid payload: expected an event object or an array of event objects")
    if not payload:
        raise IdentityValidationError("Invalid payload: expected at least one event object")
    if max_batch_size is not None and len(payload) > max_batch_size:
        raise IdentityValidationError(
            f"Invalid payload: batch of {len(payload)} events exceeds the limit of {max_batch_size}"
        )
    for index, item in enumerate(payload):
        if not isinstance(item, dict):
            raise IdentityValidationError(f"Invalid event at index {index}: expected JSON object")
    return payload


def derive_edges(event: CanonicalEvent) -> List[IdentityEdge]:
    """
    Identity observations carried by one event:
    - anonymous + user id: deterministic edge (login for identify calls)
    - anonymous + device fingerprint, no user: probabilistic observation
    """
    edges = []
    if not event.anonymous_id:
        return edges

    metadata = {
        'source': INGESTION_SOURCE,
        'event_name': event.event_name,
    }

    if event.user_id:
        method = MatchMethod.DETERMINISTIC_LOGIN if event.is_identify else MatchMethod.DETERMINISTIC_USER_ID
        edges.append(IdentityEdge(
            anonymous_id=event.anonymous_id,
            user_id=event.user_id,
            email=event.email,
            phone=event.phone,
            device_fingerprint=event.device_fingerprint,
            method=method,
            confidence=DETERMINISTIC_CONFIDENCE,
            first_seen=event.timestamp,
            last_seen=event.timestamp,
            last_event_id=event.event_id,
            metadata=metadata,
        ))
    elif event.device_fingerprint:
        edges.append(IdentityEdge(
            anonymous_id=event.anonymous_id,
            user_id="",
            device_fingerprint=event.device_fingerprint,
            method=MatchMethod.PROBABILISTIC_DEVICE_FINGERPRINT_OBSERVATION,
            confidence=PROBABILISTIC_DEVICE_CONFIDENCE,
            first_seen=event.timestamp,
            last_seen=event.timestamp,
            last_event_id=event.event_id,
            metadata=metadata,
        ))
    return edges


def alias_request_for(event: CanonicalEvent) -> Optional[AliasMergeRequest]:
    """Identify calls that carry an email or phone trigger an alias merge"""
    if not (event.is_identify and event.user_id and event.anonymous_id):
        return None
    if not (event.email or event.phone):
        return None
    return AliasMergeRequest(event.user_id, event.email, event.phone, event.anonymous_id)


def parse_batch(
    payload: Any,
    cookies: Optional[Mapping[str, str]] = None,
    max_batch_size: Optional[int] = None,
) -> List[CanonicalEvent]:
    """Validate and parse the whole batch; raises before anything is written"""
    raw_events = coerce_batch(payload, max_batch_size)
    events = []
    for index, raw in enumerate(raw_events):
        try:
            events.append(parse_event(raw, cookies))
        except IdentityValidationError as e:
            raise IdentityValidationError(f"Invalid event at index {index}: {e}") from e
    return events


class EventIngestionService:
    """Writes events and their identity edges"""

    def __init__(
        self,
        event_repo: EventRepository,
        identity_repo: IdentityRepository,
        alias_service: AliasMergeService,
    ):
        self.event_repo = event_repo
        self.identity_repo = identity_repo
        self.alias_service = alias_service

    def ingest(self, events: Sequence[CanonicalEvent]) -> IngestionResult:
        """Persist an already parsed batch (see parse_batch)"""
        edges: List[IdentityEdge] = []
        alias_requests: List[AliasMergeRequest] = []
        for event in events:
            edges.extend(derive_edges(event))
            request = alias_request_for(event)
            if request is not None and request not in alias_requests:
                alias_requests.append(request)

        inserted = self.event_repo.insert_events(events)
        logger.info("[EventIngestion] stored %d events", inserted)

        if edges:
            try:
                self.identity_repo.insert_edges(edges)
            except StoreError as e:
                logger.error("[EventIngestion] edge insert failed after %d events were stored", inserted)
                raise PartialIngestionError(inserted, e) from e
            logger.info("[EventIngestion] stored %d identity edges", len(edges))

        merged_anonymous_ids = self._run_alias_merges(alias_requests)

        return IngestionResult(
            inserted=inserted,
            identity_edges=len(edges),
            alias_merges=len(alias_requests),
            merged_anonymous_ids=merged_anonymous_ids,
        )

    def _run_alias_merges(self, requests: Sequence[AliasMergeRequest]) -> int:
        # One merge (and graph scan) at a time.
        merged = 0
        for request in requests:
            result = self.alias_service.merge(
                user_id=request.user_id,
                email=request.email,
                phone=request.phone,
                anonymous_id=request.anonymous_id,
                source=INGESTION_SOURCE,
            )
            merged += len(result.merged_anonymous_ids)
        return merged
