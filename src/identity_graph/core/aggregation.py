"""
Edge Aggregation

Pure functions that turn the raw identity_graph edge log into:
- alias candidates: the best canonical user per anonymous id
- customer profiles: rollup of all edges per canonical user
- event attribution: canonical user for each event row
  (identity_resolved_events)

Candidate precedence per anonymous id:
1. confidence (deterministic 1.0 beats probabilistic 0.8)
2. method rank (login 3 > email/phone 2 > device fingerprint 1)
3. most recent last_seen
4. smallest canonical user id
"""

from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional

from identity_graph.core.identity_model import (
    DETERMINISTIC_CONFIDENCE,
    PROBABILISTIC_DEVICE_CONFIDENCE,
    AliasCandidate,
    IdentityProfile,
    MatchMethod,
)
from identity_graph.core.normalize import (
    format_clickhouse_timestamp,
    normalize_anonymous_id,
    normalize_device_fingerprint,
    normalize_email,
    normalize_phone,
    normalize_user_id,
    parse_clickhouse_timestamp,
)

LOGIN_RANK = 3
IDENTIFIER_RANK = 2
DEVICE_RANK = 1

_EPOCH = datetime(1970, 1, 1)


class NormalizedEdge(NamedTuple):
    anonymous_id: Optional[str]
    user_id: Optional[str]
    email: Optional[str]
    phone: Optional[str]
    device_fingerprint: Optional[str]
    method: str
    last_seen: datetime


def normalize_edge(row: Mapping[str, Any]) -> NormalizedEdge:
    return NormalizedEdge(
        anonymous_id=normalize_anonymous_id(row.get('anonymous_id')),
        user_id=normalize_user_id(row.get('user_id')),
        email=normalize_email(row.get('email')),
        phone=normalize_phone(row.get('phone')),
        device_fingerprint=normalize_device_fingerprint(row.get('device_fingerprint')),
        method=str(row.get('method') or 'unknown'),
        last_seen=parse_clickhouse_timestamp(row.get('last_seen')) or _EPOCH,
    )


def _lookup_min_user(edges: List[NormalizedEdge], field: str) -> Dict[str, str]:
    """identifier value -> smallest user id ever observed with it"""
    lookup: Dict[str, str] = {}
    for edge in edges:
        value = getattr(edge, field)
        if value and edge.user_id:
            current = lookup.get(value)
            if current is None or edge.user_id < current:
                lookup[value] = edge.user_id
    return lookup


def _collect(
    candidates: Dict[str, Dict[str, AliasCandidate]],
    anonymous_id: str,
    user_id: str,
    confidence: float,
    method: MatchMethod,
    rank: int,
    last_seen: datetime,
) -> None:
    # One candidate per (method rank, user); keep the latest observation.
    key = f"{rank}:{method.value}:{user_id}"
    existing = candidates[anonymous_id].get(key)
    if existing is None:
        candidates[anonymous_id][key] = AliasCandidate(
            anonymous_id, user_id, confidence, method, last_seen, rank
        )
    elif last_seen > existing.resolved_last_seen:
        existing.resolved_last_seen = last_seen


def _candidate_sort_key(candidate: AliasCandidate):
    seen = candidate.resolved_last_seen or _EPOCH
    return (-candidate.confidence, -candidate.method_rank, _EPOCH - seen, candidate.canonical_user_id)


def resolve_alias_candidates(
    rows: Iterable[Mapping[str, Any]],
    enable_probabilistic_matching: bool = True,
) -> Dict[str, AliasCandidate]:
    """
    Pick the canonical user for every anonymous id in the edge log.

    Returns: {anonymous_id: AliasCandidate}
    """
    edges = [normalize_edge(row) for row in rows]
    candidates: Dict[str, Dict[str, AliasCandidate]] = defaultdict(dict)

    # Login: the anonymous id's own user, latest observation wins
    latest_login: Dict[str, NormalizedEdge] = {}
    for edge in edges:
        if edge.anonymous_id and edge.user_id:
            current = latest_login.get(edge.anonymous_id)
            if current is None or edge.last_seen > current.last_seen:
                latest_login[edge.anonymous_id] = edge
    for anonymous_id, edge in latest_login.items():
        _collect(candidates, anonymous_id, edge.user_id, DETERMINISTIC_CONFIDENCE,
                 MatchMethod.DETERMINISTIC_LOGIN, LOGIN_RANK, edge.last_seen)

    lookups = [
        ('email', MatchMethod.DETERMINISTIC_EMAIL, DETERMINISTIC_CONFIDENCE, IDENTIFIER_RANK),
        ('phone', MatchMethod.DETERMINISTIC_PHONE, DETERMINISTIC_CONFIDENCE, IDENTIFIER_RANK),
    ]
    if enable_probabilistic_matching:
        lookups.append((
            'device_fingerprint', MatchMethod.PROBABILISTIC_DEVICE_FINGERPRINT,
            PROBABILISTIC_DEVICE_CONFIDENCE, DEVICE_RANK,
        ))

    for field, method, confidence, rank in lookups:
        user_lookup = _lookup_min_user(edges, field)
        for edge in edges:
            value = getattr(edge, field)
            if edge.anonymous_id and value in user_lookup:
                _collect(candidates, edge.anonymous_id, user_lookup[value],
                         confidence, method, rank, edge.last_seen)

    return {
        anonymous_id: sorted(per_anon.values(), key=_candidate_sort_key)[0]
        for anonymous_id, per_anon in candidates.items()
    }


def build_customer_profiles(
    rows: Iterable[Mapping[str, Any]],
    aliases: Mapping[str, AliasCandidate],
) -> List[IdentityProfile]:
    """
    Roll every edge up under its canonical user.

    An edge's canonical user is its own user_id, else the alias candidate
    of its anonymous id. Edges that resolve to nobody are dropped.
    """
    groups: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        edge = normalize_edge(row)
        alias = aliases.get(edge.anonymous_id) if edge.anonymous_id else None
        canonical_user_id = edge.user_id or (alias.canonical_user_id if alias else None)
        if not canonical_user_id:
            continue

        group = groups.setdefault(canonical_user_id, {
            'anonymous_ids': set(), 'emails': set(), 'phones': set(),
            'device_fingerprints': set(), 'methods': set(),
            'last_seen': _EPOCH, 'edge_count': 0, 'max_confidence': 0.0,
        })
        for field, values in (
            ('anonymous_id', 'anonymous_ids'),
            ('email', 'emails'),
            ('phone', 'phones'),
            ('device_fingerprint', 'device_fingerprints'),
        ):
            value = getattr(edge, field)
            if value:
                group[values].add(value)
        group['methods'].add(alias.method.value if alias else edge.method)
        group['last_seen'] = max(group['last_seen'], edge.last_seen)
        group['edge_count'] += 1
        group['max_confidence'] = max(
            group['max_confidence'], alias.confidence if alias else DETERMINISTIC_CONFIDENCE
        )

    return [
        IdentityProfile(
            canonical_user_id=user_id,
            anonymous_ids=sorted(group['anonymous_ids']),
            emails=sorted(group['emails']),
            phones=sorted(group['phones']),
            device_fingerprints=sorted(group['device_fingerprints']),
            match_methods=sorted(group['methods']),
            edge_count=group['edge_count'],
            last_seen=format_clickhouse_timestamp(group['last_seen']),
            max_confidence=group['max_confidence'],
        )
        for user_id, group in sorted(groups.items())
    ]


class EventAttribution(NamedTuple):
    canonical_user_id: Optional[str]
    confidence: float
    method: str


def attribute_event(event: Mapping[str, Any], aliases: Mapping[str, AliasCandidate]) -> EventAttribution:
    """Canonical user for one events row"""
    user_id = normalize_user_id(event.get('user_id'))
    if user_id:
        return EventAttribution(user_id, DETERMINISTIC_CONFIDENCE, MatchMethod.DETERMINISTIC_LOGIN.value)

    anonymous_id = normalize_anonymous_id(event.get('anonymous_id'))
    alias = aliases.get(anonymous_id) if anonymous_id else None
    if alias is None:
        return EventAttribution(None, 0.0, MatchMethod.UNRESOLVED.value)
    return EventAttribution(alias.canonical_user_id, alias.confidence, alias.method.value)


def resolve_events(
    events: Iterable[Mapping[str, Any]],
    aliases: Mapping[str, AliasCandidate],
) -> List[Dict[str, Any]]:
    """identity_resolved_events rows: every event row plus its attribution"""
    resolved = []
    for event in events:
        attribution = attribute_event(event, aliases)
        resolved.append({
            'event_id': event.get('event_id'),
            'anonymous_id': event.get('anonymous_id') or "",
            'user_id': event.get('user_id') or "",
            'canonical_user_id': attribution.canonical_user_id,
            'identity_confidence': attribution.confidence,
            'identity_method': attribution.method,
            'session_id': event.get('session_id') or "",
            'event_name': event.get('event_name') or "",
            'properties': event.get('properties') or "{}",
            'context': event.get('context') or "{}",
            'timestamp': event.get('timestamp'),
            'ingested_at': event.get('ingested_at') or event.get('timestamp'),
        })
    return resolved
