"""
Identity Graph Domain Models

- Edges are append-only observations, never mutated
- confidence 1.0 = deterministic (login, identify with email/phone)
- confidence < 1.0 = probabilistic (shared device fingerprint, no login)
- An edge with an empty user_id is raw signal, not a canonical identity
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4

from identity_graph.core.normalize import format_clickhouse_timestamp

DETERMINISTIC_CONFIDENCE = 1.0
PROBABILISTIC_DEVICE_CONFIDENCE = 0.8


class MatchMethod(str, Enum):
    """Method tags written to identity_graph.method"""
    # Deterministic
    DETERMINISTIC_LOGIN = "deterministic_login"
    DETERMINISTIC_USER_ID = "deterministic_user_id"
    DETERMINISTIC_EMAIL_PHONE = "deterministic_email_phone"
    DETERMINISTIC_EMAIL = "deterministic_email"
    DETERMINISTIC_PHONE = "deterministic_phone"

    # Probabilistic
    PROBABILISTIC_DEVICE_FINGERPRINT_OBSERVATION = "probabilistic_device_fingerprint_observation"
    PROBABILISTIC_DEVICE_FINGERPRINT = "probabilistic_device_fingerprint"

    UNRESOLVED = "unresolved"


class IdentityEdge:
    """
    One observation linking an anonymous id to a user id plus auxiliary
    identifiers. user_id may be empty for anonymous-only observations.
    """

    def __init__(
        self,
        anonymous_id: str,
        user_id: str,
        method: MatchMethod,
        confidence: float,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        device_fingerprint: Optional[str] = None,
        first_seen: Optional[str] = None,
        last_seen: Optional[str] = None,
        last_event_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        if not (anonymous_id or user_id or email or phone or device_fingerprint):
            raise ValueError("Identity edge needs at least one identifier")
        if not 0.0 <= confidence <= 1.0:
            raise ValueError(f"Confidence must be within [0, 1], got {confidence}")

        seen = last_seen or first_seen or format_clickhouse_timestamp()
        self.anonymous_id = anonymous_id or ""
        self.user_id = user_id or ""
        self.email = email
        self.phone = phone
        self.device_fingerprint = device_fingerprint
        self.method = MatchMethod(method)
        self.confidence = confidence
        self.first_seen = first_seen or seen
        self.last_seen = seen
        self.last_event_id = last_event_id or str(uuid4())
        self.metadata = metadata or {}

    @property
    def is_deterministic(self) -> bool:
        return self.confidence >= DETERMINISTIC_CONFIDENCE

    def to_row(self) -> Dict[str, Any]:
        """Row for identity_graph; timestamps in canonical text form"""
        return {
            'anonymous_id': self.anonymous_id,
            'user_id': self.user_id,
            'email': self.email,
            'phone': self.phone,
            'device_fingerprint': self.device_fingerprint,
            'confidence': self.confidence,
            'method': self.method.value,
            'first_seen': self.first_seen,
            'last_seen': self.last_seen,
            'last_event_id': self.last_event_id,
            'metadata': json.dumps(self.metadata, default=str),
        }


class IdentifierSets:
    """
    Identifier sets a closure grows over. Seeds only ever carry the first
    four; device fingerprints are picked up from edges during expansion.
    """

    def __init__(
        self,
        user_ids: Optional[Set[str]] = None,
        emails: Optional[Set[str]] = None,
        phones: Optional[Set[str]] = None,
        anonymous_ids: Optional[Set[str]] = None,
        device_fingerprints: Optional[Set[str]] = None,
    ):
        self.user_ids = set(user_ids or ())
        self.emails = set(emails or ())
        self.phones = set(phones or ())
        self.anonymous_ids = set(anonymous_ids or ())
        self.device_fingerprints = set(device_fingerprints or ())

    @staticmethod
    def add(target: Set[str], value: Optional[str]) -> bool:
        """Add value; True only if the set actually grew"""
        if not value or value in target:
            return False
        target.add(value)
        return True

    def is_empty(self) -> bool:
        return not (
            self.user_ids or self.emails or self.phones or self.anonymous_ids or self.device_fingerprints
        )

    def size(self) -> int:
        return (
            len(self.user_ids) + len(self.emails) + len(self.phones)
            + len(self.anonymous_ids) + len(self.device_fingerprints)
        )

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            'userIds': sorted(self.user_ids),
            'emails': sorted(self.emails),
            'phones': sorted(self.phones),
            'anonymousIds': sorted(self.anonymous_ids),
            'deviceFingerprints': sorted(self.device_fingerprints),
        }


class AliasCandidate:
    """Best canonical user for one anonymous id"""

    def __init__(
        self,
        anonymous_id: str,
        canonical_user_id: str,
        confidence: float,
        method: MatchMethod,
        resolved_last_seen: Optional[datetime] = None,
        method_rank: int = 0,
    ):
        self.anonymous_id = anonymous_id
        self.canonical_user_id = canonical_user_id
        self.confidence = confidence
        self.method = MatchMethod(method)
        self.resolved_last_seen = resolved_last_seen
        self.method_rank = method_rank

    def to_row(self) -> Dict[str, Any]:
        return {
            'anonymous_id': self.anonymous_id,
            'canonical_user_id': self.canonical_user_id,
            'confidence': self.confidence,
            'method': self.method.value,
            'resolved_last_seen': self.resolved_last_seen,
        }


class IdentityProfile:
    """
    Derived rollup of every edge attributed to one canonical user.
    Never stored as source of truth; rebuilt from identity_graph.
    """

    def __init__(
        self,
        canonical_user_id: str,
        anonymous_ids: Optional[List[str]] = None,
        emails: Optional[List[str]] = None,
        phones: Optional[List[str]] = None,
        device_fingerprints: Optional[List[str]] = None,
        match_methods: Optional[List[str]] = None,
        edge_count: int = 0,
        last_seen: Optional[str] = None,
        max_confidence: float = 0.0,
    ):
        self.canonical_user_id = canonical_user_id
        self.anonymous_ids = anonymous_ids or []
        self.emails = emails or []
        self.phones = phones or []
        self.device_fingerprints = device_fingerprints or []
        self.match_methods = match_methods or []
        self.edge_count = edge_count
        self.last_seen = last_seen
        self.max_confidence = max_confidence

    def to_dict(self) -> Dict[str, Any]:
        return {
            'canonicalUserId': self.canonical_user_id,
            'anonymousIds': self.anonymous_ids,
            'emails': self.emails,
            'phones': self.phones,
            'deviceFingerprints': self.device_fingerprints,
            'matchMethods': self.match_methods,
            'edgeCount': self.edge_count,
            'lastSeen': self.last_seen,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IdentityProfile":
        return cls(
            canonical_user_id=data['canonicalUserId'],
            anonymous_ids=data.get('anonymousIds'),
            emails=data.get('emails'),
            phones=data.get('phones'),
            device_fingerprints=data.get('deviceFingerprints'),
            match_methods=data.get('matchMethods'),
            edge_count=int(data.get('edgeCount') or 0),
            last_seen=data.get('lastSeen'),
        )
