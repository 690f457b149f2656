"""
Identity Repository - ClickHouse data access for the identity graph

- identity_graph is append-only; edges are never updated
- Deletion only happens through GDPR mutations scoped by a predicate
- Marts (alias candidates, customer profiles, resolved events) are
  rebuilt wholesale through staging tables
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from identity_graph.core.identity_model import AliasCandidate, IdentityEdge, IdentityProfile
from identity_graph.core.predicates import IdentityPredicate, build_email_phone_predicate
from identity_graph.core.normalize import normalize_anonymous_id
from identity_graph.repositories.clickhouse import (
    ALIAS_CANDIDATES_TABLE,
    CUSTOMER_PROFILES_TABLE,
    IDENTITY_GRAPH_TABLE,
    RESOLVED_EVENTS_TABLE,
    ClickHouseStore,
)

logger = logging.getLogger(__name__)

EDGE_DATETIME_COLUMNS = ('first_seen', 'last_seen')


class IdentityRepository:
    """Reads and appends identity_graph rows"""

    def __init__(self, store: ClickHouseStore):
        self.store = store

    def insert_edges(self, edges: Sequence[IdentityEdge]) -> int:
        """Append edges in one bulk insert"""
        rows = [edge.to_row() for edge in edges]
        return self.store.insert_rows(IDENTITY_GRAPH_TABLE, rows, EDGE_DATETIME_COLUMNS)

    def list_anonymous_ids_for_identifiers(
        self,
        email: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> List[str]:
        """
        Distinct anonymous ids ever observed with the email OR the phone.
        Both arguments must already be normalized.
        """
        predicate = build_email_phone_predicate(email, phone)
        if predicate is None:
            return []

        rows = self.store.query(f"""
            SELECT DISTINCT anonymous_id
            FROM {self.store.table(IDENTITY_GRAPH_TABLE)}
            WHERE anonymous_id != ''
              AND ({predicate.sql})
        """, predicate.params)

        anonymous_ids: List[str] = []
        for row in rows:
            anonymous_id = normalize_anonymous_id(row.get('anonymous_id'))
            if anonymous_id and anonymous_id not in anonymous_ids:
                anonymous_ids.append(anonymous_id)
        return anonymous_ids

    def find_linked_identifier_rows(self, predicate: IdentityPredicate) -> List[Dict[str, Any]]:
        """Identifier columns of every edge matching the predicate"""
        return self.store.query(f"""
            SELECT
                user_id,
                email,
                phone,
                anonymous_id,
                device_fingerprint
            FROM {self.store.table(IDENTITY_GRAPH_TABLE)}
            WHERE {predicate.sql}
        """, predicate.params)

    def delete_edges(self, predicate: IdentityPredicate) -> None:
        """Queue an asynchronous MergeTree delete mutation"""
        self.store.execute(
            f"ALTER TABLE {self.store.table(IDENTITY_GRAPH_TABLE)} DELETE WHERE {predicate.sql}",
            predicate.params,
        )

    def list_all_edges(self) -> List[Dict[str, Any]]:
        """Full edge log for mart rebuilds"""
        return self.store.query(f"""
            SELECT
                anonymous_id,
                user_id,
                email,
                phone,
                device_fingerprint,
                method,
                confidence,
                last_seen
            FROM {self.store.table(IDENTITY_GRAPH_TABLE)}
        """)

    def get_profile_rows(self, user_id: str, email: Optional[str] = None, limit: int = 10) -> List[Dict[str, Any]]:
        """Profile rollup rows for this user id or containing this email"""
        clauses = ["canonical_user_id = %(user_id)s"]
        params: Dict[str, Any] = {'user_id': user_id, 'limit': limit}
        if email:
            clauses.append("has(emails, %(email)s)")
            params['email'] = email

        return self.store.query(f"""
            SELECT
                canonical_user_id,
                anonymous_ids,
                emails,
                phones,
                device_fingerprints,
                methods AS match_methods,
                edge_count,
                toString(last_seen) AS last_seen
            FROM {self.store.table(CUSTOMER_PROFILES_TABLE)}
            WHERE {' OR '.join(clauses)}
            ORDER BY (canonical_user_id = %(user_id)s) DESC, edge_count DESC, last_seen DESC
            LIMIT %(limit)s
        """, params)

    def get_alias_candidate(self, anonymous_id: str) -> Optional[Dict[str, Any]]:
        rows = self.store.query(f"""
            SELECT anonymous_id, canonical_user_id, confidence, method
            FROM {self.store.table(ALIAS_CANDIDATES_TABLE)}
            WHERE anonymous_id = %(anonymous_id)s
            ORDER BY resolved_at DESC
            LIMIT 1
        """, {'anonymous_id': anonymous_id})
        return rows[0] if rows else None

    def replace_marts(
        self,
        candidates: Sequence[AliasCandidate],
        profiles: Sequence[IdentityProfile],
        resolved_events: Sequence[Dict[str, Any]],
    ) -> Dict[str, int]:
        """
        Rewrite all three marts. Every mart is filled in its staging table
        first; live tables are only swapped once all inserts succeeded, so a
        failed rebuild leaves the previous marts readable.
        """
        staged = [
            (ALIAS_CANDIDATES_TABLE, [candidate.to_row() for candidate in candidates], ('resolved_last_seen',)),
            (CUSTOMER_PROFILES_TABLE, [_profile_row(profile) for profile in profiles], ('last_seen',)),
            (RESOLVED_EVENTS_TABLE, list(resolved_events), ('timestamp', 'ingested_at')),
        ]

        counts: Dict[str, int] = {}
        for table, rows, datetime_columns in staged:
            staging = self.store.create_staging_table(table)
            counts[table] = self.store.insert_rows(staging, rows, datetime_columns)

        for table, _, _ in staged:
            self.store.publish_staging_table(table)
        logger.info("[IdentityRepository] published marts %s", counts)
        return counts


def _profile_row(profile: IdentityProfile) -> Dict[str, Any]:
    return {
        'canonical_user_id': profile.canonical_user_id,
        'anonymous_ids': profile.anonymous_ids,
        'emails': profile.emails,
        'phones': profile.phones,
        'device_fingerprints': profile.device_fingerprints,
        'methods': profile.match_methods,
        'last_seen': profile.last_seen,
        'edge_count': profile.edge_count,
        'max_confidence': profile.max_confidence,
    }
