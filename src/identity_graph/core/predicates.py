"""
Identity graph predicates

Pure builders for the WHERE clauses used to look up, expand and delete
identity_graph rows. Values travel as clickhouse_driver parameters, the
SQL text only references them by name.
"""

from typing import Any, Dict, NamedTuple, Optional, Set, Tuple

from identity_graph.core.identity_model import IdentifierSets

# Stored phones may predate normalization, so compare on digits only.
PHONE_DIGITS_SQL = "replaceRegexpAll(ifNull(phone, ''), '[^0-9]', '')"
EMAIL_SQL = "lower(email)"


class IdentityPredicate(NamedTuple):
    sql: str
    params: Dict[str, Any]


def _sorted_tuple(values: Set[str]) -> Tuple[str, ...]:
    return tuple(sorted(values))


def build_where_clause_from_identifiers(identifiers: IdentifierSets) -> Optional[IdentityPredicate]:
    """
    OR together membership tests over every non-empty identifier set.

    Returns None when every set is empty (nothing to match).
    """
    clauses = []
    params: Dict[str, Any] = {}

    if identifiers.user_ids:
        clauses.append("user_id IN %(user_ids)s")
        params['user_ids'] = _sorted_tuple(identifiers.user_ids)

    if identifiers.emails:
        clauses.append(f"{EMAIL_SQL} IN %(emails)s")
        params['emails'] = _sorted_tuple(identifiers.emails)

    if identifiers.phones:
        clauses.append(f"{PHONE_DIGITS_SQL} IN %(phones)s")
        params['phones'] = _sorted_tuple(identifiers.phones)

    if identifiers.anonymous_ids:
        clauses.append("anonymous_id IN %(anonymous_ids)s")
        params['anonymous_ids'] = _sorted_tuple(identifiers.anonymous_ids)

    if identifiers.device_fingerprints:
        clauses.append("device_fingerprint IN %(device_fingerprints)s")
        params['device_fingerprints'] = _sorted_tuple(identifiers.device_fingerprints)

    if not clauses:
        return None
    return IdentityPredicate(" OR ".join(f"({clause})" for clause in clauses), params)


def build_email_phone_predicate(email: Optional[str], phone: Optional[str]) -> Optional[IdentityPredicate]:
    """Match rows observed with an (already normalized) email and/or phone"""
    return build_where_clause_from_identifiers(IdentifierSets(
        emails={email} if email else None,
        phones={phone} if phone else None,
    ))
