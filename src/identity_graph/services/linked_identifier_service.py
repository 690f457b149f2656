"""
Linked Identifier Resolver

Breadth-first closure over the identity graph. Starting from a seed
(user id, email, phone, anonymous id) it repeatedly fetches every edge
touching any known identifier and absorbs the edge's identifiers (device
fingerprints included), until an iteration adds nothing new.

Chains like email -> anon_A -> device_X -> anon_B are found even though
no single edge links the email to anon_B.

The graph may grow while we read it, so every run is bounded by a
wall-clock timeout and optionally by an iteration cap. Hitting either
bound raises and discards all progress.
"""

import logging
import time
from typing import Any, Callable, Mapping, Optional, Union

from identity_graph.core.identity_model import IdentifierSets
from identity_graph.core.normalize import (
    normalize_anonymous_id,
    normalize_device_fingerprint,
    normalize_email,
    normalize_phone,
    normalize_user_id,
)
from identity_graph.core.predicates import IdentityPredicate, build_where_clause_from_identifiers
from identity_graph.errors import ClosureIterationLimitError, ClosureTimeoutError
from identity_graph.repositories.identity_repository import IdentityRepository

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 5000.0


def normalize_seed(seed: Mapping[str, Any]) -> IdentifierSets:
    """Seed sets from a {userId, email, phone, anonymousId} payload"""
    identifiers = IdentifierSets()
    IdentifierSets.add(identifiers.user_ids, normalize_user_id(seed.get('userId')))
    IdentifierSets.add(identifiers.emails, normalize_email(seed.get('email')))
    IdentifierSets.add(identifiers.phones, normalize_phone(seed.get('phone')))
    IdentifierSets.add(identifiers.anonymous_ids, normalize_anonymous_id(seed.get('anonymousId')))
    return identifiers


def build_identity_delete_predicate(
    identifiers: Union[IdentifierSets, Mapping[str, Any]],
) -> Optional[IdentityPredicate]:
    """Deletion predicate for either a resolved closure or a raw seed payload"""
    if not isinstance(identifiers, IdentifierSets):
        identifiers = normalize_seed(identifiers)
    return build_where_clause_from_identifiers(identifiers)


class LinkedIdentifierResolver:
    """Seeded -> Expanding -> Converged | Failed(timeout | max iterations)"""

    def __init__(
        self,
        identity_repo: IdentityRepository,
        timeout_ms: float = DEFAULT_TIMEOUT_MS,
        max_iterations: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.repo = identity_repo
        self.timeout_ms = timeout_ms
        self.max_iterations = max_iterations
        self.clock = clock

    def resolve(
        self,
        seed: Union[IdentifierSets, Mapping[str, Any]],
        max_iterations: Optional[int] = None,
        timeout_ms: Optional[float] = None,
    ) -> Optional[IdentifierSets]:
        """
        Expand seed to its full connected component.

        Returns:
            The expanded identifier sets, or None for an empty seed.

        Raises:
            ValueError: for a non-positive max_iterations or timeout_ms
            ClosureIterationLimitError, ClosureTimeoutError
        """
        identifiers = seed if isinstance(seed, IdentifierSets) else normalize_seed(seed)
        identifiers = IdentifierSets(
            identifiers.user_ids,
            identifiers.emails,
            identifiers.phones,
            identifiers.anonymous_ids,
            identifiers.device_fingerprints,
        )
        if identifiers.is_empty():
            return None

        max_iterations = max_iterations if max_iterations is not None else self.max_iterations
        if max_iterations is not None and (
            isinstance(max_iterations, bool) or not isinstance(max_iterations, int) or max_iterations < 1
        ):
            raise ValueError("maxIterations must be an integer greater than 0 when provided")

        timeout_ms = timeout_ms if timeout_ms is not None else self.timeout_ms
        if not isinstance(timeout_ms, (int, float)) or timeout_ms != timeout_ms or timeout_ms <= 0 \
                or timeout_ms == float("inf"):
            raise ValueError("timeoutMs must be a positive finite number")

        started_at = self.clock()
        iteration = 0

        while True:
            if max_iterations is not None and iteration >= max_iterations:
                raise ClosureIterationLimitError(max_iterations, self._elapsed_ms(started_at))
            self._check_deadline(started_at, timeout_ms)

            predicate = build_where_clause_from_identifiers(identifiers)
            rows = self.repo.find_linked_identifier_rows(predicate)
            iteration += 1

            expanded = False
            for row in rows:
                expanded = IdentifierSets.add(identifiers.user_ids, normalize_user_id(row.get('user_id'))) or expanded
                expanded = IdentifierSets.add(identifiers.emails, normalize_email(row.get('email'))) or expanded
                expanded = IdentifierSets.add(identifiers.phones, normalize_phone(row.get('phone'))) or expanded
                expanded = IdentifierSets.add(
                    identifiers.anonymous_ids, normalize_anonymous_id(row.get('anonymous_id'))
                ) or expanded
                expanded = IdentifierSets.add(
                    identifiers.device_fingerprints, normalize_device_fingerprint(row.get('device_fingerprint'))
                ) or expanded

            self._check_deadline(started_at, timeout_ms)
            logger.debug(
                "[LinkedIdentifiers] iteration %d: %d rows, %d identifiers",
                iteration, len(rows), identifiers.size(),
            )
            if not expanded:
                break

        logger.info(
            "[LinkedIdentifiers] converged after %d iterations with %d identifiers (%.0fms)",
            iteration, identifiers.size(), self._elapsed_ms(started_at),
        )
        return identifiers

    def _elapsed_ms(self, started_at: float) -> float:
        return (self.clock() - started_at) * 1000.0

    def _check_deadline(self, started_at: float, timeout_ms: float) -> None:
        elapsed_ms = self._elapsed_ms(started_at)
        if elapsed_ms > timeout_ms:
            raise ClosureTimeoutError(timeout_ms, elapsed_ms)
