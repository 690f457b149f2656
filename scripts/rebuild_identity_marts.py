#!/usr/bin/env python3
"""
Rebuild identity marts

Recomputes identity_alias_candidates, identity_customer_profiles and
identity_resolved_events from the identity_graph edge log and the events
table. Run after GDPR mutations have completed and on a schedule to keep
profiles fresh.

Usage:
    python scripts/rebuild_identity_marts.py [--ensure-schema] [--no-probabilistic]
"""

import argparse
import logging
import sys

from identity_graph.config import Settings
from identity_graph.errors import IdentityError
from identity_graph.repositories.clickhouse import ClickHouseStore
from identity_graph.repositories.profile_cache import ProfileCache
from identity_graph.services.container import IdentityServices

logger = logging.getLogger("rebuild_identity_marts")


def main() -> int:
    parser = argparse.ArgumentParser(description="Rebuild identity marts from the identity_graph edge log")
    parser.add_argument("--ensure-schema", action="store_true", help="Create missing tables first")
    parser.add_argument(
        "--no-probabilistic",
        action="store_true",
        help="Skip device-fingerprint alias candidates",
    )
    args = parser.parse_args()

    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    try:
        store = ClickHouseStore.from_settings(settings)
        if args.ensure_schema:
            store.ensure_schema()
        services = IdentityServices(store, settings, ProfileCache.from_settings(settings))
        services.marts.enable_probabilistic_matching = not args.no_probabilistic
        counts = services.marts.rebuild()
    except IdentityError as e:
        logger.error("Mart rebuild failed: %s", e)
        return 1

    print(f"Edges read:        {counts['edges']}")
    print(f"Alias candidates:  {counts['aliasCandidates']}")
    print(f"Customer profiles: {counts['customerProfiles']}")
    print(f"Resolved events:   {counts['resolvedEvents']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
