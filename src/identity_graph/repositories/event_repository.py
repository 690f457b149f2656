"""
Event Repository - ClickHouse data access for the events fact log
"""
from typing import Any, Dict, List, Sequence

from identity_graph.core.event_model import CanonicalEvent
from identity_graph.repositories.clickhouse import EVENTS_TABLE, ClickHouseStore


class EventRepository:
    """Repository for the append-only events table"""

    def __init__(self, store: ClickHouseStore):
        self.store = store

    def insert_events(self, events: Sequence[CanonicalEvent]) -> int:
        """Append a batch of events in one bulk insert"""
        rows = [event.to_row() for event in events]
        return self.store.insert_rows(EVENTS_TABLE, rows, ('timestamp',))

    def list_events(self) -> List[Dict[str, Any]]:
        """Full event log for the resolved events mart; timestamps as canonical text"""
        return self.store.query(f"""
            SELECT
                toString(event_id) AS event_id,
                anonymous_id,
                user_id,
                session_id,
                event_name,
                properties,
                context,
                toString(timestamp) AS timestamp,
                toString(ingested_at) AS ingested_at
            FROM {self.store.table(EVENTS_TABLE)}
        """)
