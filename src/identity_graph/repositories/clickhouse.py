"""
ClickHouse Store - the one place that talks to clickhouse_driver

Constructed explicitly and passed into repositories; there is no
module-level client.
"""

import logging
import re
import socket
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from clickhouse_driver import Client
from clickhouse_driver.errors import Error as ClickHouseDriverError

from identity_graph.config import Settings
from identity_graph.core.normalize import parse_clickhouse_timestamp
from identity_graph.errors import ConfigurationError, StoreError

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z0-9_]+$")

EVENTS_TABLE = "events"
IDENTITY_GRAPH_TABLE = "identity_graph"
ALIAS_CANDIDATES_TABLE = "identity_alias_candidates"
CUSTOMER_PROFILES_TABLE = "identity_customer_profiles"
RESOLVED_EVENTS_TABLE = "identity_resolved_events"

STAGING_SUFFIX = "_staging"

_STORE_FAILURES = (ClickHouseDriverError, socket.error, EOFError)


def _checked_identifier(value: str, label: str) -> str:
    value = value.strip()
    if not _IDENTIFIER.match(value):
        raise ValueError(f"{label} must match [A-Za-z0-9_]+")
    return value


class ClickHouseStore:
    """
    Thin wrapper over clickhouse_driver.Client.

    - query(): SELECT -> list of row dicts
    - insert_rows(): bulk INSERT ... VALUES of row dicts
    - execute(): DDL and mutations
    """

    def __init__(self, client: Client, database: str = "analytics"):
        self.client = client
        self.database = _checked_identifier(database, "CLICKHOUSE_DATABASE")

    @classmethod
    def from_settings(cls, settings: Settings) -> "ClickHouseStore":
        if not settings.clickhouse_configured:
            raise ConfigurationError("ClickHouse is not configured (CLICKHOUSE_HOST missing)")
        client = Client(
            host=settings.clickhouse_host,
            port=settings.clickhouse_port,
            user=settings.clickhouse_user,
            password=settings.clickhouse_password,
            database=settings.clickhouse_database,
        )
        return cls(client, settings.clickhouse_database)

    def table(self, name: str) -> str:
        return f"`{self.database}`.`{_checked_identifier(name, 'ClickHouse table')}`"

    def query(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        try:
            rows, columns = self.client.execute(sql, params, with_column_types=True)
        except _STORE_FAILURES as e:
            logger.error("[ClickHouse] query failed: %s", e)
            raise StoreError(f"ClickHouse query failed: {e}") from e
        names = [name for name, _type in columns]
        return [dict(zip(names, row)) for row in rows]

    def insert_rows(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        datetime_columns: Iterable[str] = (),
    ) -> int:
        """
        Bulk insert row dicts. Columns listed in datetime_columns carry
        canonical 'YYYY-MM-DD HH:MM:SS.mmm' text and are converted to
        naive UTC datetimes for the native protocol.
        """
        if not rows:
            return 0

        datetime_columns = set(datetime_columns)
        columns = list(rows[0].keys())
        prepared = []
        for row in rows:
            prepared_row = dict(row)
            for column in datetime_columns:
                if column in prepared_row:
                    prepared_row[column] = parse_clickhouse_timestamp(prepared_row[column])
            prepared.append(prepared_row)

        sql = f"INSERT INTO {self.table(table)} ({', '.join(columns)}) VALUES"
        try:
            self.client.execute(sql, prepared)
        except _STORE_FAILURES as e:
            logger.error("[ClickHouse] insert into %s failed: %s", table, e)
            raise StoreError(f"ClickHouse insert failed: {e}") from e
        return len(prepared)

    def execute(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> None:
        try:
            self.client.execute(sql, params)
        except _STORE_FAILURES as e:
            logger.error("[ClickHouse] statement failed: %s", e)
            raise StoreError(f"ClickHouse statement failed: {e}") from e

    def create_staging_table(self, table: str) -> str:
        """Empty copy of a table's structure under `<table>_staging`"""
        staging = f"{table}{STAGING_SUFFIX}"
        self.execute(f"DROP TABLE IF EXISTS {self.table(staging)}")
        self.execute(f"CREATE TABLE {self.table(staging)} AS {self.table(table)}")
        return staging

    def publish_staging_table(self, table: str) -> None:
        """
        Swap a table with its staging copy in one EXCHANGE (Atomic database
        engine) and drop the previous contents.
        """
        staging = f"{table}{STAGING_SUFFIX}"
        self.execute(f"EXCHANGE TABLES {self.table(table)} AND {self.table(staging)}")
        self.execute(f"DROP TABLE IF EXISTS {self.table(staging)}")

    def ping(self) -> None:
        self.query("SELECT 1")

    def ensure_schema(self) -> None:
        """Create the event, edge and mart tables if they don't exist"""
        self.execute(f"CREATE DATABASE IF NOT EXISTS `{self.database}`")

        self.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table(EVENTS_TABLE)}
            (
                event_id UUID,
                anonymous_id String,
                user_id String,
                session_id String,
                event_name String,
                properties String,
                context String,
                timestamp DateTime64(3, 'UTC'),
                ingested_at DateTime64(3, 'UTC') DEFAULT now64(3)
            )
            ENGINE = MergeTree
            PARTITION BY toYYYYMM(timestamp)
            ORDER BY (event_name, timestamp, event_id)
        """)

        self.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table(IDENTITY_GRAPH_TABLE)}
            (
                anonymous_id String,
                user_id String,
                email Nullable(String),
                phone Nullable(String),
                device_fingerprint Nullable(String),
                confidence Float32 DEFAULT 1.0,
                method LowCardinality(String) DEFAULT 'unknown',
                first_seen DateTime64(3, 'UTC'),
                last_seen DateTime64(3, 'UTC'),
                last_event_id UUID,
                metadata String DEFAULT '{{}}',
                ingested_at DateTime64(3, 'UTC') DEFAULT now64(3)
            )
            ENGINE = MergeTree
            PARTITION BY toYYYYMM(last_seen)
            ORDER BY (anonymous_id, user_id, last_seen)
        """)

        self.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table(ALIAS_CANDIDATES_TABLE)}
            (
                anonymous_id String,
                canonical_user_id String,
                confidence Float32,
                method LowCardinality(String),
                resolved_last_seen DateTime64(3, 'UTC'),
                resolved_at DateTime64(3, 'UTC') DEFAULT now64(3)
            )
            ENGINE = MergeTree
            ORDER BY anonymous_id
        """)

        self.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table(CUSTOMER_PROFILES_TABLE)}
            (
                canonical_user_id String,
                anonymous_ids Array(String),
                emails Array(String),
                phones Array(String),
                device_fingerprints Array(String),
                methods Array(String),
                last_seen DateTime64(3, 'UTC'),
                edge_count UInt64,
                max_confidence Float32
            )
            ENGINE = MergeTree
            ORDER BY canonical_user_id
        """)

        self.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table(RESOLVED_EVENTS_TABLE)}
            (
                event_id UUID,
                anonymous_id String,
                user_id String,
                canonical_user_id Nullable(String),
                identity_confidence Float32,
                identity_method LowCardinality(String),
                session_id String,
                event_name String,
                properties String,
                context String,
                timestamp DateTime64(3, 'UTC'),
                ingested_at DateTime64(3, 'UTC')
            )
            ENGINE = MergeTree
            PARTITION BY toYYYYMM(timestamp)
            ORDER BY (event_name, timestamp, event_id)
        """)
        logger.info("[ClickHouse] schema ready in database %s", self.database)
