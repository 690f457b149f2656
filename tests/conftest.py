"""Shared pytest fixtures for the identity graph service."""

import re
from typing import Any, Callable, List, Optional

import pytest
from fastapi.testclient import TestClient
from unittest.mock import MagicMock

from identity_graph.config import Settings
from identity_graph.main import create_app
from identity_graph.repositories.clickhouse import ClickHouseStore

API_KEY = "test-events-key"


class FakeClickHouseClient:
    """
    Stand-in for clickhouse_driver.Client.

    Records every execute() call. SELECTs are answered by `responder`,
    a callable (sql, params) -> list of row dicts.
    """

    def __init__(self, responder: Optional[Callable[[str, Any], List[dict]]] = None):
        self.calls = []
        self.responder = responder or (lambda sql, params: [])

    def execute(self, sql, params=None, with_column_types=False):
        self.calls.append((sql, params))
        if with_column_types:
            rows = self.responder(sql, params)
            columns = list(rows[0].keys()) if rows else []
            return [tuple(row[c] for c in columns) for row in rows], [(c, "String") for c in columns]
        return None

    @staticmethod
    def _normalized(sql: str) -> str:
        return re.sub(r"\s+", " ", sql).strip()

    def statements(self, prefix: str) -> List[tuple]:
        return [call for call in self.calls if self._normalized(call[0]).startswith(prefix)]

    def inserts_into(self, table: str) -> List[dict]:
        rows = []
        for sql, params in self.statements("INSERT INTO"):
            if f"`{table}`" in sql:
                rows.extend(params)
        return rows


@pytest.fixture
def fake_client():
    return FakeClickHouseClient()


@pytest.fixture
def store(fake_client):
    return ClickHouseStore(fake_client, "analytics")


@pytest.fixture
def settings():
    return Settings(environment="production", events_api_key=API_KEY, clickhouse_host="clickhouse")


@pytest.fixture
def app(settings, store):
    return create_app(settings=settings, store=store, profile_cache=None)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def auth_headers():
    return {"x-events-api-key": API_KEY}


@pytest.fixture
def mock_redis():
    """MagicMock standing in for redis.Redis"""
    client = MagicMock()
    client.get.return_value = None
    client.scan_iter.return_value = iter([])
    client.delete.return_value = 0
    return client


@pytest.fixture
def sample_edges():
    """
    Edge log with one chain:
    email -> anon_A -> user_1 ; anon_A device fp_X ; anon_B device fp_X (no user)
    """
    return [
        {
            "anonymous_id": "anon_A",
            "user_id": "user_1",
            "email": "jane@example.com",
            "phone": None,
            "device_fingerprint": "fp_X",
            "method": "deterministic_login",
            "confidence": 1.0,
            "last_seen": "2026-01-02 10:00:00.000",
        },
        {
            "anonymous_id": "anon_B",
            "user_id": "",
            "email": None,
            "phone": None,
            "device_fingerprint": "fp_X",
            "method": "probabilistic_device_fingerprint_observation",
            "confidence": 0.8,
            "last_seen": "2026-01-01 09:00:00.000",
        },
    ]
