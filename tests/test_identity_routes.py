"""Tests for the /identity HTTP endpoints."""

import pytest
from fastapi.testclient import TestClient

from identity_graph.config import Settings
from identity_graph.main import create_app

from conftest import API_KEY

IDENTITY_ENDPOINTS = [
    ("post", "/identity/events", {"json": {"event_name": "page_view"}}),
    ("post", "/identity/alias", {"json": {"userId": "user_1", "email": "a@example.com"}}),
    ("get", "/identity/admin", {"params": {"user_id": "user_1"}}),
    ("get", "/identity/resolve", {"params": {"anonymous_id": "anon_1"}}),
    ("post", "/identity/gdpr", {"json": {"email": "a@example.com"}}),
    ("delete", "/identity/gdpr", {"json": {"email": "a@example.com"}}),
]


def send(client, method, path, headers=None, **kwargs):
    if method == "delete":
        # httpx's delete() takes no body
        return client.request("DELETE", path, headers=headers, **kwargs)
    return getattr(client, method)(path, headers=headers, **kwargs)


class TestAuth:
    """Test the shared-secret header check."""

    @pytest.mark.parametrize("method,path,kwargs", IDENTITY_ENDPOINTS)
    def test_missing_key_is_rejected(self, client, fake_client, method, path, kwargs):
        response = send(client, method, path, **kwargs)
        assert response.status_code == 401
        assert response.json() == {"ok": False, "error": "Unauthorized"}
        assert fake_client.calls == []

    def test_wrong_key_is_rejected(self, client):
        response = client.post("/identity/events", json={"event_name": "x"}, headers={"x-events-api-key": "nope"})
        assert response.status_code == 401

    @pytest.mark.parametrize("method,path,kwargs", IDENTITY_ENDPOINTS)
    def test_unconfigured_key_outside_development(self, store, fake_client, method, path, kwargs):
        app = create_app(Settings(environment="production", clickhouse_host="clickhouse"), store)
        response = send(TestClient(app), method, path, headers={"x-events-api-key": "anything"}, **kwargs)
        assert response.status_code == 500
        assert "EVENTS_API_KEY" in response.json()["error"]
        assert fake_client.calls == []

    @pytest.mark.parametrize("path", ["/identity/events", "/identity/alias", "/identity/gdpr"])
    def test_key_checked_before_body_is_parsed(self, client, fake_client, path):
        response = client.post(path, content=b"{not json", headers={"content-type": "application/json"})
        assert response.status_code == 401
        assert response.json() == {"ok": False, "error": "Unauthorized"}
        assert fake_client.calls == []

    def test_unconfigured_key_reported_before_body_is_parsed(self, store):
        app = create_app(Settings(environment="production", clickhouse_host="clickhouse"), store)
        response = TestClient(app).post("/identity/events", content=b"{not json")
        assert response.status_code == 500
        assert "EVENTS_API_KEY" in response.json()["error"]

    def test_development_skips_check(self, store):
        app = create_app(Settings(environment="development", clickhouse_host="clickhouse"), store)
        response = TestClient(app).post("/identity/events", json={"event_name": "page_view"})
        assert response.status_code == 200


class TestEventsEndpoint:
    """Test POST /identity/events."""

    def test_single_event(self, client, auth_headers, fake_client):
        response = client.post("/identity/events", json={"event_name": "page_view"}, headers=auth_headers)
        assert response.status_code == 200
        assert response.json() == {"ok": True, "inserted": 1}
        assert len(fake_client.inserts_into("events")) == 1

    def test_analytics_js_batch(self, client, auth_headers, fake_client):
        batch = [
            {"type": "page", "anonymousId": "anon_1", "context": {"device": {"id": "fp_1"}}},
            {"type": "identify", "anonymousId": "anon_1", "userId": "user_1", "traits": {"email": "a@example.com"}},
        ]
        response = client.post("/identity/events", json=batch, headers=auth_headers)
        assert response.json() == {"ok": True, "inserted": 2}
        methods = [row["method"] for row in fake_client.inserts_into("identity_graph")]
        assert methods[:2] == ["probabilistic_device_fingerprint_observation", "deterministic_login"]
        assert methods[2:] == ["deterministic_email"]

    def test_non_object_element_writes_nothing(self, client, auth_headers, fake_client):
        response = client.post("/identity/events", json=[{"event_name": "a"}, 7], headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["ok"] is False
        assert "index 1" in response.json()["error"]
        assert fake_client.calls == []

    def test_empty_array(self, client, auth_headers, fake_client):
        response = client.post("/identity/events", json=[], headers=auth_headers)
        assert response.status_code == 400
        assert "at least one event" in response.json()["error"]
        assert fake_client.calls == []

    def test_missing_event_name(self, client, auth_headers, fake_client):
        response = client.post("/identity/events", json={"anonymous_id": "anon_1"}, headers=auth_headers)
        assert response.status_code == 400
        assert fake_client.calls == []

    def test_invalid_json(self, client, auth_headers):
        response = client.post(
            "/identity/events",
            content=b"{not json",
            headers=dict(auth_headers, **{"content-type": "application/json"}),
        )
        assert response.status_code == 400
        assert response.json() == {"ok": False, "error": "Invalid JSON"}

    def test_empty_body(self, client, auth_headers, fake_client):
        response = client.post("/identity/events", content=b"", headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["ok"] is False
        assert fake_client.calls == []

    def test_out_of_range_timestamp_is_replaced(self, client, auth_headers, fake_client):
        event = {"event_name": "page_view", "timestamp": "0001-01-01T00:00:00+01:00"}
        response = client.post("/identity/events", json=event, headers=auth_headers)
        assert response.status_code == 200
        assert fake_client.inserts_into("events")[0]["timestamp"].year >= 2026

    def test_anonymous_id_from_cookie(self, client, auth_headers, fake_client):
        headers = dict(auth_headers, cookie="ajs_anonymous_id=anon%20cookie; pcc_sid=sess_1")
        client.post("/identity/events", json={"event_name": "page_view"}, headers=headers)
        row = fake_client.inserts_into("events")[0]
        assert row["anonymous_id"] == "anon cookie"
        assert row["session_id"] == "sess_1"

    def test_malformed_cookie_tolerated(self, client, auth_headers, fake_client):
        headers = dict(auth_headers, cookie="pcc_aid=%E0%A4%A")
        response = client.post("/identity/events", json={"event_name": "page_view"}, headers=headers)
        assert response.status_code == 200
        assert fake_client.inserts_into("events")[0]["anonymous_id"] == ""

    def test_store_not_configured(self, auth_headers):
        app = create_app(Settings(environment="production", events_api_key=API_KEY))
        client = TestClient(app)

        invalid = client.post("/identity/events", json=[], headers=auth_headers)
        assert invalid.status_code == 400

        response = client.post("/identity/events", json={"event_name": "page_view"}, headers=auth_headers)
        assert response.status_code == 500
        assert response.json() == {"ok": False, "error": "ClickHouse is not configured (CLICKHOUSE_HOST missing)"}

    def test_partial_ingestion_is_500(self, client, auth_headers, fake_client):
        execute = fake_client.execute

        def failing_edges(sql, params=None, with_column_types=False):
            if sql.startswith("INSERT") and "`identity_graph`" in sql:
                raise EOFError("Unexpected EOF while reading bytes")
            return execute(sql, params, with_column_types)

        fake_client.execute = failing_edges
        response = client.post(
            "/identity/events",
            json={"type": "track", "event": "Signed In", "anonymousId": "anon_1", "userId": "user_1"},
            headers=auth_headers,
        )
        assert response.status_code == 500
        assert "Stored 1 events" in response.json()["error"]


class TestAliasEndpoint:
    """Test POST /identity/alias."""

    def test_merge(self, client, auth_headers, fake_client):
        fake_client.responder = lambda sql, params: [{"anonymous_id": "anon_old"}]
        response = client.post(
            "/identity/alias",
            json={"userId": " user_1 ", "phone": "+1 (555) 123-4567", "anonymousId": "anon_now"},
            headers=auth_headers,
        )
        assert response.status_code == 200
        assert response.json() == {
            "ok": True,
            "userId": "user_1",
            "mergedAnonymousIds": ["anon_old", "anon_now"],
            "mergedCount": 2,
            "insertedRows": 2,
        }
        _, params = fake_client.calls[0]
        assert params == {"phones": ("15551234567",)}

    def test_missing_user_id(self, client, auth_headers, fake_client):
        response = client.post("/identity/alias", json={"email": "a@example.com"}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "userId is required"
        assert fake_client.calls == []

    def test_missing_email_and_phone(self, client, auth_headers, fake_client):
        response = client.post(
            "/identity/alias", json={"userId": "user_1", "email": "not-an-email"}, headers=auth_headers,
        )
        assert response.status_code == 400
        assert response.json()["error"] == "At least one of email or phone is required"
        assert fake_client.calls == []

    def test_non_object_body(self, client, auth_headers):
        response = client.post("/identity/alias", json=["user_1"], headers=auth_headers)
        assert response.status_code == 400


class TestAdminEndpoint:
    """Test GET /identity/admin."""

    def test_profile(self, client, auth_headers, fake_client):
        fake_client.responder = lambda sql, params: [{
            "canonical_user_id": "user_1",
            "anonymous_ids": ["anon_A", "anon_B"],
            "emails": ["jane@example.com"],
            "phones": [],
            "device_fingerprints": ["fp_X"],
            "match_methods": ["deterministic_login"],
            "edge_count": 3,
            "last_seen": "2026-01-02 10:00:00.000",
        }]
        response = client.get("/identity/admin", params={"user_id": "user_1"}, headers=auth_headers)
        assert response.status_code == 200
        profile = response.json()["profile"]
        assert profile["canonicalUserId"] == "user_1"
        assert profile["anonymousIds"] == ["anon_A", "anon_B"]
        assert profile["edgeCount"] == 3

    def test_unknown_user_gets_empty_profile(self, client, auth_headers):
        response = client.get("/identity/admin", params={"user_id": "ghost"}, headers=auth_headers)
        assert response.json()["profile"] == {
            "canonicalUserId": "ghost",
            "anonymousIds": [],
            "emails": [],
            "phones": [],
            "deviceFingerprints": [],
            "matchMethods": [],
            "edgeCount": 0,
            "lastSeen": None,
        }

    def test_requires_user_id(self, client, auth_headers, fake_client):
        response = client.get("/identity/admin", headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "user_id query param is required"
        assert fake_client.calls == []


class TestResolveEndpoint:
    """Test GET /identity/resolve."""

    def test_resolved(self, client, auth_headers, fake_client):
        fake_client.responder = lambda sql, params: [{
            "anonymous_id": "anon_B",
            "canonical_user_id": "user_1",
            "confidence": 0.8,
            "method": "probabilistic_device_fingerprint",
        }]
        response = client.get("/identity/resolve", params={"anonymous_id": "anon_B"}, headers=auth_headers)
        assert response.json() == {
            "ok": True,
            "anonymousId": "anon_B",
            "canonicalUserId": "user_1",
            "confidence": 0.8,
            "method": "probabilistic_device_fingerprint",
        }

    def test_unresolved(self, client, auth_headers):
        response = client.get("/identity/resolve", params={"anonymous_id": "anon_Z"}, headers=auth_headers)
        assert response.json()["canonicalUserId"] is None
        assert response.json()["method"] == "unresolved"

    def test_requires_anonymous_id(self, client, auth_headers):
        response = client.get("/identity/resolve", params={"anonymous_id": "  "}, headers=auth_headers)
        assert response.status_code == 400


class TestGdprEndpoint:
    """Test POST and DELETE /identity/gdpr."""

    @pytest.fixture
    def linked_rows(self, fake_client):
        fake_client.responder = lambda sql, params: [{
            "user_id": "user_1",
            "email": "jane@example.com",
            "phone": "",
            "anonymous_id": "anon_1",
            "device_fingerprint": "",
        }]

    @pytest.mark.parametrize("method", ["post", "delete"])
    def test_queues_mutation(self, client, auth_headers, fake_client, linked_rows, method):
        response = send(client, method, "/identity/gdpr", headers=auth_headers, json={"email": "Jane@Example.com"})

        assert response.status_code == 200
        body = response.json()
        assert body["mutationQueued"] is True
        assert body["identifierCount"] == 3
        assert "asynchronous" in body["note"]

        mutations = fake_client.statements("ALTER TABLE")
        assert len(mutations) == 1
        _, params = mutations[0]
        assert params == {"user_ids": ("user_1",), "emails": ("jane@example.com",), "anonymous_ids": ("anon_1",)}

    def test_requires_identifier(self, client, auth_headers, fake_client):
        response = client.post("/identity/gdpr", json={"email": "nope", "phone": "12"}, headers=auth_headers)
        assert response.status_code == 400
        assert "At least one identifier is required" in response.json()["error"]
        assert fake_client.calls == []

    def test_closure_limit_is_500(self, store, auth_headers, fake_client):
        fresh = iter(range(1000))
        fake_client.responder = lambda sql, params: [{"user_id": f"user_{next(fresh)}"}]
        settings = Settings(
            environment="production", events_api_key=API_KEY, clickhouse_host="clickhouse",
            closure_max_iterations=3,
        )
        response = TestClient(create_app(settings, store)).post(
            "/identity/gdpr", json={"userId": "seed"}, headers=auth_headers,
        )
        assert response.status_code == 500
        assert "maxIterations=3" in response.json()["error"]
        assert fake_client.statements("ALTER TABLE") == []


class TestServiceEndpoints:
    """Test / and /health."""

    def test_root(self, client):
        body = client.get("/").json()
        assert body["status"] == "running"
        assert body["endpoints"]["gdpr"] == "/identity/gdpr"

    def test_health(self, client, fake_client):
        fake_client.responder = lambda sql, params: [{"1": 1}]
        assert client.get("/health").json() == {"status": "healthy", "clickhouse": "ok"}

    def test_health_without_store(self):
        client = TestClient(create_app(Settings(environment="development")))
        assert client.get("/health").json()["status"] == "unhealthy"
