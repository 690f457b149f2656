"""Tests for wire-shape classification and parse_event."""

import json
import re
from uuid import UUID

import pytest

from identity_graph.core.event_model import (
    EventShape,
    detect_shape,
    extract_device_fingerprint,
    parse_event,
    read_cookie,
    resolve_event_id,
    safe_json_dumps,
)
from identity_graph.errors import IdentityValidationError

CANONICAL_TS = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\.\d{3}$")
EVENT_ID = "6f1c2f9e-8a55-4c5e-9a43-0b6c1d2e3f40"


class TestShapeDetection:
    """Test detect_shape."""

    def test_internal_shape(self):
        assert detect_shape({"event_name": "signup", "anonymous_id": "a"}) == EventShape.INTERNAL

    @pytest.mark.parametrize("marker", ["type", "event", "messageId", "anonymousId", "userId", "traits"])
    def test_analytics_js_markers(self, marker):
        assert detect_shape({marker: "x"}) == EventShape.ANALYTICS_JS


class TestEventName:
    """Test event name resolution."""

    def test_explicit_name(self):
        assert parse_event({"event_name": "course_viewed"}).event_name == "course_viewed"
        assert parse_event({"event": "Order Completed"}).event_name == "Order Completed"

    def test_page_type_becomes_page_view(self):
        event = parse_event({"type": "page", "anonymousId": "anon_1"})
        assert event.event_name == "page_view"
        assert event.is_identify is False

    def test_identify_type(self):
        event = parse_event({"type": "identify", "userId": "user_1"})
        assert event.event_name == "identify"
        assert event.is_identify is True

    def test_missing_name_raises(self):
        with pytest.raises(IdentityValidationError, match="Missing event name"):
            parse_event({"anonymous_id": "anon_1"})

    def test_blank_name_falls_through_to_type(self):
        assert parse_event({"type": "page", "event": "   "}).event_name == "page_view"


class TestEventIds:
    """Test event id resolution."""

    def test_valid_uuid_is_kept(self):
        assert resolve_event_id(EVENT_ID) == EVENT_ID
        assert parse_event({"event_name": "x", "event_id": EVENT_ID}).event_id == EVENT_ID
        assert parse_event({"type": "page", "messageId": EVENT_ID}).event_id == EVENT_ID

    @pytest.mark.parametrize("value", ["not-a-uuid", "", None, 12345])
    def test_invalid_ids_are_replaced(self, value):
        replaced = resolve_event_id(value)
        assert replaced != value
        UUID(replaced)


class TestIdentifiersAndCookies:
    """Test anonymous id, user id and session id resolution."""

    def test_analytics_js_fields(self):
        event = parse_event({
            "type": "track",
            "event": "clicked",
            "anonymousId": " anon_1 ",
            "userId": "user_1",
            "context": {"sessionId": "sess_1"},
        })
        assert event.anonymous_id == "anon_1"
        assert event.user_id == "user_1"
        assert event.session_id == "sess_1"

    def test_missing_identifiers_are_empty_strings(self):
        event = parse_event({"event_name": "x"})
        assert event.anonymous_id == ""
        assert event.user_id == ""
        assert event.session_id == ""

    def test_anonymous_id_from_cookie(self):
        event = parse_event({"event_name": "x"}, {"pcc_aid": "anon%20cookie", "pcc_sid": "sess_9"})
        assert event.anonymous_id == "anon cookie"
        assert event.session_id == "sess_9"

    def test_explicit_id_beats_cookie(self):
        event = parse_event({"event_name": "x", "anonymous_id": "anon_body"}, {"pcc_aid": "anon_cookie"})
        assert event.anonymous_id == "anon_body"

    def test_segment_cookie_is_second_choice(self):
        event = parse_event({"event_name": "x"}, {"ajs_anonymous_id": "anon_ajs"})
        assert event.anonymous_id == "anon_ajs"

    def test_malformed_cookie_is_ignored(self):
        """Test that a bad percent-encoding is treated as absent."""
        assert read_cookie({"pcc_aid": "%E0%A4%A"}, "pcc_aid") is None
        event = parse_event({"event_name": "x"}, {"pcc_aid": "%E0%A4%A", "ajs_anonymous_id": "anon_ok"})
        assert event.anonymous_id == "anon_ok"


class TestTimestampsAndPayload:
    """Test timestamp and properties handling."""

    def test_iso_timestamp_reformatted(self):
        event = parse_event({"event_name": "x", "timestamp": "2026-01-02T10:00:00.250Z"})
        assert event.timestamp == "2026-01-02 10:00:00.250"

    def test_invalid_timestamp_uses_now(self):
        event = parse_event({"event_name": "x", "timestamp": "last tuesday"})
        assert CANONICAL_TS.match(event.timestamp)

    @pytest.mark.parametrize("value", ["0001-01-01T00:00:00+01:00", "9999-12-31T23:59:59-01:00"])
    def test_out_of_range_timestamp_uses_now(self, value):
        event = parse_event({"event_name": "x", "timestamp": value})
        assert CANONICAL_TS.match(event.timestamp)
        assert 2026 <= int(event.timestamp[:4]) <= 2299

    def test_traits_merged_into_properties(self):
        event = parse_event({
            "type": "identify",
            "userId": "user_1",
            "traits": {"email": "Jane@Example.com", "plan": "pro"},
            "properties": {"path": "/"},
        })
        properties = json.loads(event.properties_json)
        assert properties == {"path": "/", "traits": {"email": "Jane@Example.com", "plan": "pro"}}

    def test_unserializable_properties_degrade(self):
        assert safe_json_dumps({"bad": float("nan")}) == "{}"
        assert safe_json_dumps(["not", "a", "dict"]) == "{}"
        event = parse_event({"event_name": "x", "properties": "oops", "context": 5})
        assert event.properties_json == "{}"
        assert event.context_json == "{}"


class TestIdentitySignals:
    """Test email, phone and device fingerprint extraction."""

    def test_email_and_phone_from_traits(self):
        event = parse_event({
            "type": "identify",
            "userId": "user_1",
            "traits": {"email": " Jane@Example.com ", "phone": "+1 (555) 123-4567"},
        })
        assert event.email == "jane@example.com"
        assert event.phone == "15551234567"

    def test_signals_from_properties_and_context_traits(self):
        event = parse_event({
            "event_name": "signup",
            "properties": {"email": "prop@example.com"},
            "context": {"traits": {"phone": "555 123 4567"}},
        })
        assert event.email == "prop@example.com"
        assert event.phone == "5551234567"

    def test_device_fingerprint_precedence(self):
        context = {"device": {"id": "dev_id"}, "device_fingerprint": "ctx_fp", "deviceFingerprint": "ctx_camel"}
        properties = {"device_fingerprint": "prop_fp"}
        assert extract_device_fingerprint(properties, context) == "dev_id"

        del context["device"]
        assert extract_device_fingerprint(properties, context) == "ctx_fp"

        del context["device_fingerprint"]
        assert extract_device_fingerprint(properties, context) == "ctx_camel"

        assert extract_device_fingerprint(properties, {}) == "prop_fp"
        assert extract_device_fingerprint({}, {}) is None

    def test_blank_device_id_falls_through(self):
        assert extract_device_fingerprint({}, {"device": {"id": "  "}, "device_fingerprint": "fp"}) == "fp"
