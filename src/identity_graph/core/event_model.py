"""
Event Wire Shapes

Two wire shapes are accepted on /identity/events:
- INTERNAL: snake_case fields (event_id, event_name, anonymous_id, ...)
- ANALYTICS_JS: Segment/RudderStack style (type, event, messageId,
  anonymousId, userId, traits, properties, context)

parse_event() classifies the raw object, extracts fields for that shape
and returns one CanonicalEvent. Nothing downstream looks at raw payloads.
"""

import json
from enum import Enum
from typing import Any, Dict, Mapping, NamedTuple, Optional, Tuple
from urllib.parse import unquote
from uuid import UUID, uuid4

from identity_graph.core.normalize import (
    format_clickhouse_timestamp,
    normalize_anonymous_id,
    normalize_device_fingerprint,
    normalize_email,
    normalize_phone,
    normalize_user_id,
    parse_iso_timestamp,
)
from identity_graph.errors import IdentityValidationError

ANONYMOUS_ID_COOKIES = ("pcc_aid", "ajs_anonymous_id")
SESSION_ID_COOKIE = "pcc_sid"

PAGE_VIEW_EVENT = "page_view"
IDENTIFY_EVENT = "identify"

_ANALYTICS_JS_MARKERS = ("type", "event", "messageId", "anonymousId", "userId", "traits")


class EventShape(str, Enum):
    INTERNAL = "internal"
    ANALYTICS_JS = "analytics_js"


class CanonicalEvent(NamedTuple):
    event_id: str
    anonymous_id: str
    user_id: str
    session_id: str
    event_name: str
    is_identify: bool
    properties_json: str
    context_json: str
    timestamp: str
    email: Optional[str]
    phone: Optional[str]
    device_fingerprint: Optional[str]

    def to_row(self) -> Dict[str, Any]:
        """Row for the events table"""
        return {
            'event_id': self.event_id,
            'anonymous_id': self.anonymous_id,
            'user_id': self.user_id,
            'session_id': self.session_id,
            'event_name': self.event_name,
            'properties': self.properties_json,
            'context': self.context_json,
            'timestamp': self.timestamp,
        }


def detect_shape(raw: Mapping[str, Any]) -> EventShape:
    if any(key in raw for key in _ANALYTICS_JS_MARKERS):
        return EventShape.ANALYTICS_JS
    return EventShape.INTERNAL


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first(*candidates: Any) -> Any:
    for candidate in candidates:
        if candidate is not None and candidate != "":
            return candidate
    return None


def safe_json_dumps(value: Any) -> str:
    """Serialize a JSON object; anything unserializable degrades to '{}'"""
    if not isinstance(value, dict):
        return "{}"
    try:
        return json.dumps(value, default=str, allow_nan=False)
    except (TypeError, ValueError, RecursionError):
        return "{}"


def read_cookie(cookies: Mapping[str, str], name: str) -> Optional[str]:
    """Percent-decoded cookie value; malformed encodings count as absent"""
    raw = cookies.get(name)
    if not raw:
        return None
    try:
        return unquote(raw, errors="strict")
    except UnicodeDecodeError:
        return None


def resolve_event_id(value: Any) -> str:
    """Keep well-formed UUIDs (idempotent retries); replace anything else"""
    if isinstance(value, str):
        try:
            return str(UUID(value.strip()))
        except ValueError:
            pass
    return str(uuid4())


def extract_device_fingerprint(properties: Dict[str, Any], context: Dict[str, Any]) -> Optional[str]:
    # Order is kept for compatibility with existing clients; it has no
    # documented rationale.
    device = _as_dict(context.get("device"))
    for candidate in (
        device.get("id"),
        context.get("device_fingerprint"),
        context.get("deviceFingerprint"),
        properties.get("device_fingerprint"),
    ):
        fingerprint = normalize_device_fingerprint(candidate)
        if fingerprint:
            return fingerprint
    return None


def _identity_signal(field: str, normalizer, *sources: Dict[str, Any]) -> Optional[str]:
    for source in sources:
        value = normalizer(source.get(field))
        if value:
            return value
    return None


class _RawFields(NamedTuple):
    event_id: Any
    event_name: Any
    event_type: Any
    anonymous_id: Any
    user_id: Any
    session_id: Any
    timestamp: Any
    properties: Dict[str, Any]
    context: Dict[str, Any]
    traits: Dict[str, Any]


def _internal_fields(raw: Mapping[str, Any]) -> _RawFields:
    context = _as_dict(raw.get("context"))
    return _RawFields(
        event_id=raw.get("event_id"),
        event_name=raw.get("event_name"),
        event_type=raw.get("type"),
        anonymous_id=raw.get("anonymous_id"),
        user_id=raw.get("user_id"),
        session_id=_first(raw.get("session_id"), context.get("session_id")),
        timestamp=raw.get("timestamp"),
        properties=_as_dict(raw.get("properties")),
        context=context,
        traits=_as_dict(raw.get("traits")),
    )


def _analytics_js_fields(raw: Mapping[str, Any]) -> _RawFields:
    context = _as_dict(raw.get("context"))
    return _RawFields(
        event_id=_first(raw.get("messageId"), raw.get("event_id")),
        event_name=_first(raw.get("event_name"), raw.get("event")),
        event_type=raw.get("type"),
        anonymous_id=_first(raw.get("anonymousId"), raw.get("anonymous_id")),
        user_id=_first(raw.get("userId"), raw.get("user_id")),
        session_id=_first(
            raw.get("sessionId"),
            raw.get("session_id"),
            context.get("sessionId"),
            context.get("session_id"),
        ),
        timestamp=_first(raw.get("timestamp"), raw.get("originalTimestamp")),
        properties=_as_dict(raw.get("properties")),
        context=context,
        traits=_as_dict(raw.get("traits")) or _as_dict(context.get("traits")),
    )


_FIELD_EXTRACTORS = {
    EventShape.INTERNAL: _internal_fields,
    EventShape.ANALYTICS_JS: _analytics_js_fields,
}


def _resolve_event_name(fields: _RawFields) -> Tuple[str, bool]:
    explicit = fields.event_name.strip() if isinstance(fields.event_name, str) else ""
    if explicit:
        return explicit, explicit == IDENTIFY_EVENT or fields.event_type == IDENTIFY_EVENT
    if fields.event_type == "page":
        return PAGE_VIEW_EVENT, False
    if fields.event_type == IDENTIFY_EVENT:
        return IDENTIFY_EVENT, True
    raise IdentityValidationError("Missing event name")


def parse_event(raw: Mapping[str, Any], cookies: Optional[Mapping[str, str]] = None) -> CanonicalEvent:
    """
    Normalize one raw event object into a CanonicalEvent.

    Raises:
        IdentityValidationError: when no event name can be resolved
    """
    cookies = cookies or {}
    fields = _FIELD_EXTRACTORS[detect_shape(raw)](raw)

    event_name, is_identify = _resolve_event_name(fields)

    anonymous_id = normalize_anonymous_id(fields.anonymous_id)
    if not anonymous_id:
        for cookie_name in ANONYMOUS_ID_COOKIES:
            anonymous_id = normalize_anonymous_id(read_cookie(cookies, cookie_name))
            if anonymous_id:
                break

    session_id = normalize_anonymous_id(fields.session_id) or normalize_anonymous_id(
        read_cookie(cookies, SESSION_ID_COOKIE)
    )

    timestamp = parse_iso_timestamp(fields.timestamp)

    properties = dict(fields.properties)
    if fields.traits:
        properties["traits"] = fields.traits

    context_traits = _as_dict(fields.context.get("traits"))
    email = _identity_signal("email", normalize_email, fields.traits, fields.properties, context_traits)
    phone = _identity_signal("phone", normalize_phone, fields.traits, fields.properties, context_traits)

    return CanonicalEvent(
        event_id=resolve_event_id(fields.event_id),
        anonymous_id=anonymous_id or "",
        user_id=normalize_user_id(fields.user_id) or "",
        session_id=session_id or "",
        event_name=event_name,
        is_identify=is_identify,
        properties_json=safe_json_dumps(properties),
        context_json=safe_json_dumps(fields.context),
        timestamp=format_clickhouse_timestamp(timestamp),
        email=email,
        phone=phone,
        device_fingerprint=extract_device_fingerprint(fields.properties, fields.context),
    )
