"""Session event bus.

Events are plain dicts ``{name, payload, meta}`` validated on the way in.
Handlers run synchronously in subscription order; wildcard (``"*"``)
handlers run after the named ones. A bounded history per connection lets
HTTP clients poll status and publish progress.
"""

from __future__ import annotations

import copy
import logging
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List

from cascade.canonical_json import canonical_dumps


Event = Dict[str, Any]
Handler = Callable[[Event], None]

SESSION_STATUS = "session.status"
SESSION_JSON_CHANGED = "session.json_changed"
SESSION_RESTORED = "session.restored"
TAB_ADDED = "tab.added"
TAB_REMOVED = "tab.removed"
TAB_SELECTED = "tab.selected"
PUBLISH_PROGRESS = "publish.progress"

WILDCARD = "*"
SCHEMA_VERSION = "1"
HISTORY_LIMIT = 200

logger = logging.getLogger("cascade.session")


@dataclass
class EventError(Exception):
    message: str

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return self.message


@dataclass
class EventValidationError(EventError):
    code: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


def _fail(code: str, message: str, path: str | None = None) -> None:
    raise EventValidationError(code=code, message=message, path=path)


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _check_timestamp(value: Any) -> None:
    if not isinstance(value, str) or not value.endswith("Z"):
        _fail("META_OCCURRED_AT_INVALID", "occurred_at must be a UTC string ending with 'Z'", "meta.occurred_at")
    try:
        datetime.fromisoformat(value[:-1] + "+00:00")
    except ValueError:
        _fail("META_OCCURRED_AT_INVALID", "occurred_at must be ISO8601", "meta.occurred_at")


def validate_event(event: Any) -> None:
    if not isinstance(event, dict):
        _fail("EVENT_INVALID", "event must be object")
    if not isinstance(event.get("name"), str) or not event["name"]:
        _fail("EVENT_NAME_INVALID", "name must be non-empty string", "name")

    payload = event.get("payload")
    if not isinstance(payload, dict):
        _fail("PAYLOAD_INVALID", "payload must be an object", "payload")
    try:
        canonical_dumps(payload)
    except (TypeError, ValueError) as exc:
        _fail("PAYLOAD_INVALID", str(exc), "payload")

    meta = event.get("meta")
    if not isinstance(meta, dict):
        _fail("META_INVALID", "meta must be object", "meta")
    if not isinstance(meta.get("event_id"), str):
        _fail("META_EVENT_ID_INVALID", "event_id must be string", "meta.event_id")
    _check_timestamp(meta.get("occurred_at"))
    if meta.get("connection_id") is not None and not isinstance(meta["connection_id"], str):
        _fail("META_CONNECTION_ID_INVALID", "connection_id must be string or null", "meta.connection_id")
    if meta.get("schema_version") != SCHEMA_VERSION:
        _fail("META_SCHEMA_VERSION_INVALID", f"schema_version must be '{SCHEMA_VERSION}'", "meta.schema_version")


def make_event(name: str, payload: dict, connection_id: str | None = None, meta: dict | None = None) -> Event:
    """Build a validated event; ``meta`` overrides the generated fields."""
    envelope_meta = {
        "event_id": str(uuid.uuid4()),
        "occurred_at": _utc_now(),
        "connection_id": connection_id,
        "schema_version": SCHEMA_VERSION,
    }
    envelope_meta.update(copy.deepcopy(meta or {}))
    event = {"name": name, "payload": copy.deepcopy(payload), "meta": envelope_meta}
    validate_event(event)
    return event


class EventBus:
    def __init__(self, history_limit: int = HISTORY_LIMIT) -> None:
        self._subs: Dict[str, List[Handler]] = {}
        self._history_limit = history_limit
        self._history: Dict[str | None, Deque[Event]] = {}

    def subscribe(self, name: str, handler: Handler) -> None:
        self._subs.setdefault(name, []).append(handler)

    def unsubscribe(self, name: str, handler: Handler) -> bool:
        handlers = self._subs.get(name) or []
        if handler not in handlers:
            return False
        handlers.remove(handler)
        if not handlers:
            self._subs.pop(name, None)
        return True

    def publish(self, event: dict) -> None:
        validate_event(event)
        connection_id = event["meta"].get("connection_id")
        self._history.setdefault(connection_id, deque(maxlen=self._history_limit)).append(event)
        for handler in self._subs.get(event["name"], []) + self._subs.get(WILDCARD, []):
            try:
                handler(event)
            except Exception:
                logger.exception("event_handler_failed name=%s", event["name"])

    def emit(self, name: str, payload: dict, connection_id: str | None = None) -> Event:
        event = make_event(name, payload, connection_id)
        self.publish(event)
        return event

    def recent(self, connection_id: str | None, since: str | None = None, limit: int = 50) -> list[Event]:
        """Events for ``connection_id`` newer than event id ``since``, oldest first."""
        events = list(self._history.get(connection_id, ()))
        if since:
            ids = [e["meta"]["event_id"] for e in events]
            if since in ids:
                events = events[ids.index(since) + 1:]
        return events[-limit:] if limit > 0 else []

    def forget(self, connection_id: str | None) -> None:
        self._history.pop(connection_id, None)
