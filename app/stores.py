"""Session state record and the in-memory and file-backed session stores."""

from __future__ import annotations

import copy
import json
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger("cascade.save")


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class SessionStoreError(RuntimeError):
    pass


@dataclass(frozen=True)
class SessionState:
    connection_id: str
    solution_unique_name: str | None = None
    parent_entity_logical_name: str | None = None
    configuration_json: str | None = None
    last_modified_utc: str | None = None

    @property
    def is_valid(self) -> bool:
        return bool((self.solution_unique_name or "").strip()) and bool((self.parent_entity_logical_name or "").strip())

    def to_dict(self) -> dict:
        return {
            "connectionId": self.connection_id,
            "solutionUniqueName": self.solution_unique_name,
            "parentEntityLogicalName": self.parent_entity_logical_name,
            "configurationJson": self.configuration_json,
            "lastModifiedUtc": self.last_modified_utc,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "SessionState":
        if not isinstance(data, dict) or not isinstance(data.get("connectionId"), str):
            raise SessionStoreError("session record must be an object with connectionId")
        return cls(
            connection_id=data["connectionId"],
            solution_unique_name=data.get("solutionUniqueName"),
            parent_entity_logical_name=data.get("parentEntityLogicalName"),
            configuration_json=data.get("configurationJson"),
            last_modified_utc=data.get("lastModifiedUtc"),
        )


def _stamped(state: SessionState) -> SessionState:
    return SessionState(
        connection_id=state.connection_id,
        solution_unique_name=state.solution_unique_name,
        parent_entity_logical_name=state.parent_entity_logical_name,
        configuration_json=state.configuration_json,
        last_modified_utc=_now(),
    )


class MemorySessionStore:
    def __init__(self) -> None:
        self._sessions: Dict[str, dict] = {}

    def save(self, state: SessionState) -> SessionState:
        stamped = _stamped(state)
        self._sessions[state.connection_id] = stamped.to_dict()
        return stamped

    def load(self, connection_id: str) -> SessionState | None:
        data = self._sessions.get(connection_id)
        if data is None:
            return None
        return SessionState.from_dict(copy.deepcopy(data))

    def clear(self, connection_id: str) -> bool:
        return self._sessions.pop(connection_id, None) is not None


_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class FileSessionStore:
    """One JSON document per connection under ``root``."""

    def __init__(self, root: str | os.PathLike | None = None) -> None:
        base = root or os.getenv("CASCADE_SESSION_DIR") or Path.home() / ".cascade" / "sessions"
        self._root = Path(base)

    def _path(self, connection_id: str) -> Path:
        safe = _UNSAFE_CHARS.sub("_", connection_id or "") or "_"
        return self._root / f"{safe}.json"

    def save(self, state: SessionState) -> SessionState:
        stamped = _stamped(state)
        path = self._path(state.connection_id)
        tmp = path.with_suffix(".json.tmp")
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(stamped.to_dict(), indent=2), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            raise SessionStoreError(f"session save failed: {exc}") from exc
        return stamped

    def load(self, connection_id: str) -> SessionState | None:
        path = self._path(connection_id)
        if not path.exists():
            return None
        try:
            return SessionState.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, SessionStoreError) as exc:
            logger.warning("session_load_failed connection_id=%s error=%s", connection_id, exc)
            return None

    def clear(self, connection_id: str) -> bool:
        path = self._path(connection_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise SessionStoreError(f"session clear failed: {exc}") from exc
        return True
