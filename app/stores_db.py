"""DB-backed session store."""

from __future__ import annotations

import logging

import psycopg2

from app.db import execute, fetch_one, get_conn
from app.stores import SessionState, SessionStoreError, _now

logger = logging.getLogger("cascade.db")

_TABLE_READY = False


def _to_iso(value):
    if value is None:
        return None
    if hasattr(value, "strftime"):
        return value.strftime("%Y-%m-%dT%H:%M:%SZ")
    return str(value)


class DbSessionStore:
    def _ensure_table(self) -> None:
        global _TABLE_READY
        if _TABLE_READY:
            return
        with get_conn() as conn:
            execute(
                conn,
                """
                create table if not exists configurator_sessions (
                  connection_id text primary key,
                  solution_unique_name text null,
                  parent_entity_logical_name text null,
                  configuration_json text null,
                  last_modified_utc timestamptz not null default now()
                );
                """,
                query_name="configurator_sessions.ensure_table",
            )
        _TABLE_READY = True
        logger.info("auto_migration_applied table=configurator_sessions")

    def save(self, state: SessionState) -> SessionState:
        try:
            self._ensure_table()
            with get_conn() as conn:
                row = fetch_one(
                    conn,
                    """
                    insert into configurator_sessions
                      (connection_id, solution_unique_name, parent_entity_logical_name, configuration_json, last_modified_utc)
                    values (%s, %s, %s, %s, %s)
                    on conflict (connection_id) do update set
                      solution_unique_name = excluded.solution_unique_name,
                      parent_entity_logical_name = excluded.parent_entity_logical_name,
                      configuration_json = excluded.configuration_json,
                      last_modified_utc = excluded.last_modified_utc
                    returning last_modified_utc
                    """,
                    [
                        state.connection_id,
                        state.solution_unique_name,
                        state.parent_entity_logical_name,
                        state.configuration_json,
                        _now(),
                    ],
                    query_name="configurator_sessions.upsert",
                )
        except psycopg2.Error as exc:
            raise SessionStoreError(f"session save failed: {exc}") from exc
        return SessionState(
            connection_id=state.connection_id,
            solution_unique_name=state.solution_unique_name,
            parent_entity_logical_name=state.parent_entity_logical_name,
            configuration_json=state.configuration_json,
            last_modified_utc=_to_iso(row["last_modified_utc"]) if row else None,
        )

    def load(self, connection_id: str) -> SessionState | None:
        try:
            self._ensure_table()
            with get_conn() as conn:
                row = fetch_one(
                    conn,
                    """
                    select connection_id, solution_unique_name, parent_entity_logical_name,
                           configuration_json, last_modified_utc
                    from configurator_sessions where connection_id=%s
                    """,
                    [connection_id],
                    query_name="configurator_sessions.get",
                )
        except psycopg2.Error as exc:
            logger.warning("session_load_failed connection_id=%s error=%s", connection_id, exc)
            return None
        if not row:
            return None
        return SessionState(
            connection_id=row["connection_id"],
            solution_unique_name=row.get("solution_unique_name"),
            parent_entity_logical_name=row.get("parent_entity_logical_name"),
            configuration_json=row.get("configuration_json"),
            last_modified_utc=_to_iso(row.get("last_modified_utc")),
        )

    def clear(self, connection_id: str) -> bool:
        try:
            self._ensure_table()
            with get_conn() as conn:
                row = fetch_one(
                    conn,
                    "delete from configurator_sessions where connection_id=%s returning connection_id",
                    [connection_id],
                    query_name="configurator_sessions.delete",
                )
        except psycopg2.Error as exc:
            raise SessionStoreError(f"session clear failed: {exc}") from exc
        return bool(row)
