"""Debounced persistence of session snapshots."""

from __future__ import annotations

import asyncio
import logging
import os

import anyio

from app.stores import SessionState

logger = logging.getLogger("cascade.save")

DEFAULT_DEBOUNCE_MS = int(os.getenv("CASCADE_SAVE_DEBOUNCE_MS", "2000"))


class SaveScheduler:
    """Coalesces snapshots and writes only the last one after a quiet interval."""

    def __init__(self, store, delay_ms: int | None = None) -> None:
        self._store = store
        self._delay = (DEFAULT_DEBOUNCE_MS if delay_ms is None else delay_ms) / 1000.0
        self._handle: asyncio.TimerHandle | None = None
        self._pending: SessionState | None = None
        self._tasks: set[asyncio.Task] = set()
        self.save_count = 0
        self.failure_count = 0

    @property
    def pending(self) -> SessionState | None:
        return self._pending

    def schedule(self, state: SessionState) -> None:
        self._pending = state
        if self._handle is not None:
            self._handle.cancel()
        self._handle = asyncio.get_running_loop().call_later(self._delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._pending = None

    def _fire(self) -> None:
        self._handle = None
        state, self._pending = self._pending, None
        if state is None:
            return
        task = asyncio.get_running_loop().create_task(self._write(state))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _write(self, state: SessionState) -> bool:
        try:
            await anyio.to_thread.run_sync(self._store.save, state)
        except Exception as exc:
            self.failure_count += 1
            logger.warning("session_save_failed connection_id=%s error=%s", state.connection_id, exc)
            return False
        self.save_count += 1
        logger.info(
            "session_saved connection_id=%s solution=%s parent=%s",
            state.connection_id,
            state.solution_unique_name,
            state.parent_entity_logical_name,
        )
        return True

    async def flush(self) -> bool:
        """Write the pending snapshot now and wait for in-flight writes."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        state, self._pending = self._pending, None
        if self._tasks:
            await asyncio.gather(*list(self._tasks))
        if state is None:
            return True
        return await self._write(state)
