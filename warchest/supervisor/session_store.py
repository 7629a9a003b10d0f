# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0

"""Session persistence: the store protocol and two reference stores."""
from __future__ import annotations

import asyncio
import itertools
import logging
import sqlite3
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Protocol

from warchest.time_utils import now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionRecord:
    session_id: int
    service: str
    service_instance_id: str | None
    start_slot: int | None
    start_block_time: int | None
    started_at: int
    last_heartbeat_at: int | None = None
    last_slot: int | None = None
    last_block_time: int | None = None
    ended_at: int | None = None
    end_slot: int | None = None
    end_block_time: int | None = None
    end_reason: str | None = None

    @property
    def is_open(self) -> bool:
        return self.ended_at is None


class SessionStore(Protocol):
    """Persistence collaborator for :class:`~warchest.supervisor.session.SessionManager`."""

    async def start_session(
        self,
        *,
        service: str,
        service_instance_id: str | None,
        start_slot: int,
        start_block_time: int | None,
    ) -> int: ...

    async def end_session(
        self,
        *,
        session_id: int,
        end_slot: int | None,
        end_block_time: int | None,
        reason: str,
    ) -> SessionRecord | None: ...

    async def update_session_stats(
        self,
        *,
        session_id: int,
        last_slot: int | None,
        last_block_time: int | None,
        heartbeat_at: int,
    ) -> None: ...

    async def get_active_session(self, *, service: str) -> SessionRecord | None: ...


# ── InMemorySessionStore ───────────────────────────────────


class InMemorySessionStore:
    """Process-local store; useful for tests and ephemeral runs."""

    def __init__(self) -> None:
        self.sessions: dict[int, SessionRecord] = {}
        self._ids = itertools.count(1)

    async def start_session(
        self,
        *,
        service: str,
        service_instance_id: str | None,
        start_slot: int,
        start_block_time: int | None,
    ) -> int:
        session_id = next(self._ids)
        self.sessions[session_id] = SessionRecord(
            session_id=session_id,
            service=service,
            service_instance_id=service_instance_id,
            start_slot=start_slot,
            start_block_time=start_block_time,
            started_at=now_ms(),
        )
        return session_id

    async def end_session(
        self,
        *,
        session_id: int,
        end_slot: int | None,
        end_block_time: int | None,
        reason: str,
    ) -> SessionRecord | None:
        record = self.sessions.get(session_id)
        if record is None or not record.is_open:
            return record
        record = replace(
            record,
            ended_at=now_ms(),
            end_slot=end_slot,
            end_block_time=end_block_time,
            end_reason=reason,
        )
        self.sessions[session_id] = record
        return record

    async def update_session_stats(
        self,
        *,
        session_id: int,
        last_slot: int | None,
        last_block_time: int | None,
        heartbeat_at: int,
    ) -> None:
        record = self.sessions.get(session_id)
        if record is None or not record.is_open:
            return
        self.sessions[session_id] = replace(
            record,
            last_slot=last_slot,
            last_block_time=last_block_time,
            last_heartbeat_at=heartbeat_at,
        )

    async def get_active_session(self, *, service: str) -> SessionRecord | None:
        open_rows = [r for r in self.sessions.values() if r.service == service and r.is_open]
        return max(open_rows, key=lambda r: r.session_id, default=None)


# ── SqliteSessionStore ─────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id          INTEGER PRIMARY KEY AUTOINCREMENT,
    service             TEXT NOT NULL,
    service_instance_id TEXT,
    start_slot          INTEGER,
    start_block_time    INTEGER,
    started_at          INTEGER NOT NULL,
    last_heartbeat_at   INTEGER,
    last_slot           INTEGER,
    last_block_time     INTEGER,
    ended_at            INTEGER,
    end_slot            INTEGER,
    end_block_time      INTEGER,
    end_reason          TEXT
);
CREATE INDEX IF NOT EXISTS idx_sessions_open ON sessions (service, ended_at);
"""


class SqliteSessionStore:
    """SQLite-backed session store.

    Queries run in a worker thread via :func:`asyncio.to_thread`; a lock
    serializes access to the shared connection.

    Args:
        db_path: Path to the SQLite database file.  Parent directories
            are created automatically.
    """

    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = db_path
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.executescript(_SCHEMA)
        self.conn.commit()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self.conn.close()

    @staticmethod
    def _to_record(row: sqlite3.Row | None) -> SessionRecord | None:
        if row is None:
            return None
        return SessionRecord(**dict(row))

    def _execute(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        with self._lock:
            cur = self.conn.execute(query, params)
            self.conn.commit()
            return cur

    def _fetchone(self, query: str, params: tuple[Any, ...] = ()) -> SessionRecord | None:
        with self._lock:
            row = self.conn.execute(query, params).fetchone()
        return self._to_record(row)

    # ── Store protocol ──

    async def start_session(
        self,
        *,
        service: str,
        service_instance_id: str | None,
        start_slot: int,
        start_block_time: int | None,
    ) -> int:
        cur = await asyncio.to_thread(
            self._execute,
            "INSERT INTO sessions (service, service_instance_id, start_slot, start_block_time, started_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (service, service_instance_id, start_slot, start_block_time, now_ms()),
        )
        logger.debug("Session row %s inserted for %s", cur.lastrowid, service)
        return int(cur.lastrowid)

    async def end_session(
        self,
        *,
        session_id: int,
        end_slot: int | None,
        end_block_time: int | None,
        reason: str,
    ) -> SessionRecord | None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE sessions SET ended_at = ?, end_slot = ?, end_block_time = ?, end_reason = ? "
            "WHERE session_id = ? AND ended_at IS NULL",
            (now_ms(), end_slot, end_block_time, reason, session_id),
        )
        return await self.get_session(session_id)

    async def update_session_stats(
        self,
        *,
        session_id: int,
        last_slot: int | None,
        last_block_time: int | None,
        heartbeat_at: int,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE sessions SET last_slot = ?, last_block_time = ?, last_heartbeat_at = ? "
            "WHERE session_id = ? AND ended_at IS NULL",
            (last_slot, last_block_time, heartbeat_at, session_id),
        )

    async def get_active_session(self, *, service: str) -> SessionRecord | None:
        return await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM sessions WHERE service = ? AND ended_at IS NULL "
            "ORDER BY session_id DESC LIMIT 1",
            (service,),
        )

    async def get_session(self, session_id: int) -> SessionRecord | None:
        return await asyncio.to_thread(
            self._fetchone, "SELECT * FROM sessions WHERE session_id = ?", (session_id,),
        )
