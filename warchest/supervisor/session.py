# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""
Session lifecycle: start/end markers bracketing one supervisor run.

A session opens at startup (after any session left open by a crashed
predecessor has been closed with reason ``crash``), records liveness
anchors on every watchdog tick, and is finalized exactly once on shutdown.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from warchest.config.models import SessionConfig
from warchest.exceptions import SessionError
from warchest.supervisor.connection import LivenessAnchor
from warchest.supervisor.session_store import SessionRecord, SessionStore
from warchest.time_utils import Clock, now_ms

logger = logging.getLogger(__name__)

AnchorSource = Callable[[], Awaitable[LivenessAnchor | None]]


@dataclass
class SessionState:
    id: int | None = None
    service_instance_id: str | None = None
    start_slot: int | None = None
    start_block_time: int | None = None
    started_at: int | None = None
    last_heartbeat_at: int | None = None
    last_heartbeat_slot: int | None = None
    last_heartbeat_block_time: int | None = None


@dataclass
class StaleSessionResult:
    closed: bool
    session: SessionRecord | None = None
    slot: int | None = None
    block_time_ms: int | None = None
    snapshot: dict[str, Any] | None = None


# ── Status snapshot helpers ────────────────────────────────


def read_status_snapshot(status_path: Path | None) -> dict[str, Any] | None:
    """Parse the last status snapshot; ``None`` when missing or unreadable."""
    if status_path is None:
        return None
    try:
        raw = status_path.read_text(encoding="utf-8")
    except OSError:
        return None
    if not raw.strip():
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring unreadable status snapshot at %s", status_path)
        return None
    return data if isinstance(data, dict) else None


def _pick_positive(candidates: Iterable[Any]) -> int | None:
    for value in candidates:
        if value is None or isinstance(value, bool):
            continue
        try:
            num = int(float(value))
        except (TypeError, ValueError):
            continue
        if num > 0:
            return num
    return None


def derive_session_close_anchors(
    snapshot: dict[str, Any] | None,
    session: SessionRecord | None,
) -> tuple[int | None, int | None]:
    """Best end (slot, block_time_ms) from the status snapshot, then the row."""
    health = (snapshot or {}).get("health") or {}
    session_health = health.get("session") or {}
    connection = health.get("connection") or {}

    slot = _pick_positive([
        session_health.get("last_slot"),
        connection.get("slot"),
        session.last_slot if session else None,
        session.start_slot if session else None,
    ])
    block_time_ms = _pick_positive([
        session_health.get("last_block_time_ms"),
        connection.get("block_time_ms"),
        session.last_block_time if session else None,
        session.start_block_time if session else None,
    ])
    return slot, block_time_ms


# ── SessionManager ─────────────────────────────────────────


class SessionManager:
    """Owns the single open session of one service instance."""

    def __init__(
        self,
        store: SessionStore,
        anchor_source: AnchorSource,
        *,
        service_instance_id: str | None = None,
        status_path: Path | None = None,
        config: SessionConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Clock | None = None,
    ):
        self.store = store
        self.config = config or SessionConfig()
        self.service_name = self.config.service_name
        self.status_path = status_path
        self._anchor_source = anchor_source
        self._sleep = sleep
        self._clock = clock or now_ms
        self.state = SessionState(service_instance_id=service_instance_id)

    @property
    def session_id(self) -> int | None:
        return self.state.id

    async def _fetch_anchor(self, attempt: int) -> LivenessAnchor | None:
        try:
            anchor = await self._anchor_source()
        except Exception as e:
            logger.warning(
                "Liveness anchor fetch failed (attempt %d/%d): %s",
                attempt, self.config.max_attempts, e,
            )
            return None
        if anchor is None or not anchor.slot or anchor.slot <= 0:
            return None
        return anchor

    async def ensure_session_started(self) -> None:
        """Open a session unless one is already open.

        Raises:
            SessionError: No liveness anchor within the attempt budget.
            Exception: The store's own error when it fails on the last attempt.
        """
        if self.state.id is not None:
            return

        max_attempts = self.config.max_attempts
        for attempt in range(1, max_attempts + 1):
            anchor = await self._fetch_anchor(attempt)
            if anchor is not None:
                try:
                    session_id = await self.store.start_session(
                        service=self.service_name,
                        service_instance_id=self.state.service_instance_id,
                        start_slot=anchor.slot,
                        start_block_time=anchor.block_time_ms,
                    )
                except Exception as e:
                    logger.error(
                        "Failed to start session (attempt %d/%d): %s", attempt, max_attempts, e,
                    )
                    if attempt == max_attempts:
                        raise
                else:
                    now = self._clock()
                    self.state.id = session_id
                    self.state.start_slot = anchor.slot
                    self.state.start_block_time = anchor.block_time_ms
                    self.state.started_at = now
                    self.state.last_heartbeat_at = now
                    self.state.last_heartbeat_slot = anchor.slot
                    self.state.last_heartbeat_block_time = anchor.block_time_ms
                    logger.info("Session started (session_id=%s, slot=%s)", session_id, anchor.slot)
                    return

            if attempt < max_attempts:
                delay_ms = min(self.config.backoff_step_ms * attempt, self.config.backoff_cap_ms)
                await self._sleep(delay_ms / 1000)

        raise SessionError(
            f"Failed to determine liveness anchor for session start after {max_attempts} attempts"
        )

    async def close_stale_session(self) -> StaleSessionResult:
        """Close a session left open by a crashed predecessor (reason ``crash``)."""
        snapshot = await asyncio.to_thread(read_status_snapshot, self.status_path)
        active = await self.store.get_active_session(service=self.service_name)
        if active is None:
            return StaleSessionResult(closed=False, snapshot=snapshot)
        if self.state.id is not None and active.session_id == self.state.id:
            # Our own session is not stale
            return StaleSessionResult(closed=False, session=active, snapshot=snapshot)

        slot, block_time_ms = derive_session_close_anchors(snapshot, active)
        row = await self.store.end_session(
            session_id=active.session_id,
            end_slot=slot,
            end_block_time=block_time_ms,
            reason="crash",
        )
        logger.warning(
            "Closed stale session %s (slot=%s, block_time=%s)",
            active.session_id, slot, block_time_ms,
        )
        return StaleSessionResult(
            closed=True,
            session=row,
            slot=slot,
            block_time_ms=block_time_ms,
            snapshot=snapshot,
        )

    async def record_heartbeat(self, anchor: LivenessAnchor | None) -> None:
        if self.state.id is None:
            return
        now = self._clock()
        self.state.last_heartbeat_at = now
        if anchor is not None and anchor.slot > 0:
            self.state.last_heartbeat_slot = anchor.slot
            self.state.last_heartbeat_block_time = anchor.block_time_ms
        try:
            await self.store.update_session_stats(
                session_id=self.state.id,
                last_slot=self.state.last_heartbeat_slot,
                last_block_time=self.state.last_heartbeat_block_time,
                heartbeat_at=now,
            )
        except Exception as e:
            logger.warning("Failed to update session %s stats: %s", self.state.id, e)

    async def finalize_session(
        self,
        reason: str = "clean",
        slot: int | None = None,
        block_time_ms: int | None = None,
    ) -> SessionRecord | None:
        """Close the open session; a repeat call is a no-op."""
        session_id = self.state.id
        if session_id is None:
            return None

        end_slot = next(
            (v for v in (slot, self.state.last_heartbeat_slot, self.state.start_slot) if v is not None),
            None,
        )
        end_block_time = next(
            (v for v in (block_time_ms, self.state.last_heartbeat_block_time, self.state.start_block_time) if v is not None),
            None,
        )

        self.state.id = None
        try:
            row = await self.store.end_session(
                session_id=session_id,
                end_slot=end_slot,
                end_block_time=end_block_time,
                reason=reason,
            )
        except Exception as e:
            logger.warning("Failed to close session %s (%s): %s", session_id, reason, e)
            return None
        logger.info(
            "Session %s closed (%s) slot=%s block_time=%s",
            session_id, reason, end_slot if end_slot is not None else "n/a",
            end_block_time if end_block_time is not None else "n/a",
        )
        return row

    def snapshot(self) -> dict[str, Any]:
        """Session section of the status snapshot."""
        data = asdict(self.state)
        data["last_slot"] = self.state.last_heartbeat_slot
        data["last_block_time_ms"] = self.state.last_heartbeat_block_time
        return data
