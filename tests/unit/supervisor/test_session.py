# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""Unit tests for SessionManager."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from tests.helpers.mocks import FakeClock
from warchest.config.models import SessionConfig
from warchest.exceptions import SessionError
from warchest.supervisor.connection import LivenessAnchor
from warchest.supervisor.session import (
    SessionManager,
    derive_session_close_anchors,
    read_status_snapshot,
)
from warchest.supervisor.session_store import InMemorySessionStore, SessionRecord

T0 = 1_700_000_000_000


def _anchor(slot: int = 100, block_time_ms: int | None = T0) -> LivenessAnchor:
    return LivenessAnchor(slot=slot, block_time_ms=block_time_ms, observed_at=T0)


def _manager(store, source, **kwargs) -> SessionManager:
    kwargs.setdefault("sleep", AsyncMock())
    kwargs.setdefault("clock", FakeClock(T0))
    return SessionManager(store, source, service_instance_id="test-instance", **kwargs)


class TestEnsureSessionStarted:
    @pytest.mark.asyncio
    async def test_opens_one_session(self):
        store = InMemorySessionStore()
        manager = _manager(store, AsyncMock(return_value=_anchor()))
        await manager.ensure_session_started()
        await manager.ensure_session_started()

        assert len(store.sessions) == 1
        record = store.sessions[manager.session_id]
        assert record.start_slot == 100
        assert record.service == "warchest-service"
        assert record.service_instance_id == "test-instance"
        assert manager.state.started_at == T0

    @pytest.mark.asyncio
    async def test_retries_until_anchor_available(self):
        sleep = AsyncMock()
        source = AsyncMock(side_effect=[None, RuntimeError("rpc down"), _anchor(slot=0), _anchor(slot=7)])
        manager = _manager(InMemorySessionStore(), source, sleep=sleep)
        await manager.ensure_session_started()
        assert manager.state.start_slot == 7
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 3.0]

    @pytest.mark.asyncio
    async def test_backoff_is_capped_and_error_raised(self):
        sleep = AsyncMock()
        manager = _manager(
            InMemorySessionStore(), AsyncMock(return_value=None), sleep=sleep,
            config=SessionConfig(max_attempts=7),
        )
        with pytest.raises(SessionError, match="after 7 attempts"):
            await manager.ensure_session_started()
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 3.0, 4.0, 5.0, 5.0]
        assert manager.session_id is None

    @pytest.mark.asyncio
    async def test_store_failure_is_retried_then_reraised(self):
        store = InMemorySessionStore()
        store.start_session = AsyncMock(side_effect=OSError("database is locked"))
        manager = _manager(store, AsyncMock(return_value=_anchor()))
        with pytest.raises(OSError, match="database is locked"):
            await manager.ensure_session_started()
        assert store.start_session.await_count == 5

    @pytest.mark.asyncio
    async def test_store_recovers_before_last_attempt(self):
        store = InMemorySessionStore()
        store.start_session = AsyncMock(side_effect=[OSError("busy"), 42])
        manager = _manager(store, AsyncMock(return_value=_anchor()))
        await manager.ensure_session_started()
        assert manager.session_id == 42
        assert store.start_session.await_count == 2


class TestFinalizeAndHeartbeat:
    @pytest.mark.asyncio
    async def test_heartbeat_then_finalize_uses_latest_anchor(self):
        store = InMemorySessionStore()
        clock = FakeClock(T0)
        manager = _manager(store, AsyncMock(return_value=_anchor()), clock=clock)
        await manager.ensure_session_started()
        session_id = manager.session_id

        clock.advance(5_000)
        await manager.record_heartbeat(_anchor(slot=150, block_time_ms=T0 + 5_000))
        assert store.sessions[session_id].last_slot == 150
        assert store.sessions[session_id].last_heartbeat_at == T0 + 5_000

        row = await manager.finalize_session("clean")
        assert row.end_reason == "clean"
        assert row.end_slot == 150
        assert row.end_block_time == T0 + 5_000
        assert manager.session_id is None
        assert await manager.finalize_session("clean") is None

    @pytest.mark.asyncio
    async def test_heartbeat_without_anchor_keeps_previous_slot(self):
        store = InMemorySessionStore()
        manager = _manager(store, AsyncMock(return_value=_anchor(slot=100)))
        await manager.ensure_session_started()
        await manager.record_heartbeat(None)
        assert store.sessions[manager.session_id].last_slot == 100

    @pytest.mark.asyncio
    async def test_heartbeat_without_session_is_noop(self):
        store = InMemorySessionStore()
        store.update_session_stats = AsyncMock()
        await _manager(store, AsyncMock()).record_heartbeat(_anchor())
        store.update_session_stats.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_store_failures_are_contained(self):
        store = InMemorySessionStore()
        manager = _manager(store, AsyncMock(return_value=_anchor()))
        await manager.ensure_session_started()
        store.update_session_stats = AsyncMock(side_effect=OSError("io"))
        store.end_session = AsyncMock(side_effect=OSError("io"))
        await manager.record_heartbeat(_anchor(slot=101))
        assert await manager.finalize_session("clean") is None
        assert manager.session_id is None

    @pytest.mark.asyncio
    async def test_explicit_end_anchor_wins(self):
        store = InMemorySessionStore()
        manager = _manager(store, AsyncMock(return_value=_anchor()))
        await manager.ensure_session_started()
        row = await manager.finalize_session("signal", slot=999, block_time_ms=1)
        assert (row.end_slot, row.end_block_time, row.end_reason) == (999, 1, "signal")


class TestCloseStaleSession:
    @pytest.mark.asyncio
    async def test_clean_shutdown_leaves_nothing_to_close(self):
        store = InMemorySessionStore()
        first = _manager(store, AsyncMock(return_value=_anchor()))
        await first.ensure_session_started()
        await first.finalize_session("clean")

        second = _manager(store, AsyncMock(return_value=_anchor(slot=200)))
        result = await second.close_stale_session()
        assert result.closed is False

    @pytest.mark.asyncio
    async def test_crashed_session_closed_from_status_snapshot(self, tmp_path: Path):
        store = InMemorySessionStore()
        crashed = _manager(store, AsyncMock(return_value=_anchor(slot=100)))
        await crashed.ensure_session_started()
        stale_id = crashed.session_id

        status = tmp_path / "status.json"
        status.write_text(json.dumps({
            "health": {
                "session": {"last_slot": 180, "last_block_time_ms": None},
                "connection": {"slot": 170, "block_time_ms": T0 + 9_000},
            },
        }))
        fresh = _manager(store, AsyncMock(return_value=_anchor(slot=200)), status_path=status)
        result = await fresh.close_stale_session()

        assert result.closed is True
        assert (result.slot, result.block_time_ms) == (180, T0 + 9_000)
        row = store.sessions[stale_id]
        assert row.end_reason == "crash"
        assert row.end_slot == 180

        await fresh.ensure_session_started()
        assert fresh.session_id != stale_id
        assert (await fresh.close_stale_session()).closed is False

    @pytest.mark.asyncio
    async def test_missing_snapshot_falls_back_to_row(self, tmp_path: Path):
        store = InMemorySessionStore()
        crashed = _manager(store, AsyncMock(return_value=_anchor(slot=100, block_time_ms=T0)))
        await crashed.ensure_session_started()
        await crashed.record_heartbeat(_anchor(slot=130, block_time_ms=T0 + 3_000))

        fresh = _manager(store, AsyncMock(), status_path=tmp_path / "absent.json")
        result = await fresh.close_stale_session()
        assert (result.slot, result.block_time_ms) == (130, T0 + 3_000)
        assert result.snapshot is None


class TestAnchorHelpers:
    def test_derive_skips_non_positive_and_garbage(self):
        record = SessionRecord(
            session_id=1, service="s", service_instance_id=None,
            start_slot=10, start_block_time=20, started_at=0,
        )
        snapshot = {"health": {"session": {"last_slot": 0}, "connection": {"slot": "abc", "block_time_ms": "55"}}}
        assert derive_session_close_anchors(snapshot, record) == (10, 55)

    def test_derive_with_nothing(self):
        assert derive_session_close_anchors(None, None) == (None, None)

    def test_read_status_snapshot(self, tmp_path: Path):
        path = tmp_path / "status.json"
        assert read_status_snapshot(None) is None
        assert read_status_snapshot(path) is None
        path.write_text("   ")
        assert read_status_snapshot(path) is None
        path.write_text("{oops")
        assert read_status_snapshot(path) is None
        path.write_text("[1]")
        assert read_status_snapshot(path) is None
        path.write_text('{"pid": 1}')
        assert read_status_snapshot(path) == {"pid": 1}
