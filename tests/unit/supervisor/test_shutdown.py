# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""Unit tests for ShutdownCoordinator."""

from __future__ import annotations

import asyncio
import signal
import subprocess
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

from tests.helpers.mocks import FakeHandle
from warchest.config.models import ShutdownConfig
from warchest.supervisor.shutdown import ShutdownCoordinator, ShutdownOptions

FAST = ShutdownConfig(grace_ms=100, wait_ms=50, force_wait_ms=50, poll_interval_ms=25)


class TestShutdownCoordinator:
    @pytest.mark.asyncio
    async def test_cooperative_workers_exit_cleanly(self):
        coordinator = ShutdownCoordinator(FAST)
        a, b = FakeHandle(worker_name="a"), FakeHandle(worker_name="b")
        coordinator.track_worker("sell", a)
        coordinator.track_worker("buy", b, grace_ms=10)

        report = await coordinator.shutdown("sigterm")
        assert report.clean
        assert sorted(report.exited) == ["buy", "sell"]
        assert a.stop_calls == [("sigterm", 100)]
        assert b.stop_calls == [("sigterm", 10)]

    @pytest.mark.asyncio
    async def test_lingering_worker_is_force_killed(self):
        coordinator = ShutdownCoordinator(FAST)
        stubborn = FakeHandle(exits_on_stop=False)
        coordinator.track_worker("stubborn", stubborn)

        report = await coordinator.shutdown("stop")
        assert report.forced == ["stubborn"]
        assert report.survivors == []
        assert stubborn.kill_calls == [signal.SIGKILL]
        assert not report.clean

    @pytest.mark.asyncio
    async def test_survivor_is_reported(self):
        coordinator = ShutdownCoordinator(FAST)
        coordinator.track_worker("zombie", FakeHandle(exits_on_stop=False, dies_on_kill=False))
        report = await coordinator.shutdown(options=ShutdownOptions(force_signal="SIGTERM"))
        assert report.survivors == ["zombie"]

    @pytest.mark.asyncio
    async def test_cleanups_run_after_workers_and_survive_failures(self):
        coordinator = ShutdownCoordinator(FAST)
        order: list[str] = []
        handle = FakeHandle()
        handle.add_exit_listener(lambda code: order.append("worker-exit"))
        coordinator.track_worker("w", handle)

        def broken():
            raise OSError("disk full")

        coordinator.track_cleanup("pid-tag", lambda: order.append("pid-tag"))
        coordinator.track_cleanup("broken", broken)
        coordinator.track_cleanup("session", AsyncMock(side_effect=lambda: order.append("session")))

        report = await coordinator.shutdown()
        assert order == ["worker-exit", "pid-tag", "session"]
        assert report.cleanups_run == ["pid-tag", "session"]
        assert report.cleanup_failures == ["broken"]

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_run(self):
        coordinator = ShutdownCoordinator(FAST)
        cleanup = MagicMock()
        coordinator.track_cleanup("once", cleanup)
        first, second = await asyncio.gather(coordinator.shutdown("a"), coordinator.shutdown("b"))
        assert first is second
        assert first.reason == "a"
        assert (await coordinator.shutdown("c")) is first
        cleanup.assert_called_once()
        assert not coordinator.in_progress

    def test_duplicate_pid_is_tracked_once(self):
        coordinator = ShutdownCoordinator(FAST)
        handle = FakeHandle(pid=1234)
        coordinator.track_worker("a", handle)
        coordinator.track_worker("b", handle)
        coordinator.track_pid("c", 1234)
        assert coordinator.entry_names == ["a"]

    def test_invalid_registrations_are_ignored(self):
        coordinator = ShutdownCoordinator(FAST)
        assert coordinator.track_worker("none", None) is None
        assert coordinator.track_pid("zero", 0) is None
        assert coordinator.track_cleanup("not-callable", "nope") is None
        assert coordinator.entry_names == []

    @pytest.mark.asyncio
    async def test_bare_pid_is_signalled(self):
        proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
        try:
            coordinator = ShutdownCoordinator(
                ShutdownConfig(grace_ms=100, wait_ms=3_000, force_wait_ms=1_000, poll_interval_ms=25),
            )
            coordinator.track_pid("detached", proc.pid)
            reap = asyncio.create_task(asyncio.to_thread(proc.wait))
            report = await coordinator.shutdown("stop")
            assert report.exited == ["detached"]
            assert await reap == -signal.SIGTERM
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()

    def test_untrack_drops_exited_entry(self):
        coordinator = ShutdownCoordinator(FAST)
        old, new = FakeHandle(pid=11), FakeHandle(pid=12)
        coordinator.track_worker("sell", old)
        coordinator.track_worker("sell", new)
        assert coordinator.untrack(11) is True
        assert coordinator.untrack(11) is False
        assert [e.pid for e in coordinator._entries] == [12]

        # the pid can be tracked again once forgotten
        coordinator.track_pid("reused", 11)
        assert coordinator.entry_names == ["sell", "reused"]

    @pytest.mark.asyncio
    async def test_untrack_ignored_once_shutdown_started(self):
        coordinator = ShutdownCoordinator(FAST)
        handle = FakeHandle(pid=21)
        coordinator.track_worker("sell", handle)
        report = await coordinator.shutdown("stop")
        assert report.exited == ["sell"]
        assert coordinator.untrack(21) is False
        assert coordinator.entry_names == ["sell"]
