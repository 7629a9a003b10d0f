# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""Test doubles for clocks and worker handles.

``FakeHandle`` mirrors the surface of :class:`WorkerHandle` that the
watchdog, shutdown coordinator and supervisor use, without a process.
"""

from __future__ import annotations

import itertools
import signal
from typing import Any

from warchest.supervisor.fork_client import WorkerStatus

_pids = itertools.count(50_000)


class FakeClock:
    """Controllable epoch-millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


class FakeHandle:
    def __init__(
        self,
        *,
        pid: int | None = None,
        alive: bool = True,
        exits_on_stop: bool = True,
        dies_on_kill: bool = True,
        worker_name: str = "fake",
    ):
        self.worker_name = worker_name
        self.process_id = pid if pid is not None else next(_pids)
        self.status = WorkerStatus.ALIVE if alive else WorkerStatus.STOPPED
        self.exits_on_stop = exits_on_stop
        self.dies_on_kill = dies_on_kill
        self.last_heartbeat_at: int | None = None
        self.last_restart_at: int | None = None
        self.stop_calls: list[tuple[str | None, int]] = []
        self.kill_calls: list[int] = []
        self._alive = alive
        self._exit_listeners: list[Any] = []

    def is_alive(self) -> bool:
        return self._alive

    def exit(self, code: int | None = 0) -> None:
        self._alive = False
        self.status = WorkerStatus.STOPPED if code == 0 else WorkerStatus.ERROR
        for listener in list(self._exit_listeners):
            listener(code)

    def add_exit_listener(self, listener) -> Any:
        self._exit_listeners.append(listener)
        return lambda: self._exit_listeners.remove(listener)

    async def stop(self, reason: str | None = None, grace_ms: int = 5_000) -> bool:
        self.stop_calls.append((reason, grace_ms))
        if self.exits_on_stop and self._alive:
            self.exit(0)
        return not self._alive

    async def wait_exit(self, timeout_ms: int | None = None) -> bool:
        return not self._alive

    def kill(self, sig: int = signal.SIGKILL) -> bool:
        if not self._alive:
            return False
        self.kill_calls.append(sig)
        if self.dies_on_kill:
            self.exit(-sig)
        return True
