# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""
Shutdown coordinator: stop every tracked worker, reap stragglers, clean up.

Sequence for :meth:`ShutdownCoordinator.shutdown`:

1. Ask all tracked workers / pids to stop (concurrently)
2. Wait up to ``wait_ms`` for them to exit
3. Send ``force_signal`` to survivors and wait ``force_wait_ms``
4. Run every tracked cleanup; failures are logged and do not stop the rest

The first call starts the sequence; later or concurrent calls get the same
in-flight result.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from warchest.config.models import ShutdownConfig
from warchest.supervisor.pid_tag import is_pid_alive
from warchest.time_utils import now_ms

logger = logging.getLogger(__name__)

StopFn = Callable[[str | None], Any]
CleanupFn = Callable[[], Any]


@dataclass
class ShutdownOptions:
    """Per-call overrides; ``None`` falls back to :class:`ShutdownConfig`."""

    grace_ms: int | None = None
    wait_ms: int | None = None
    force_wait_ms: int | None = None
    force_signal: str | int | None = None


@dataclass
class ShutdownReport:
    reason: str | None
    started_at: int
    finished_at: int = 0
    exited: list[str] = field(default_factory=list)
    forced: list[str] = field(default_factory=list)
    survivors: list[str] = field(default_factory=list)
    cleanups_run: list[str] = field(default_factory=list)
    cleanup_failures: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.forced and not self.survivors and not self.cleanup_failures


@dataclass
class _Entry:
    name: str
    pid: int | None
    stop: Callable[[str | None, int], Awaitable[Any]]
    wait: Callable[[int], Awaitable[bool]]
    force_kill: Callable[[int], bool]


def _resolve_signal(value: str | int) -> int:
    if isinstance(value, int):
        return value
    return int(getattr(signal, value))


class ShutdownCoordinator:
    """Single owner of everything that must be torn down on exit."""

    def __init__(self, config: ShutdownConfig | None = None, label: str = "shutdown"):
        self.config = config or ShutdownConfig()
        self.label = label
        self._entries: list[_Entry] = []
        self._cleanups: list[tuple[str, CleanupFn]] = []
        self._tracked_pids: set[int] = set()
        self._task: asyncio.Task[ShutdownReport] | None = None

    @property
    def in_progress(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def entry_names(self) -> list[str]:
        return [e.name for e in self._entries]

    # ── Registration ──

    def track_worker(
        self,
        name: str,
        handle: Any,
        *,
        skip_stop: bool = False,
        grace_ms: int | None = None,
    ) -> Any:
        """Track a :class:`WorkerHandle` (or anything with the same surface)."""
        if handle is None:
            return None
        pid = getattr(handle, "process_id", None)
        if pid is not None:
            if pid in self._tracked_pids:
                return handle
            self._tracked_pids.add(pid)

        async def stop(reason: str | None, default_grace_ms: int) -> None:
            if skip_stop:
                return
            await handle.stop(reason, grace_ms=grace_ms if grace_ms is not None else default_grace_ms)

        def force_kill(sig: int) -> bool:
            return handle.kill(sig)

        self._entries.append(_Entry(
            name=name or "worker",
            pid=pid,
            stop=stop,
            wait=handle.wait_exit,
            force_kill=force_kill,
        ))
        return handle

    def track_pid(self, name: str, pid: int | None, stop: StopFn | None = None) -> int | None:
        """Track a bare process id (e.g. a detached worker)."""
        if pid is None or pid <= 0:
            return None
        if pid in self._tracked_pids:
            return pid
        self._tracked_pids.add(pid)

        async def stop_pid(reason: str | None, _grace_ms: int) -> None:
            if stop is not None:
                result = stop(reason)
                if inspect.isawaitable(result):
                    await result
                return
            self._send(pid, _resolve_signal(self.config.stop_signal))

        async def wait_pid(timeout_ms: int) -> bool:
            return await self._wait_for_pid_exit(pid, timeout_ms)

        self._entries.append(_Entry(
            name=name or "pid",
            pid=pid,
            stop=stop_pid,
            wait=wait_pid,
            force_kill=lambda sig: self._send(pid, sig),
        ))
        return pid

    def untrack(self, pid: int | None) -> bool:
        """Forget the entry for *pid* once its process is gone.

        Ignored while a shutdown is running; that sequence owns its entries.
        """
        if pid is None or self._task is not None or pid not in self._tracked_pids:
            return False
        self._tracked_pids.discard(pid)
        self._entries = [e for e in self._entries if e.pid != pid]
        return True

    def track_cleanup(self, name: str, cleanup: CleanupFn) -> CleanupFn | None:
        if not callable(cleanup):
            return None
        self._cleanups.append((name or "cleanup", cleanup))
        return cleanup

    # ── Helpers ──

    @staticmethod
    def _send(pid: int, sig: int) -> bool:
        try:
            os.kill(pid, sig)
        except (ProcessLookupError, PermissionError):
            return False
        return True

    async def _wait_for_pid_exit(self, pid: int, timeout_ms: int) -> bool:
        poll = max(25, self.config.poll_interval_ms) / 1000
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0, timeout_ms) / 1000
        while is_pid_alive(pid):
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(poll)
        return True

    @staticmethod
    async def _safe_wait(entry: _Entry, timeout_ms: int) -> bool:
        try:
            return bool(await entry.wait(timeout_ms))
        except Exception:
            logger.warning("Waiting for %s failed", entry.name, exc_info=True)
            return False

    # ── Shutdown ──

    async def shutdown(self, reason: str | None = None, options: ShutdownOptions | None = None) -> ShutdownReport:
        if self._task is None:
            self._task = asyncio.create_task(self._run(reason, options or ShutdownOptions()))
        return await asyncio.shield(self._task)

    async def _run(self, reason: str | None, options: ShutdownOptions) -> ShutdownReport:
        cfg = self.config
        grace_ms = options.grace_ms if options.grace_ms is not None else cfg.grace_ms
        wait_ms = options.wait_ms if options.wait_ms is not None else cfg.wait_ms
        force_wait_ms = options.force_wait_ms if options.force_wait_ms is not None else cfg.force_wait_ms
        force_signal = _resolve_signal(options.force_signal or cfg.force_signal)

        report = ShutdownReport(reason=reason, started_at=now_ms())
        entries = list(self._entries)
        logger.info(
            "[%s] shutdown starting entries=%d cleanups=%d reason=%s",
            self.label, len(entries), len(self._cleanups), reason or "n/a",
        )

        if entries:
            stop_results = await asyncio.gather(
                *(e.stop(reason, grace_ms) for e in entries), return_exceptions=True,
            )
            for entry, res in zip(entries, stop_results):
                if isinstance(res, BaseException):
                    logger.warning("[%s] stop failed for %s: %s", self.label, entry.name, res)

            exited = await asyncio.gather(*(self._safe_wait(e, wait_ms) for e in entries))
            pending = [e for e, ok in zip(entries, exited) if not ok]
            report.exited = [e.name for e, ok in zip(entries, exited) if ok]

            if pending:
                logger.warning("[%s] shutdown forcing %d lingering workers", self.label, len(pending))
                for entry in pending:
                    try:
                        if entry.force_kill(force_signal):
                            report.forced.append(entry.name)
                    except Exception:
                        logger.warning("[%s] force kill failed for %s", self.label, entry.name, exc_info=True)
                reaped = await asyncio.gather(*(self._safe_wait(e, force_wait_ms) for e in pending))
                report.survivors = [e.name for e, ok in zip(pending, reaped) if not ok]
                for name in report.survivors:
                    logger.error("[%s] %s still alive after %s", self.label, name, signal.Signals(force_signal).name)

        for name, cleanup in list(self._cleanups):
            try:
                result = cleanup()
                if inspect.isawaitable(result):
                    await result
                report.cleanups_run.append(name)
            except Exception:
                report.cleanup_failures.append(name)
                logger.exception("[%s] cleanup %s failed", self.label, name)

        report.finished_at = now_ms()
        logger.info(
            "[%s] shutdown complete in %dms (exited=%d forced=%d survivors=%d cleanup_failures=%d)",
            self.label, report.finished_at - report.started_at, len(report.exited),
            len(report.forced), len(report.survivors), len(report.cleanup_failures),
        )
        return report
