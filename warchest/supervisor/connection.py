# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""
Reconnect supervision for the shared streaming connection.

:class:`ConnectionSupervisor` does not own sockets.  It tracks liveness and
errors and decides *when* a restart may happen (minimum gap, exponential
backoff, one restart at a time).  :class:`ConnectionRestarter` performs the
restart against a :class:`StreamingConnection`.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from warchest.config.models import ConnectionConfig
from warchest.supervisor.retry import with_retry
from warchest.time_utils import Clock, now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LivenessAnchor:
    """A monotonically increasing counter (slot) with its source timestamp."""

    slot: int
    block_time_ms: int | None
    observed_at: int


class ConnectionSupervisor:
    """Staleness, error and restart-rate bookkeeping for one connection."""

    def __init__(self, config: ConnectionConfig | None = None, clock: Clock | None = None):
        self.config = config or ConnectionConfig()
        self._clock = clock or now_ms
        self.stale_after_ms = self.config.stale_after_ms if self.config.stale_after_ms > 0 else 20_000
        self.min_restart_gap_ms = self.config.min_restart_gap_ms if self.config.min_restart_gap_ms > 0 else 30_000
        self.max_backoff_ms = self.config.max_backoff_ms if self.config.max_backoff_ms > 0 else 300_000

        self.restarts = 0
        self.last_restart_at: int | None = None
        self.last_restart_reason: str | None = None
        self.last_error: str | None = None
        self.last_error_at: int | None = None
        self.backoff_ms = 0
        self.restart_in_flight = False
        self.latest_anchor: LivenessAnchor | None = None
        self._error_times: deque[int] = deque()

    # ── Observations ──

    @property
    def last_liveness_at(self) -> int | None:
        return self.latest_anchor.observed_at if self.latest_anchor else None

    def note_liveness(self, anchor: LivenessAnchor) -> None:
        previous = self.latest_anchor
        if previous is not None and anchor.slot < previous.slot:
            logger.debug("Ignoring out-of-order liveness slot %s < %s", anchor.slot, previous.slot)
            return
        self.latest_anchor = anchor

    def note_error(self, err: Any, context: str | None = None) -> None:
        message = str(err) if not isinstance(err, BaseException) else (str(err) or type(err).__name__)
        prefix = f"{context}: " if context else ""
        self.last_error = f"{prefix}{message}"
        self.last_error_at = self._clock()
        self._error_times.append(self.last_error_at)

    def recent_error_count(self) -> int:
        """Errors noted within the last ``error_window_ms``."""
        cutoff = self._clock() - self.config.error_window_ms
        while self._error_times and self._error_times[0] < cutoff:
            self._error_times.popleft()
        return len(self._error_times)

    # ── Restart gating ──

    def can_restart(self) -> bool:
        if self.restart_in_flight:
            return False
        if self.last_restart_at is None:
            return True
        elapsed = self._clock() - self.last_restart_at
        return elapsed >= max(self.min_restart_gap_ms, self.backoff_ms)

    def should_restart_for_stale(self, last_liveness_at: int | None = None) -> tuple[bool, str | None]:
        """Decide whether silence since *last_liveness_at* warrants a restart.

        Defaults to the latest noted anchor.  A missing or non-positive
        timestamp never triggers a restart.
        """
        if last_liveness_at is None:
            last_liveness_at = self.last_liveness_at
        if last_liveness_at is None or last_liveness_at <= 0:
            return False, None
        age_ms = self._clock() - int(last_liveness_at)
        if age_ms < self.stale_after_ms:
            return False, None
        if not self.can_restart():
            return False, None
        return True, f"ws_stale_{age_ms}ms"

    def begin_restart(self, reason: str | None) -> bool:
        if not self.can_restart():
            return False
        self.restart_in_flight = True
        self.last_restart_at = self._clock()
        self.last_restart_reason = reason or "unknown"
        self.restarts += 1
        return True

    def end_restart(self, ok: bool, err: Any = None) -> None:
        self.restart_in_flight = False
        if ok:
            self.backoff_ms = 0
            return
        if err is not None:
            self.note_error(err, "restart")
        following = self.backoff_ms * 2 if self.backoff_ms > 0 else self.config.base_backoff_ms
        self.backoff_ms = min(following, self.max_backoff_ms)

    def get_status(self) -> dict[str, Any]:
        anchor = self.latest_anchor
        return {
            "restarts": self.restarts,
            "last_restart_at": self.last_restart_at,
            "last_restart_reason": self.last_restart_reason,
            "last_error": self.last_error,
            "last_error_at": self.last_error_at,
            "backoff_ms": self.backoff_ms,
            "restart_in_flight": self.restart_in_flight,
            "recent_errors": self.recent_error_count(),
            "slot": anchor.slot if anchor else None,
            "block_time_ms": anchor.block_time_ms if anchor else None,
            "last_liveness_at": anchor.observed_at if anchor else None,
        }


# ── Connection contract ───────────────────────────────────────


@runtime_checkable
class Subscription(Protocol):
    async def unsubscribe(self) -> None: ...


@runtime_checkable
class StreamingConnection(Protocol):
    """What the restarter needs from a long-lived streaming client."""

    def active_subscriptions(self) -> list[Subscription]: ...

    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def resubscribe(self) -> None: ...


class ConnectionRestarter:
    """Carries out restarts gated by a :class:`ConnectionSupervisor`."""

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        connection: StreamingConnection,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.supervisor = supervisor
        self.connection = connection
        self.config = supervisor.config
        self._sleep = sleep

    async def unsubscribe_all(self) -> int:
        """Unsubscribe every active subscription; returns how many were skipped."""
        timeout = self.config.unsubscribe_timeout_ms / 1000
        skipped = 0
        for sub in list(self.connection.active_subscriptions()):
            try:
                async with asyncio.timeout(timeout):
                    await sub.unsubscribe()
            except TimeoutError:
                skipped += 1
                logger.warning(
                    "Unsubscribe timed out after %dms; skipping %r",
                    self.config.unsubscribe_timeout_ms, sub,
                )
            except Exception as e:
                skipped += 1
                self.supervisor.note_error(e, "unsubscribe")
                logger.warning("Unsubscribe failed; skipping %r: %s", sub, e)
        return skipped

    async def restart(self, reason: str) -> bool:
        if not self.supervisor.begin_restart(reason):
            logger.debug("Connection restart (%s) not allowed yet", reason)
            return False
        logger.warning("Restarting streaming connection (reason=%s)", reason)
        try:
            await self.unsubscribe_all()
            try:
                await self.connection.close()
            except Exception as e:
                self.supervisor.note_error(e, "close")
                logger.warning("Closing streaming connection failed: %s", e)
            await with_retry(
                self.connection.open,
                attempts=self.config.open_attempts,
                sleep_fn=self._sleep,
            )
            await self.connection.resubscribe()
        except Exception as e:
            logger.error("Streaming connection restart failed: %s", e)
            self.supervisor.end_restart(False, e)
            return False
        self.supervisor.end_restart(True)
        logger.info("Streaming connection restarted (restarts=%d)", self.supervisor.restarts)
        return True

    async def check_once(self) -> bool:
        due, reason = self.supervisor.should_restart_for_stale()
        if not due:
            return False
        return await self.restart(reason)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Check staleness every ``check_interval_ms`` until *stop_event* is set."""
        interval = self.config.check_interval_ms / 1000
        while not stop_event.is_set():
            try:
                await self.check_once()
            except Exception:
                logger.exception("Connection staleness check failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass


# ── Local liveness source ─────────────────────────────────────


class _TimerSubscription:
    def __init__(self, task: asyncio.Task):
        self._task = task

    async def unsubscribe(self) -> None:
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)


class IntervalLivenessConnection:
    """In-process liveness source: advances a slot counter on an interval.

    Used when no external streaming endpoint is configured, so session
    anchors and staleness checks still have a monotonic signal.
    """

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        interval_ms: int = 1_000,
        clock: Clock | None = None,
    ):
        self.supervisor = supervisor
        self.interval_ms = interval_ms
        self._clock = clock or now_ms
        self._slot = 0
        self._subs: list[_TimerSubscription] = []
        self.opened = False

    def active_subscriptions(self) -> list[Subscription]:
        return list(self._subs)

    async def open(self) -> None:
        self.opened = True

    async def close(self) -> None:
        self.opened = False
        subs, self._subs = self._subs, []
        for sub in subs:
            await sub.unsubscribe()

    async def resubscribe(self) -> None:
        self._subs.clear()
        self._subs.append(_TimerSubscription(asyncio.create_task(self._pump())))

    def _emit(self) -> None:
        self._slot += 1
        now = self._clock()
        self.supervisor.note_liveness(LivenessAnchor(slot=self._slot, block_time_ms=now, observed_at=now))

    async def _pump(self) -> None:
        while True:
            self._emit()
            await asyncio.sleep(self.interval_ms / 1000)

    async def latest_anchor(self) -> LivenessAnchor | None:
        return self.supervisor.latest_anchor
