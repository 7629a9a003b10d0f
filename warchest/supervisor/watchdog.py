# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""
Heartbeat watchdog and restart policy.

Each supervised unit (a worker category, or one wallet of a per-wallet
category) is evaluated on every tick::

    stale      = now - (last_heartbeat_at or started_at) >= stale_ms
    cooled     = last_restart_at is None or now - last_restart_at >= cooldown
    grace_over = now - started_at >= startup_grace_ms
    restart    = stale and cooled and grace_over

A unit whose process has exited, or which has no process at all after a
failed respawn, only waits for the cooldown.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from warchest.config.models import WatchdogConfig
from warchest.supervisor.alerts import ServiceAlertBuffer
from warchest.supervisor.fork_client import WorkerHandle
from warchest.supervisor.progress import Evaluation, Heartbeat
from warchest.time_utils import Clock, now_ms

logger = logging.getLogger(__name__)

SpawnFn = Callable[["SupervisedUnit"], Awaitable[WorkerHandle]]


@dataclass(frozen=True)
class RestartPolicy:
    stale_ms: int = 60_000
    restart_cooldown_ms: int = 60_000
    startup_grace_ms: int = 30_000

    @classmethod
    def from_config(cls, config: WatchdogConfig, stale_ms: int | None = None) -> RestartPolicy:
        return cls(
            stale_ms=stale_ms or config.stale_ms,
            restart_cooldown_ms=config.restart_cooldown_ms,
            startup_grace_ms=config.startup_grace_ms,
        )


def is_cooled(now: int, last_restart_at: int | None, policy: RestartPolicy) -> bool:
    return last_restart_at is None or now - last_restart_at >= policy.restart_cooldown_ms


def should_restart(
    now: int,
    started_at: int,
    last_heartbeat_at: int | None,
    last_restart_at: int | None,
    policy: RestartPolicy,
) -> bool:
    """Restart predicate for a live unit.  All times are epoch milliseconds."""
    reference = last_heartbeat_at if last_heartbeat_at else started_at
    stale = now - reference >= policy.stale_ms
    grace_over = now - started_at >= policy.startup_grace_ms
    return stale and is_cooled(now, last_restart_at, policy) and grace_over


@dataclass
class HeartbeatRecord:
    """Latest heartbeat for a unit; counters are kept per domain."""

    ts: int
    status: str
    counters_by_domain: dict[str, dict[str, Any]] = field(default_factory=dict)
    note: str | None = None


@dataclass
class SupervisedUnit:
    """Restart bookkeeping for one unit.  The handle is replaced on restart."""

    key: str
    category: str
    spawn: SpawnFn
    policy: RestartPolicy = field(default_factory=RestartPolicy)
    wallet: str | None = None
    handle: WorkerHandle | None = None
    started_at: int = 0
    heartbeat: HeartbeatRecord | None = None
    last_restart_at: int | None = None
    restart_count: int = 0
    restarting: bool = False
    last_heartbeat_alert_at: int | None = None
    evaluations: dict[str, Evaluation] = field(default_factory=dict)

    @property
    def last_heartbeat_at(self) -> int | None:
        return self.heartbeat.ts if self.heartbeat else None

    def attach(self, handle: WorkerHandle, now: int) -> None:
        self.handle = handle
        self.started_at = now
        self.heartbeat = None

    def record_heartbeat(self, beat: Heartbeat, now: int) -> HeartbeatRecord:
        """Store *beat* as received at *now*; timestamps never move backwards."""
        previous = self.heartbeat
        ts = now if previous is None else max(previous.ts, now)
        counters = dict(previous.counters_by_domain) if previous else {}
        counters[beat.domain] = dict(beat.counters)
        self.heartbeat = HeartbeatRecord(ts=ts, status=beat.status, counters_by_domain=counters, note=beat.note)
        if self.handle is not None:
            self.handle.last_heartbeat_at = ts
        return self.heartbeat

    def record_evaluation(self, evaluation: Evaluation) -> None:
        self.evaluations[evaluation.subject or evaluation.domain] = evaluation

    def restart_reason(self, now: int) -> str | None:
        """Why this unit should be restarted now, or ``None``."""
        if self.restarting:
            return None
        if self.handle is None:
            return "missing" if is_cooled(now, self.last_restart_at, self.policy) else None
        if not self.handle.is_alive():
            return "exited" if is_cooled(now, self.last_restart_at, self.policy) else None
        if should_restart(now, self.started_at, self.last_heartbeat_at, self.last_restart_at, self.policy):
            return "stale"
        return None

    def snapshot(self, now: int) -> dict[str, Any]:
        handle = self.handle
        return {
            "key": self.key,
            "category": self.category,
            "wallet": self.wallet,
            "pid": handle.process_id if handle else None,
            "status": handle.status.value if handle else "missing",
            "started_at": self.started_at or None,
            "last_heartbeat_at": self.last_heartbeat_at,
            "heartbeat_age_ms": now - self.last_heartbeat_at if self.last_heartbeat_at else None,
            "heartbeat_status": self.heartbeat.status if self.heartbeat else None,
            "counters": self.heartbeat.counters_by_domain if self.heartbeat else {},
            "last_restart_at": self.last_restart_at,
            "restart_count": self.restart_count,
        }


class HeartbeatWatchdog:
    """Evaluates units on each tick and replaces the ones that stalled."""

    def __init__(
        self,
        alerts: ServiceAlertBuffer,
        stop_grace_ms: int = 5_000,
        exit_wait_ms: int = 2_000,
        clock: Clock | None = None,
    ):
        self.alerts = alerts
        self.stop_grace_ms = stop_grace_ms
        self.exit_wait_ms = exit_wait_ms
        self._clock = clock or now_ms

    async def tick(self, units: Iterable[SupervisedUnit]) -> list[str]:
        """Evaluate *units*; returns the keys of units that were restarted."""
        now = self._clock()
        due = [(u, reason) for u in units if (reason := u.restart_reason(now))]
        if not due:
            return []
        results = await asyncio.gather(
            *(self.restart(unit, reason) for unit, reason in due),
            return_exceptions=True,
        )
        restarted: list[str] = []
        for (unit, _reason), outcome in zip(due, results):
            if isinstance(outcome, BaseException):
                logger.error("Restart of %s raised: %s", unit.key, outcome)
            elif outcome:
                restarted.append(unit.key)
        return restarted

    async def restart(self, unit: SupervisedUnit, reason: str) -> bool:
        """Stop the unit's handle and spawn a replacement.

        The replacement is only spawned once the old process is gone.  A
        process that survives SIGKILL keeps its slot; the unit is retried
        after the cooldown.
        """
        if unit.restarting:
            return False
        unit.restarting = True
        try:
            old = unit.handle
            age = unit.last_heartbeat_at
            logger.warning(
                "Restarting %s (reason=%s, last_heartbeat_at=%s)", unit.key, reason, age,
            )
            if old is not None and not await self._terminate(unit, old, reason):
                unit.last_restart_at = self._clock()
                self.alerts.push(
                    "error",
                    f"{unit.key} restart deferred: PID {old.process_id} still running",
                    {"unit": unit.key, "reason": reason, "pid": old.process_id},
                )
                return False
            unit.handle = None
            unit.heartbeat = None

            now = self._clock()
            unit.last_restart_at = now
            try:
                new_handle = await unit.spawn(unit)
            except Exception as e:
                self.alerts.push(
                    "error",
                    f"{unit.key} restart failed: {e}",
                    {"unit": unit.key, "reason": reason},
                )
                return False

            new_handle.last_restart_at = now
            unit.attach(new_handle, self._clock())
            unit.restart_count += 1
            self.alerts.push(
                "warn",
                f"{unit.key} restarted ({reason})",
                {"unit": unit.key, "reason": reason, "pid": new_handle.process_id},
            )
            return True
        finally:
            unit.restarting = False

    async def _terminate(self, unit: SupervisedUnit, handle: WorkerHandle, reason: str) -> bool:
        """Stop, then kill, *handle*; ``True`` once the process has exited."""
        if not handle.is_alive():
            return True
        try:
            if await handle.stop(f"watchdog:{reason}", grace_ms=self.stop_grace_ms):
                return True
        except Exception:
            logger.exception("Failed to stop %s before restart", unit.key)
        if await handle.wait_exit(self.exit_wait_ms):
            return True
        logger.warning("%s (PID %s) survived SIGTERM, sending SIGKILL", unit.key, handle.process_id)
        handle.kill()
        return await handle.wait_exit(self.exit_wait_ms)
