"""
Worker Supervisor - Runs long-lived worker categories for one service instance.
"""

# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from collections.abc import Callable
from pathlib import Path
from typing import Any

from warchest.config.models import WarchestConfig, WorkerCategoryConfig
from warchest.exceptions import LockConflictError, WarchestError
from warchest.paths import get_status_path
from warchest.supervisor.alerts import AlertSink, ServiceAlertBuffer
from warchest.supervisor.connection import ConnectionRestarter, ConnectionSupervisor
from warchest.supervisor.fork_client import ForkClient, InvokeOptions, WorkerHandle
from warchest.supervisor.instrumentation import MetricsSink
from warchest.supervisor.pid_tag import PidTag, acquire_pid_tag
from warchest.supervisor.progress import (
    Alert,
    DomainEvent,
    Evaluation,
    Heartbeat,
    ProgressEvent,
    parse_progress,
)
from warchest.supervisor.session import SessionManager
from warchest.supervisor.shutdown import ShutdownCoordinator, ShutdownReport
from warchest.supervisor.watchdog import HeartbeatWatchdog, RestartPolicy, SupervisedUnit
from warchest.time_utils import Clock, now_iso, now_ms

logger = logging.getLogger(__name__)

ProgressSubscriber = Callable[[str, ProgressEvent], Any]

_HEALTHY_STATUSES = frozenset({"ok", "idle", "running", "ready"})


def _write_json_atomic(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False, default=str), encoding="utf-8")
    os.replace(tmp, path)


class WorkerSupervisor:
    """
    Supervisor for worker categories.

    Responsibilities:
    - Spawn one unit per category (one per wallet for per-wallet categories)
    - Heartbeat watchdog and restart policy
    - Streaming connection staleness checks
    - Session bracketing for crash detection
    - Status snapshot on every tick
    - Coordinated shutdown

    All registries live on the instance; several supervisors can coexist.
    """

    def __init__(
        self,
        config: WarchestConfig,
        fork_client: ForkClient | None = None,
        *,
        session_manager: SessionManager | None = None,
        connection_supervisor: ConnectionSupervisor | None = None,
        connection_restarter: ConnectionRestarter | None = None,
        alert_sink: AlertSink | None = None,
        metrics_sink: MetricsSink | None = None,
        status_path: Path | None = None,
        clock: Clock | None = None,
    ):
        self.config = config
        self._clock = clock or now_ms
        self.fork_client = fork_client or ForkClient(
            config.fork, config.endpoints, metrics_sink=metrics_sink, clock=self._clock,
        )
        self.alerts = ServiceAlertBuffer(config.alerts.capacity, sink=alert_sink, clock=self._clock)
        self.watchdog = HeartbeatWatchdog(
            self.alerts,
            stop_grace_ms=config.fork.stop_grace_ms,
            exit_wait_ms=config.fork.exit_wait_ms,
            clock=self._clock,
        )
        self.shutdown_coordinator = ShutdownCoordinator(config.shutdown, label="warchest")
        if connection_supervisor is None and connection_restarter is not None:
            connection_supervisor = connection_restarter.supervisor
        self.connection = connection_supervisor or ConnectionSupervisor(config.connection, clock=self._clock)
        self.connection_restarter = connection_restarter
        self.session_manager = session_manager
        self.status_path = status_path or get_status_path()

        self.categories: dict[str, WorkerCategoryConfig] = {}
        self.units: dict[str, SupervisedUnit] = {}
        self.pid_tags: dict[str, PidTag] = {}
        self._subscribers: dict[str, list[ProgressSubscriber]] = {}

        self._stop_event = asyncio.Event()
        self._tick_task: asyncio.Task | None = None
        self._connection_task: asyncio.Task | None = None
        self._stop_task: asyncio.Task[ShutdownReport] | None = None
        self._started = False

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    # ── Registration ──

    def register_category(self, name: str, category: WorkerCategoryConfig) -> list[str]:
        """Register a category and create its units; returns the unit keys."""
        if name in self.categories:
            raise WarchestError(f"Worker category already registered: {name}")
        self.categories[name] = category
        if not category.enabled:
            logger.info("Worker category %s is disabled", name)
            return []

        policy = RestartPolicy.from_config(self.config.watchdog, category.stale_ms)
        wallets: list[str | None] = list(self.config.endpoints.wallet_ids) if category.per_wallet else [None]
        keys = []
        for wallet in wallets:
            key = f"{name}:{wallet}" if wallet else name
            self.units[key] = SupervisedUnit(
                key=key,
                category=name,
                spawn=self._spawn_unit,
                policy=policy,
                wallet=wallet,
            )
            keys.append(key)
        logger.info("Registered worker category %s (%d units)", name, len(keys))
        return keys

    def subscribe(self, category: str, subscriber: ProgressSubscriber) -> Callable[[], None]:
        """Receive ``(unit_key, event)`` for every progress event of *category*."""
        subscribers = self._subscribers.setdefault(category, [])
        subscribers.append(subscriber)

        def remove() -> None:
            if subscriber in subscribers:
                subscribers.remove(subscriber)

        return remove

    # ── Spawning ──

    async def _spawn_unit(self, unit: SupervisedUnit) -> WorkerHandle:
        category = self.categories[unit.category]
        endpoints = self.config.endpoints
        payload = dict(category.payload)
        if unit.wallet:
            endpoints = endpoints.model_copy(update={"wallet_ids": [unit.wallet]})
            payload.setdefault("wallet", unit.wallet)

        def on_progress(handle: WorkerHandle, event: str, data: Any) -> None:
            if unit.handle is not None and unit.handle is not handle:
                return  # replaced handle still draining
            self.handle_progress(unit.key, parse_progress(event, data))

        handle = await self.fork_client.launch(
            category.worker_path,
            InvokeOptions(
                payload=payload,
                env=dict(category.env),
                endpoints=endpoints,
                timeout_ms=0,
                worker_name=unit.key.replace(":", "-"),
                on_progress=on_progress,
            ),
        )

        def on_exit(code: int | None) -> None:
            if self.stopping:
                return
            self.shutdown_coordinator.untrack(handle.process_id)
            if code == 0:
                return
            self.alerts.push(
                "error",
                f"{unit.key} exited unexpectedly (code {code})",
                {"unit": unit.key, "pid": handle.process_id},
            )

        handle.add_exit_listener(on_exit)
        self.shutdown_coordinator.track_worker(
            unit.key, handle, grace_ms=self.config.fork.stop_grace_ms,
        )
        return handle

    async def _acquire_category_tags(self) -> set[str]:
        """Acquire PID tags; returns categories that could not be locked."""
        blocked: set[str] = set()
        for name, category in self.categories.items():
            if not category.enabled or not category.lock_tag:
                continue
            try:
                tag = await acquire_pid_tag(category.lock_tag, self.fork_client.lock_dir)
            except LockConflictError as e:
                blocked.add(name)
                self.alerts.push("error", f"{name} not started: {e}", {"category": name})
                continue
            self.pid_tags[name] = tag
            # Cleanups run after every worker has exited
            self.shutdown_coordinator.track_cleanup(f"pid-tag:{tag.tag}", tag.release)
        return blocked

    # ── Lifecycle ──

    async def start(self) -> None:
        """Bring up the connection, session, locks, and every unit."""
        if self._started:
            return
        self._started = True
        logger.info("Starting supervisor (%d categories, %d units)", len(self.categories), len(self.units))

        if self.connection_restarter is not None:
            conn = self.connection_restarter.connection
            await conn.open()
            await conn.resubscribe()
            self.shutdown_coordinator.track_cleanup("streaming-connection", conn.close)

        if self.session_manager is not None:
            result = await self.session_manager.close_stale_session()
            if result.closed:
                self.alerts.push("warn", f"Closed stale session {result.session.session_id if result.session else '?'} (crash)")
            await self.session_manager.ensure_session_started()

        blocked = await self._acquire_category_tags()

        now = self._clock()
        for unit in self.units.values():
            if unit.category in blocked:
                continue
            try:
                handle = await unit.spawn(unit)
            except Exception as e:
                unit.last_restart_at = now
                self.alerts.push("error", f"{unit.key} failed to start: {e}", {"unit": unit.key})
                continue
            unit.attach(handle, self._clock())

        self.shutdown_coordinator.track_cleanup("status-snapshot", self.write_status)

        self._tick_task = asyncio.create_task(self._tick_loop(), name="warchest-watchdog")
        if self.connection_restarter is not None:
            self._connection_task = asyncio.create_task(
                self.connection_restarter.run(self._stop_event), name="warchest-connection",
            )
        await self.write_status()
        logger.info("Supervisor started")

    async def _tick_loop(self) -> None:
        logger.info("Watchdog loop started (every %dms)", self.config.watchdog.tick_ms)
        while not self.stopping:
            try:
                await asyncio.sleep(self.config.watchdog.tick_ms / 1000)
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in watchdog loop: %s", e)
        logger.info("Watchdog loop stopped")

    async def tick(self) -> list[str]:
        """One watchdog round: restarts, session heartbeat, status snapshot."""
        restarted = await self.watchdog.tick(
            [u for u in self.units.values() if u.category not in self._blocked_categories()]
        )
        if self.session_manager is not None:
            await self.session_manager.record_heartbeat(self.connection.latest_anchor)
        await self.write_status()
        return restarted

    def _blocked_categories(self) -> set[str]:
        return {
            name for name, cat in self.categories.items()
            if cat.lock_tag and name not in self.pid_tags
        }

    # ── Progress dispatch ──

    def handle_progress(self, unit_key: str, event: ProgressEvent) -> None:
        unit = self.units.get(unit_key)
        if unit is None:
            logger.debug("Progress for unknown unit %s dropped", unit_key)
            return
        now = self._clock()

        if isinstance(event, Heartbeat):
            record = unit.record_heartbeat(event, now)
            interval = self.config.watchdog.heartbeat_alert_interval_ms
            if unit.last_heartbeat_alert_at is None or now - unit.last_heartbeat_alert_at >= interval:
                unit.last_heartbeat_alert_at = now
                level = "info" if event.status in _HEALTHY_STATUSES else "warn"
                note = f" ({event.note})" if event.note else ""
                self.alerts.push(
                    level,
                    f"{unit_key} heartbeat {record.status}{note}",
                    {"unit": unit_key, "counters": event.counters},
                )
        elif isinstance(event, Evaluation):
            unit.record_evaluation(event)
        elif isinstance(event, Alert):
            self.alerts.push(event.level, f"{unit_key}: {event.message}", {"unit": unit_key})
        elif isinstance(event, DomainEvent):
            logger.debug("Domain event from %s: %s", unit_key, event.event)

        for subscriber in list(self._subscribers.get(unit.category, [])):
            try:
                subscriber(unit_key, event)
            except Exception:
                logger.exception("Progress subscriber failed for %s", unit.category)

    # ── Status ──

    def status_snapshot(self) -> dict[str, Any]:
        now = self._clock()
        return {
            "updated_at": now_iso(),
            "pid": os.getpid(),
            "service_instance_id": self.config.service_instance_id,
            "health": {
                "session": self.session_manager.snapshot() if self.session_manager else None,
                "connection": self.connection.get_status(),
                "units": {key: unit.snapshot(now) for key, unit in self.units.items()},
                "pid_tags": {name: str(tag.tag_path) for name, tag in self.pid_tags.items()},
                "alerts": self.alerts.snapshot(),
            },
        }

    async def write_status(self) -> None:
        try:
            await asyncio.to_thread(_write_json_atomic, self.status_path, self.status_snapshot())
        except OSError as e:
            logger.warning("Failed to write status snapshot %s: %s", self.status_path, e)

    # ── Shutdown ──

    async def stop(self, reason: str = "stop") -> ShutdownReport:
        """Shut everything down once; repeated calls share the first result."""
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self._stop(reason))
        return await asyncio.shield(self._stop_task)

    async def _stop(self, reason: str) -> ShutdownReport:
        logger.info("Stopping supervisor (reason=%s)", reason)
        self._stop_event.set()

        for task in (self._tick_task, self._connection_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        report = await self.shutdown_coordinator.shutdown(reason)
        if self.session_manager is not None:
            await self.session_manager.finalize_session("clean")
            await self.write_status()
        logger.info("Supervisor stopped")
        return report

    async def run_forever(self) -> ShutdownReport:
        """Start, then block until SIGINT/SIGTERM or :meth:`stop`."""
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(
                    sig, lambda s=sig: asyncio.ensure_future(self.stop(f"signal:{s.name}")),
                )
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handler unavailable for %s", sig.name)
        try:
            try:
                await self.start()
            except Exception:
                logger.exception("Supervisor failed to start")
                await self.stop("start-failed")
                raise
            await self._stop_event.wait()
            return await self.stop()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

    def get_all_status(self) -> dict[str, dict]:
        now = self._clock()
        return {key: unit.snapshot(now) for key, unit in self.units.items()}
