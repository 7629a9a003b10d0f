# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""
Worker supervision package.

Runs each worker in its own subprocess, talking newline-delimited JSON
envelopes over a socket pair inherited by the child.
"""

from __future__ import annotations

from warchest.supervisor.alerts import ServiceAlert, ServiceAlertBuffer
from warchest.supervisor.connection import (
    ConnectionRestarter,
    ConnectionSupervisor,
    IntervalLivenessConnection,
    LivenessAnchor,
)
from warchest.supervisor.fork_client import (
    DetachedHandle,
    ForkClient,
    InvokeOptions,
    InvokeResult,
    WorkerHandle,
    WorkerStatus,
    build_worker_env,
)
from warchest.supervisor.harness import WorkerHarness, WorkerTools, create_worker_harness, run_worker
from warchest.supervisor.ipc import Envelope, EnvelopeStream, EnvelopeType, sanitize_payload
from warchest.supervisor.manager import WorkerSupervisor
from warchest.supervisor.pid_tag import PidTag, acquire_pid_tag
from warchest.supervisor.progress import Alert, DomainEvent, Evaluation, Heartbeat, parse_progress
from warchest.supervisor.session import SessionManager
from warchest.supervisor.session_store import InMemorySessionStore, SessionRecord, SqliteSessionStore
from warchest.supervisor.shutdown import ShutdownCoordinator, ShutdownOptions, ShutdownReport
from warchest.supervisor.watchdog import HeartbeatWatchdog, RestartPolicy, SupervisedUnit

__all__ = [
    "Alert",
    "ConnectionRestarter",
    "ConnectionSupervisor",
    "DetachedHandle",
    "DomainEvent",
    "Envelope",
    "EnvelopeStream",
    "EnvelopeType",
    "Evaluation",
    "ForkClient",
    "Heartbeat",
    "HeartbeatWatchdog",
    "InMemorySessionStore",
    "IntervalLivenessConnection",
    "InvokeOptions",
    "InvokeResult",
    "LivenessAnchor",
    "PidTag",
    "RestartPolicy",
    "ServiceAlert",
    "ServiceAlertBuffer",
    "SessionManager",
    "SessionRecord",
    "ShutdownCoordinator",
    "ShutdownOptions",
    "ShutdownReport",
    "SqliteSessionStore",
    "SupervisedUnit",
    "WorkerHandle",
    "WorkerHarness",
    "WorkerStatus",
    "WorkerSupervisor",
    "WorkerTools",
    "acquire_pid_tag",
    "build_worker_env",
    "create_worker_harness",
    "parse_progress",
    "run_worker",
]
