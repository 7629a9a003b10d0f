# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0

"""CLI command for running the supervisor in the foreground."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


def resolve_log_dir(config) -> Path:
    from warchest.paths import get_log_dir

    return Path(config.logging.log_dir).expanduser() if config.logging.log_dir else get_log_dir()


def build_supervisor(config, *, session_store=None):
    """Wire a :class:`WorkerSupervisor` from *config*.

    Without a caller-supplied store the sessions go to
    ``<data-dir>/sessions.sqlite3``.  The liveness source is the in-process
    interval connection.
    """
    from warchest.paths import get_session_db_path, get_status_path
    from warchest.supervisor.connection import (
        ConnectionRestarter,
        ConnectionSupervisor,
        IntervalLivenessConnection,
    )
    from warchest.supervisor.fork_client import ForkClient
    from warchest.supervisor.manager import WorkerSupervisor
    from warchest.supervisor.session import SessionManager
    from warchest.supervisor.session_store import SqliteSessionStore

    connection_supervisor = ConnectionSupervisor(config.connection)
    connection = IntervalLivenessConnection(connection_supervisor)
    restarter = ConnectionRestarter(connection_supervisor, connection)

    store = session_store or SqliteSessionStore(get_session_db_path())
    status_path = get_status_path()
    session_manager = SessionManager(
        store,
        connection.latest_anchor,
        service_instance_id=config.service_instance_id,
        status_path=status_path,
        config=config.session,
    )

    fork_client = ForkClient(
        config.fork,
        config.endpoints,
        log_dir=resolve_log_dir(config) / "workers",
        log_level=config.logging.level,
    )

    supervisor = WorkerSupervisor(
        config,
        fork_client,
        session_manager=session_manager,
        connection_supervisor=connection_supervisor,
        connection_restarter=restarter,
        status_path=status_path,
    )
    for name, category in config.workers.items():
        supervisor.register_category(name, category)
    return supervisor


def cmd_run(args: argparse.Namespace) -> None:
    """Run every configured worker category until SIGINT/SIGTERM."""
    from warchest.config import load_config
    from warchest.exceptions import WarchestError

    try:
        config = load_config(Path(args.config) if args.config else None)
    except WarchestError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if not config.workers:
        print("Error: no worker categories configured (config.json \"workers\").")
        sys.exit(1)

    from warchest.logging_config import setup_logging

    setup_logging(
        level=os.environ.get("WARCHEST_LOG_LEVEL", config.logging.level),
        log_dir=resolve_log_dir(config),
        json_file=config.logging.json_file,
    )

    supervisor = build_supervisor(config)
    try:
        report = asyncio.run(supervisor.run_forever())
    except WarchestError as e:
        logger.error("Supervisor failed: %s", e)
        sys.exit(1)
    finally:
        store = getattr(supervisor.session_manager, "store", None)
        if store is not None and hasattr(store, "close"):
            store.close()

    if not report.clean:
        logger.warning(
            "Shutdown was not clean (forced=%s survivors=%s cleanup_failures=%s)",
            report.forced, report.survivors, report.cleanup_failures,
        )
        sys.exit(1)
