# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0

"""Centralized logging configuration for Warchest.

Uses structlog in stdlib-compatible mode so that ``logging.getLogger()``
calls across the code base gain structured logging capabilities (context
binding, JSON output, etc.).

Provides:
- setup_logging(): structlog + stdlib unified setup for the supervisor
- setup_worker_logging(): per-worker daily log files for child processes
- set_request_id() / get_request_id(): request ID helpers
"""

from __future__ import annotations

import logging
import os
import re
import sys
import time
from collections.abc import Callable
from datetime import datetime
from logging.handlers import BaseRotatingHandler, RotatingFileHandler
from pathlib import Path

import structlog

WORKER_LOG_MAX_BYTES = 50 * 1024 * 1024  # 50 MB per file
WORKER_LOG_RETENTION_DAYS = 7


def set_request_id(request_id: str) -> None:
    """Set the current request ID via structlog contextvars."""
    structlog.contextvars.bind_contextvars(request_id=request_id)


def get_request_id() -> str:
    """Get the current request ID from structlog contextvars."""
    ctx = structlog.contextvars.get_contextvars()
    return ctx.get("request_id", "-")


def clear_request_id() -> None:
    structlog.contextvars.unbind_contextvars("request_id")


# ── Shared Processors ──────────────────────────────────────────


def _build_shared_processors() -> list:
    """Build the shared processor chain used by both structlog and stdlib."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _configure_structlog(shared_processors: list) -> None:
    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _console_formatter(foreign_pre_chain: list, colors: bool = True) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=colors),
        ],
        foreign_pre_chain=foreign_pre_chain,
    )


def _json_formatter(foreign_pre_chain: list) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=foreign_pre_chain,
    )


# ── Main Setup ─────────────────────────────────────────────────


def setup_logging(
    level: str = "INFO",
    log_dir: Path | None = None,
    json_file: bool = True,
) -> None:
    """Configure logging for the supervisor process.

    Args:
        level: Root log level (DEBUG, INFO, WARNING, etc.).
        log_dir: Directory for log files. If None, file logging is disabled.
        json_file: Whether to use JSON format for the file handler.
    """
    shared_processors = _build_shared_processors()
    _configure_structlog(shared_processors)

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    # foreign_pre_chain: processes stdlib LogRecords through structlog pipeline
    # so that contextvars (request_id etc.) and timestamps are merged in.
    foreign_pre_chain = list(shared_processors)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG)
    console.setFormatter(_console_formatter(foreign_pre_chain))
    root.addHandler(console)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / "warchest.log"

        if json_file:
            file_formatter = _json_formatter(foreign_pre_chain)
        else:
            file_formatter = _console_formatter(foreign_pre_chain, colors=False)

        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=10 * 1024 * 1024,  # 10 MB
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(file_formatter)
        root.addHandler(file_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)


# ── Worker-specific Logging ────────────────────────────────────


def normalize_worker_name(worker_name: str | None) -> str:
    """Turn an arbitrary worker label into a safe log-file stem."""
    raw = worker_name.strip() if isinstance(worker_name, str) else ""
    if not raw:
        return "worker"
    collapsed = re.sub(r"[\\/\s]+", "-", raw)
    cleaned = re.sub(r"[^\w.-]", "", collapsed)
    return cleaned or "worker"


class WorkerNameFilter(logging.Filter):
    """Inject worker name into log records."""

    def __init__(self, worker_name: str):
        super().__init__()
        self.worker_name = worker_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.worker_name = self.worker_name  # type: ignore[attr-defined]
        return True


class DailyWorkerFileHandler(BaseRotatingHandler):
    """File handler writing ``<worker>_<YYYY-MM-DD>.log`` with a size cap.

    A new file is opened when the date changes.  When the current file
    would exceed ``max_bytes`` the handler continues in
    ``<worker>_<date>.log.1``, ``.log.2`` and so on.  Files of this worker
    whose modification time is older than ``retention_days`` are removed
    on every rollover.
    """

    def __init__(
        self,
        log_dir: Path,
        worker_name: str,
        max_bytes: int = WORKER_LOG_MAX_BYTES,
        retention_days: int = WORKER_LOG_RETENTION_DAYS,
        encoding: str = "utf-8",
        date_fn: Callable[[], str] | None = None,
    ):
        self.log_dir = Path(log_dir)
        self.worker_name = normalize_worker_name(worker_name)
        self.max_bytes = max_bytes
        self.retention_days = retention_days
        self._date_fn = date_fn or (lambda: datetime.now().strftime("%Y-%m-%d"))
        self._current_date = self._date_fn()
        self._index = 0

        self.log_dir.mkdir(parents=True, exist_ok=True)
        super().__init__(
            str(self._path_for(self._current_date, 0)),
            mode="a",
            encoding=encoding,
            delay=True,
        )
        self.prune()

    def _path_for(self, date: str, index: int) -> Path:
        name = f"{self.worker_name}_{date}.log"
        if index:
            name = f"{name}.{index}"
        return self.log_dir / name

    @property
    def current_path(self) -> Path:
        return Path(self.baseFilename)

    def shouldRollover(self, record: logging.LogRecord) -> bool:  # noqa: N802
        if self._date_fn() != self._current_date:
            return True
        if self.max_bytes <= 0:
            return False
        if self.stream is None:
            self.stream = self._open()
        msg = f"{self.format(record)}\n"
        self.stream.seek(0, 2)
        position = self.stream.tell()
        return position > 0 and position + len(msg.encode("utf-8")) >= self.max_bytes

    def doRollover(self) -> None:  # noqa: N802
        if self.stream:
            self.stream.close()
            self.stream = None  # type: ignore[assignment]

        today = self._date_fn()
        if today != self._current_date:
            self._current_date = today
            self._index = 0
        else:
            self._index += 1

        self.baseFilename = os.path.abspath(
            self._path_for(self._current_date, self._index)
        )
        self.prune()

    def prune(self) -> None:
        """Delete this worker's log files older than the retention window."""
        if self.retention_days <= 0:
            return
        cutoff = time.time() - self.retention_days * 86400
        for path in self.log_dir.glob(f"{self.worker_name}_*.log*"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
            except OSError:
                logging.getLogger(__name__).debug(
                    "Failed to prune worker log %s", path, exc_info=True,
                )


def setup_worker_logging(
    worker_name: str,
    log_dir: Path,
    level: str = "INFO",
    also_to_console: bool = True,
    max_bytes: int = WORKER_LOG_MAX_BYTES,
    retention_days: int = WORKER_LOG_RETENTION_DAYS,
) -> DailyWorkerFileHandler:
    """Configure worker-scoped logging inside a child process.

    Creates ``{log_dir}/{worker}_{YYYY-MM-DD}.log`` with daily rotation,
    a 50 MB size cap and 7-day retention.  Console output goes to stderr
    and is prefixed with the worker name.

    Returns:
        The installed file handler (useful for tests and diagnostics).
    """
    shared_processors = _build_shared_processors()
    _configure_structlog(shared_processors)
    foreign_pre_chain = list(shared_processors)

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    name_filter = WorkerNameFilter(normalize_worker_name(worker_name))

    file_handler = DailyWorkerFileHandler(
        log_dir=log_dir,
        worker_name=worker_name,
        max_bytes=max_bytes,
        retention_days=retention_days,
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(_json_formatter(foreign_pre_chain))
    file_handler.addFilter(name_filter)
    root.addHandler(file_handler)

    if also_to_console:
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(logging.DEBUG)
        console.setFormatter(
            logging.Formatter(
                fmt=f"[{name_filter.worker_name}] %(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%H:%M:%S",
            )
        )
        console.addFilter(name_filter)
        root.addHandler(console)

    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Worker logging configured: %s -> %s",
        name_filter.worker_name, file_handler.current_path,
    )
    return file_handler
