# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0

"""Unified exception hierarchy for Warchest.

All domain-specific exceptions derive from :class:`WarchestError`,
enabling callers to catch the entire family with a single clause::

    try:
        ...
    except WarchestError as e:
        logger.error("Supervision error: %s", e)
"""

from __future__ import annotations

from typing import Any


class WarchestError(Exception):
    """Base exception for all Warchest errors."""


# ── Process / IPC ────────────────────────────────────────────


class WorkerError(WarchestError):
    """Worker process and IPC errors."""


class ValidationError(WorkerError):
    """Malformed payload or argument, rejected before spawn/invoke."""


class WorkerTimeoutError(WorkerError, TimeoutError):
    """No reply from the worker within the call timeout."""

    def __init__(self, timeout_ms: int, request_id: str | None = None) -> None:
        super().__init__(f"Worker timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms
        self.request_id = request_id
        # The child keeps running after a timeout; callers stop it via this handle
        self.handle: Any = None


class WorkerExitError(WorkerError):
    """Worker process terminated before replying."""

    def __init__(
        self,
        exit_code: int | None,
        *,
        worker_name: str | None = None,
    ) -> None:
        if exit_code is not None and exit_code < 0:
            reason = f"signal {-exit_code}"
        else:
            reason = f"exit code {exit_code}"
        super().__init__(f"Worker exited before responding ({reason})")
        self.exit_code = exit_code
        self.worker_name = worker_name


class TransportError(WorkerError):
    """Envelope write or parse failure on the parent/child channel."""


class RemoteWorkerError(WorkerError):
    """Handler failure reported by the child through an ``error`` envelope.

    Carries the child's formatted traceback so the parent can log the
    original failure site.
    """

    def __init__(
        self,
        message: str = "Worker error",
        *,
        remote_stack: str | None = None,
        remote_type: str | None = None,
        request_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.remote_stack = remote_stack
        self.remote_type = remote_type
        self.request_id = request_id


# ── Locks ────────────────────────────────────────────────────


class LockConflictError(WarchestError, FileExistsError):
    """PID tag already held by another process."""

    def __init__(self, tag: str, holder: str | None = None) -> None:
        detail = f": {holder}" if holder else ""
        super().__init__(f"PID tag already exists for {tag}{detail}")
        self.tag = tag
        self.holder = holder


# ── Session ──────────────────────────────────────────────────


class SessionError(WarchestError):
    """Session lifecycle failures (anchor unavailable, store failure)."""


# ── Retry ────────────────────────────────────────────────────


class RetryExhaustedError(WarchestError):
    """All retry attempts failed."""

    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        message = str(last_error) if last_error is not None else "unknown error"
        super().__init__(f"Retry failed after {attempts} attempts: {message}")
        self.attempts = attempts
        self.last_error = last_error


# ── Configuration ────────────────────────────────────────────


class ConfigError(WarchestError):
    """Configuration errors."""
