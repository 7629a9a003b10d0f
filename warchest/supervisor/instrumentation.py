# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""
Uniform lifecycle logging and metrics for worker invocations.

Every invocation, whichever worker runs it, produces the same four events
(``start``, ``success``, ``error``, ``cleanup``) as structured log lines
bound to the worker name, and as flat records for an optional metrics sink.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import structlog

from warchest.time_utils import Clock, now_ms

logger = logging.getLogger(__name__)

MetricsSink = Callable[[dict[str, Any]], None]


def _describe(value: Any) -> dict[str, Any]:
    """Small, log-safe summary of a result value."""
    if isinstance(value, dict):
        return {"result_type": "dict", "result_keys": sorted(str(k) for k in value)[:10]}
    if isinstance(value, (list, tuple)):
        return {"result_type": "list", "result_len": len(value)}
    return {"result_type": type(value).__name__}


class WorkerLifecycle:
    """Lifecycle instrumentation bound to one worker name."""

    def __init__(
        self,
        worker_name: str,
        metrics_sink: MetricsSink | None = None,
        clock: Clock | None = None,
    ):
        self.worker_name = worker_name
        self.metrics_sink = metrics_sink
        self._clock = clock or now_ms
        # Lazy proxy: resolves against whatever structlog config is active on first use
        self._log = structlog.stdlib.get_logger("warchest.lifecycle", worker=worker_name)

    def _emit(self, record: dict[str, Any]) -> None:
        if self.metrics_sink is None:
            return
        try:
            self.metrics_sink(record)
        except Exception:
            logger.warning(
                "Metrics sink failed for %s (%s)",
                self.worker_name, record.get("event"), exc_info=True,
            )

    def _duration(self, started_at_ms: int | None) -> int | None:
        if started_at_ms is None:
            return None
        return max(0, self._clock() - started_at_ms)

    def start(self, request_id: str, meta: dict[str, Any] | None = None) -> int:
        """Record the start of an invocation and return its start timestamp."""
        started_at = self._clock()
        extra = dict(meta or {})
        self._log.info("worker_start", request_id=request_id, **extra)
        self._emit({
            "event": "start",
            "worker": self.worker_name,
            "request_id": request_id,
            "duration_ms": None,
            **extra,
        })
        return started_at

    def success(self, request_id: str, result: Any, started_at_ms: int | None) -> None:
        duration_ms = self._duration(started_at_ms)
        summary = _describe(result)
        self._log.info(
            "worker_success", request_id=request_id, duration_ms=duration_ms, **summary,
        )
        self._emit({
            "event": "success",
            "worker": self.worker_name,
            "request_id": request_id,
            "duration_ms": duration_ms,
            **summary,
        })

    def error(self, request_id: str, err: BaseException, started_at_ms: int | None) -> None:
        duration_ms = self._duration(started_at_ms)
        self._log.error(
            "worker_error",
            request_id=request_id,
            duration_ms=duration_ms,
            error=str(err),
            error_type=type(err).__name__,
        )
        self._emit({
            "event": "error",
            "worker": self.worker_name,
            "request_id": request_id,
            "duration_ms": duration_ms,
            "error": str(err),
            "error_type": type(err).__name__,
        })

    def cleanup(self, request_id: str) -> None:
        self._log.debug("worker_cleanup", request_id=request_id)
        self._emit({
            "event": "cleanup",
            "worker": self.worker_name,
            "request_id": request_id,
            "duration_ms": None,
        })
