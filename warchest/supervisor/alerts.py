# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0

"""Capped ring buffer of operator-facing service alerts."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any

from warchest.supervisor.progress import ALERT_LEVELS
from warchest.time_utils import Clock, now_ms

logger = logging.getLogger(__name__)

AlertSink = Callable[[str, str], None]

_LOG_LEVELS = {"info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}


@dataclass(frozen=True)
class ServiceAlert:
    level: str
    message: str
    ts: int
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ServiceAlertBuffer:
    """Newest-first alert history, dropping the oldest beyond *capacity*.

    Alerts are informational only; nothing reads them back as state.
    """

    def __init__(
        self,
        capacity: int = 8,
        sink: AlertSink | None = None,
        clock: Clock | None = None,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.sink = sink
        self._clock = clock or now_ms
        self._alerts: deque[ServiceAlert] = deque(maxlen=capacity)

    def push(self, level: str, message: str, meta: dict[str, Any] | None = None) -> ServiceAlert:
        if level not in ALERT_LEVELS:
            level = "info"
        alert = ServiceAlert(level=level, message=message, ts=self._clock(), meta=dict(meta or {}))
        self._alerts.appendleft(alert)
        logger.log(_LOG_LEVELS[level], "Service alert: %s", message)
        if self.sink is not None:
            try:
                self.sink(level, message)
            except Exception:
                logger.warning("Alert sink failed", exc_info=True)
        return alert

    def snapshot(self) -> list[dict[str, Any]]:
        return [a.to_dict() for a in self._alerts]

    def __len__(self) -> int:
        return len(self._alerts)

    def __iter__(self):
        return iter(list(self._alerts))
