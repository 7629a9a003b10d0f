# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""
Progress event variants emitted by workers.

Workers send ``progress`` envelopes named either plainly (``heartbeat``)
or with a domain prefix (``sellOps:heartbeat``).  :func:`parse_progress`
maps every name onto one of four closed variants so that the supervisor
dispatches on type, not on strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from warchest.time_utils import now_ms

ALERT_LEVELS = ("info", "warn", "error")


@dataclass(frozen=True)
class Heartbeat:
    """Periodic liveness report with per-domain counters."""
    domain: str
    status: str = "ok"
    ts: int = 0
    counters: dict[str, Any] = field(default_factory=dict)
    note: str | None = None
    wallet: str | None = None


@dataclass(frozen=True)
class Evaluation:
    """A domain evaluation result (e.g. a sell recommendation for one mint)."""
    domain: str
    subject: str | None
    data: dict[str, Any] = field(default_factory=dict)
    ts: int = 0
    wallet: str | None = None


@dataclass(frozen=True)
class Alert:
    """Worker-raised operator alert."""
    level: str
    message: str
    ts: int = 0


@dataclass(frozen=True)
class DomainEvent:
    """Any other progress event, passed through untouched."""
    event: str
    data: Any = None


ProgressEvent = Union[Heartbeat, Evaluation, Alert, DomainEvent]


def _split(event: str) -> tuple[str, str]:
    """Split ``domain:kind`` into its parts; a bare name has no domain."""
    if ":" in event:
        domain, _, kind = event.rpartition(":")
        return domain, kind
    return "", event


def _ts(data: dict[str, Any]) -> int:
    raw = data.get("ts")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return now_ms()
    return value if value > 0 else now_ms()


def parse_progress(event: str, data: Any) -> ProgressEvent:
    """Classify a progress message into its tagged variant."""
    domain, kind = _split(event or "")
    body = data if isinstance(data, dict) else {}

    if kind == "heartbeat":
        counters = body.get("counters")
        if not isinstance(counters, dict):
            # Flat heartbeats carry their counters alongside the status
            counters = {
                k: v for k, v in body.items()
                if k not in ("ts", "status", "note", "wallet", "walletAlias")
            }
        return Heartbeat(
            domain=domain or "worker",
            status=str(body.get("status") or "ok"),
            ts=_ts(body),
            counters=counters,
            note=body.get("note"),
            wallet=body.get("wallet") or body.get("walletAlias"),
        )

    if kind == "evaluation":
        return Evaluation(
            domain=domain or "worker",
            subject=body.get("subject") or body.get("mint"),
            data=body,
            ts=_ts(body),
            wallet=body.get("wallet") or body.get("walletAlias"),
        )

    if kind == "alert":
        level = str(body.get("level") or "info")
        if level not in ALERT_LEVELS:
            level = "info"
        return Alert(level=level, message=str(body.get("message") or ""), ts=_ts(body))

    return DomainEvent(event=event, data=data)
