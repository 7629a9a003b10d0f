# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""Appends one marker line per cleanup step to the file named in the payload."""

from __future__ import annotations

from pathlib import Path

from warchest.supervisor.harness import run_worker

_markers: Path | None = None


def _mark(name: str) -> None:
    if _markers is not None:
        with _markers.open("a", encoding="utf-8") as f:
            f.write(name + "\n")


class Feed:
    def stop(self) -> None:
        _mark("stop")

    def unsubscribe(self) -> None:
        _mark("unsubscribe")


async def handler(payload, tools):
    global _markers
    _markers = Path(payload["markers"])
    tools.track(Feed())
    return {"ok": True}


def on_close() -> None:
    _mark("on_close")


if __name__ == "__main__":
    run_worker(handler, on_close=on_close)
