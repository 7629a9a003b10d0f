# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""Long-running worker whose on_close outlasts the stop grace period."""

from __future__ import annotations

import asyncio

from warchest.supervisor.harness import run_worker

_close_delay = 5.0


async def handler(payload, tools):
    global _close_delay
    _close_delay = (payload or {}).get("close_delay_ms", 5_000) / 1000
    tools.heartbeat("ok", {"ready": 1})
    await tools.stopping.wait()


async def on_close() -> None:
    await asyncio.sleep(_close_delay)


if __name__ == "__main__":
    run_worker(handler, exit_on_complete=False, on_close=on_close)
