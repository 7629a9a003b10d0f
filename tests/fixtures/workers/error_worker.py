# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""Handler that always raises."""

from __future__ import annotations

from warchest.supervisor.harness import run_worker


def _validate(payload):
    raise ValueError(f"bad input: {payload!r}")


async def handler(payload, tools):
    _validate(payload)


if __name__ == "__main__":
    run_worker(handler)
