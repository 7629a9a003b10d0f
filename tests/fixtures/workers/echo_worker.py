# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""Replies with its payload and the connection hints it received."""

from __future__ import annotations

import os

from warchest.supervisor.harness import run_worker

ENV_KEYS = (
    "WARCHEST_RPC_ENDPOINT",
    "WARCHEST_DATA_ENDPOINT",
    "WARCHEST_WALLET_IDS",
    "WARCHEST_STORE_PATH",
    "EXTRA_HINT",
)


async def handler(payload, tools):
    tools.progress("echo:received", {"request_id": tools.request_id})
    return {
        "echo": payload,
        "env": {key: tools.env.get(key) for key in ENV_KEYS},
        "pid": os.getpid(),
        "request_id": tools.request_id,
    }


if __name__ == "__main__":
    run_worker(handler)
