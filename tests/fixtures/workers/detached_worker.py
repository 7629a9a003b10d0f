# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""Writes its payload to the output file named in the payload."""

from __future__ import annotations

import json
from pathlib import Path

from warchest.supervisor.harness import run_worker


async def handler(payload, tools):
    Path(payload["out"]).write_text(
        json.dumps({"payload": payload, "request_id": tools.request_id}),
        encoding="utf-8",
    )
    return {"written": payload["out"]}


if __name__ == "__main__":
    run_worker(handler)
