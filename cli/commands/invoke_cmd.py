# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0

"""CLI command for running a one-shot worker."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any


async def _invoke(args: argparse.Namespace, config, payload: Any) -> Any:
    from warchest.exceptions import WorkerTimeoutError
    from cli.commands.run_cmd import resolve_log_dir
    from warchest.supervisor.fork_client import ForkClient, InvokeOptions

    client = ForkClient(
        config.fork,
        config.endpoints,
        log_dir=resolve_log_dir(config) / "workers",
        log_level=config.logging.level,
    )

    def on_progress(handle, event: str, data: Any) -> None:
        print(json.dumps({"progress": event, "data": data}, ensure_ascii=False), file=sys.stderr)

    try:
        result = await client.invoke(
            args.worker_path,
            InvokeOptions(payload=payload, timeout_ms=args.timeout_ms, on_progress=on_progress),
        )
    except WorkerTimeoutError as e:
        # The CLI owns the child; stop it before exiting
        if e.handle is not None:
            await e.handle.stop("timeout", grace_ms=config.fork.stop_grace_ms)
            if not await e.handle.wait_exit(config.fork.exit_wait_ms):
                e.handle.kill()
        raise
    return result.result


def cmd_invoke(args: argparse.Namespace) -> None:
    """Invoke a worker once and print the JSON result on stdout.

    Logs go to stderr so stdout carries only the result document.
    """
    from warchest.config import load_config
    from warchest.exceptions import WarchestError
    from warchest.logging_config import setup_logging

    payload = None
    if args.payload:
        try:
            payload = json.loads(args.payload)
        except json.JSONDecodeError as e:
            print(f"Error: --payload is not valid JSON: {e}")
            sys.exit(2)

    try:
        config = load_config(Path(args.config) if args.config else None)
    except WarchestError as e:
        print(f"Error: {e}")
        sys.exit(1)

    setup_logging(level=os.environ.get("WARCHEST_LOG_LEVEL", config.logging.level))

    try:
        result = asyncio.run(_invoke(args, config, payload))
    except WarchestError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(json.dumps(result, indent=2, ensure_ascii=False))
