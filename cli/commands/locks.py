"""CLI commands for PID tags."""

# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import argparse
import sys
from pathlib import Path


def _lock_dir() -> Path:
    from warchest.config import load_config
    from warchest.paths import get_lock_dir

    config = load_config()
    if config.fork.lock_dir:
        return Path(config.fork.lock_dir).expanduser()
    return get_lock_dir()


def cmd_locks_list(args: argparse.Namespace) -> None:
    """Print every held tag with its pid and whether that pid is alive."""
    from warchest.supervisor.pid_tag import is_pid_alive, list_pid_tags

    lock_dir = _lock_dir()
    tags = list_pid_tags(lock_dir)
    if not tags:
        print(f"No PID tags in {lock_dir}")
        return

    print(f"{'TAG':<32} {'PID':>8}  STATE")
    for tag, pid in tags.items():
        if pid is None:
            state = "unreadable"
        else:
            state = "alive" if is_pid_alive(pid) else "stale"
        print(f"{tag:<32} {pid if pid is not None else '-':>8}  {state}")


def cmd_locks_release(args: argparse.Namespace) -> None:
    from warchest.exceptions import ValidationError
    from warchest.supervisor.pid_tag import force_release_pid_tag, is_pid_alive, read_pid_tag

    lock_dir = _lock_dir()
    try:
        holder = read_pid_tag(args.tag, lock_dir)
        removed = force_release_pid_tag(args.tag, lock_dir)
    except ValidationError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if not removed:
        print(f"PID tag '{args.tag}' is not held.")
        return
    if holder is not None and is_pid_alive(holder):
        print(f"Warning: pid {holder} is still running.")
    print(f"Released PID tag '{args.tag}'.")
