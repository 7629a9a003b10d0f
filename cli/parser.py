# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import argparse
import os


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="warchest",
        description="Warchest - Trading Bot Worker Supervision",
    )
    parser.add_argument(
        "--data-dir",
        default=None,
        help="Override runtime data directory (default: ~/.warchest or WARCHEST_DATA_DIR)",
    )
    sub = parser.add_subparsers(dest="command")

    # ── Run ───────────────────────────────────────────────
    p_run = sub.add_parser("run", help="Run the supervisor in the foreground")
    p_run.add_argument(
        "--config", default=None, metavar="PATH",
        help="Path to config.json (default: <data-dir>/config.json)",
    )
    p_run.set_defaults(func=_lazy_run)

    # ── Invoke ────────────────────────────────────────────
    p_invoke = sub.add_parser("invoke", help="Run a one-shot worker and print its result")
    p_invoke.add_argument("worker_path", metavar="WORKER_PATH", help="Worker script")
    p_invoke.add_argument(
        "--payload", default=None, metavar="JSON",
        help="JSON payload sent with the invocation",
    )
    p_invoke.add_argument(
        "--timeout-ms", type=int, default=None,
        help="Reply timeout in milliseconds (0 disables; default from config)",
    )
    p_invoke.add_argument(
        "--config", default=None, metavar="PATH",
        help="Path to config.json (default: <data-dir>/config.json)",
    )
    p_invoke.set_defaults(func=_lazy_invoke)

    # ── Locks ─────────────────────────────────────────────
    p_locks = sub.add_parser("locks", help="Inspect or release PID tags")
    locks_sub = p_locks.add_subparsers(dest="locks_command")

    p_locks_list = locks_sub.add_parser("list", help="List held PID tags")
    p_locks_list.set_defaults(func=_lazy_locks_list)

    p_locks_release = locks_sub.add_parser(
        "release", help="Force-release a PID tag left by a crashed process",
    )
    p_locks_release.add_argument("tag", help="Tag name")
    p_locks_release.set_defaults(func=_lazy_locks_release)

    return parser


def cli_main(argv: list[str] | None = None) -> None:
    from dotenv import load_dotenv

    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)

    # Apply --data-dir override before any command
    if args.data_dir:
        os.environ["WARCHEST_DATA_DIR"] = args.data_dir

    from warchest.logging_config import setup_logging

    # `run` reconfigures with its file handler once the config is loaded
    setup_logging(level=os.environ.get("WARCHEST_LOG_LEVEL", "INFO"))

    if hasattr(args, "func"):
        args.func(args)
    else:
        parser.print_help()


# ── Lazy import wrappers ──────────────────────────────────


def _lazy_run(args: argparse.Namespace) -> None:
    from cli.commands.run_cmd import cmd_run

    cmd_run(args)


def _lazy_invoke(args: argparse.Namespace) -> None:
    from cli.commands.invoke_cmd import cmd_invoke

    cmd_invoke(args)


def _lazy_locks_list(args: argparse.Namespace) -> None:
    from cli.commands.locks import cmd_locks_list

    cmd_locks_list(args)


def _lazy_locks_release(args: argparse.Namespace) -> None:
    from cli.commands.locks import cmd_locks_release

    cmd_locks_release(args)
