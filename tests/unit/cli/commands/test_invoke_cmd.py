# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""Tests for ``warchest invoke`` against fixture workers."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

import pytest

from cli.commands.invoke_cmd import cmd_invoke
from tests.helpers.filesystem import worker_script


@pytest.fixture(autouse=True)
def _reset_root_logging():
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        handler.close()
    root.handlers.clear()
    root.setLevel(logging.WARNING)


def _args(worker: str, payload: str | None = None, timeout_ms: int | None = None) -> argparse.Namespace:
    return argparse.Namespace(
        worker_path=str(worker_script(worker)), payload=payload, timeout_ms=timeout_ms, config=None,
    )


class TestInvokeCommand:
    def test_prints_result_json(self, data_dir: Path, capsys):
        cmd_invoke(_args("echo_worker", payload='{"mint": "So1"}'))
        captured = capsys.readouterr()
        # stdout carries only the result document; logs go to stderr
        result = json.loads(captured.out)
        assert result["echo"] == {"mint": "So1"}
        assert result["env"]["WARCHEST_WALLET_IDS"] == "w1,w2"
        assert '"progress": "echo:received"' in captured.err
        assert "worker_start" not in captured.out

    def test_bad_payload_exits_2(self, data_dir: Path, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cmd_invoke(_args("echo_worker", payload="{oops"))
        assert exc_info.value.code == 2

    def test_remote_error_exits_1(self, data_dir: Path, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cmd_invoke(_args("error_worker", payload="{}"))
        assert exc_info.value.code == 1
        assert "bad input" in capsys.readouterr().out

    def test_timeout_stops_child(self, data_dir: Path, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cmd_invoke(_args("stall_worker", timeout_ms=300))
        assert exc_info.value.code == 1
        assert "timed out" in capsys.readouterr().out

    def test_worker_logs_go_to_data_dir(self, data_dir: Path, capsys):
        cmd_invoke(_args("echo_worker"))
        assert list((data_dir / "logs" / "workers").glob("echo_worker_*.log"))
