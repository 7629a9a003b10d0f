# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""Tests for ``warchest run`` wiring."""

from __future__ import annotations

import argparse
import json
from pathlib import Path

import pytest

from cli.commands.run_cmd import build_supervisor, cmd_run
from tests.helpers.filesystem import DEFAULT_TEST_CONFIG
from warchest.config import WarchestConfig
from warchest.supervisor.connection import IntervalLivenessConnection
from warchest.supervisor.session_store import InMemorySessionStore


def _config(**workers) -> WarchestConfig:
    return WarchestConfig.model_validate({**DEFAULT_TEST_CONFIG, "workers": workers})


class TestBuildSupervisor:
    def test_wires_categories_and_collaborators(self, data_dir: Path):
        config = _config(
            sell={"worker_path": "sell.py", "per_wallet": True},
            risk={"worker_path": "risk.py", "enabled": False},
        )
        supervisor = build_supervisor(config, session_store=InMemorySessionStore())
        assert sorted(supervisor.units) == ["sell:w1", "sell:w2"]
        assert set(supervisor.categories) == {"sell", "risk"}
        assert isinstance(supervisor.connection_restarter.connection, IntervalLivenessConnection)
        assert supervisor.connection is supervisor.connection_restarter.supervisor
        assert supervisor.session_manager.state.service_instance_id == "test-instance"
        assert supervisor.status_path == data_dir.resolve() / "status.json"
        assert supervisor.fork_client.log_dir == data_dir.resolve() / "logs" / "workers"

    def test_custom_log_dir(self, data_dir: Path, tmp_path: Path):
        config = WarchestConfig.model_validate({
            **DEFAULT_TEST_CONFIG,
            "logging": {"log_dir": str(tmp_path / "elsewhere")},
            "workers": {"buy": {"worker_path": "buy.py"}},
        })
        supervisor = build_supervisor(config, session_store=InMemorySessionStore())
        assert supervisor.fork_client.log_dir == tmp_path / "elsewhere" / "workers"


class TestCmdRun:
    def test_no_workers_exits(self, data_dir: Path, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cmd_run(argparse.Namespace(config=None))
        assert exc_info.value.code == 1
        assert "no worker categories" in capsys.readouterr().out

    def test_bad_config_exits(self, tmp_path: Path, capsys):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"workers": {"sell": {}}}))
        with pytest.raises(SystemExit) as exc_info:
            cmd_run(argparse.Namespace(config=str(path)))
        assert exc_info.value.code == 1
        assert "Invalid config" in capsys.readouterr().out
