# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""Tests for ``warchest locks``."""

from __future__ import annotations

import argparse
import os
from pathlib import Path

import pytest

from cli.commands.locks import cmd_locks_list, cmd_locks_release


class TestLocksList:
    def test_empty(self, data_dir: Path, capsys):
        cmd_locks_list(argparse.Namespace())
        assert "No PID tags" in capsys.readouterr().out

    def test_states(self, data_dir: Path, capsys):
        locks = data_dir / "locks"
        (locks / "mine").write_text(f"{os.getpid()}\n")
        (locks / "gone").write_text("999999999\n")
        (locks / "junk").write_text("??")
        cmd_locks_list(argparse.Namespace())
        lines = {line.split()[0]: line.split()[-1] for line in capsys.readouterr().out.splitlines()[1:]}
        assert lines == {"gone": "stale", "junk": "unreadable", "mine": "alive"}


class TestLocksRelease:
    def test_release_stale_tag(self, data_dir: Path, capsys):
        tag = data_dir / "locks" / "wallet-w1"
        tag.write_text("999999999\n")
        cmd_locks_release(argparse.Namespace(tag="wallet-w1"))
        assert not tag.exists()
        out = capsys.readouterr().out
        assert "Released PID tag 'wallet-w1'" in out
        assert "Warning" not in out

    def test_release_live_holder_warns(self, data_dir: Path, capsys):
        (data_dir / "locks" / "stream").write_text(f"{os.getpid()}\n")
        cmd_locks_release(argparse.Namespace(tag="stream"))
        assert f"pid {os.getpid()} is still running" in capsys.readouterr().out

    def test_release_missing_tag(self, data_dir: Path, capsys):
        cmd_locks_release(argparse.Namespace(tag="nope"))
        assert "is not held" in capsys.readouterr().out

    def test_invalid_tag_exits(self, data_dir: Path, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cmd_locks_release(argparse.Namespace(tag="../etc"))
        assert exc_info.value.code == 1
        assert "Invalid PID tag" in capsys.readouterr().out
