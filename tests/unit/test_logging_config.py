# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""Unit tests for warchest/logging_config.py: structlog-based logging setup."""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path

import pytest
import structlog

from warchest.logging_config import (
    DailyWorkerFileHandler,
    clear_request_id,
    get_request_id,
    normalize_worker_name,
    set_request_id,
    setup_logging,
    setup_worker_logging,
)
from warchest.supervisor.harness import _configure_child_logging
from warchest.supervisor.instrumentation import WorkerLifecycle
from warchest.supervisor.ipc import ENV_LOG_DIR, ENV_LOG_LEVEL


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset root logger and contextvars after each test."""
    structlog.contextvars.clear_contextvars()
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        handler.close()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    structlog.contextvars.clear_contextvars()


# ── Request ID contextvars ────────────────────────────────


class TestRequestId:
    def test_default_value(self):
        assert get_request_id() == "-"

    def test_set_get_clear(self):
        set_request_id("req-abc-123")
        assert get_request_id() == "req-abc-123"
        clear_request_id()
        assert get_request_id() == "-"


# ── setup_logging ─────────────────────────────────────────


class TestSetupLogging:
    def test_console_only(self):
        setup_logging(level="DEBUG", log_dir=None)
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0], logging.StreamHandler)

    def test_with_file_handler(self, tmp_path):
        setup_logging(level="INFO", log_dir=tmp_path / "logs" / "deep", json_file=True)
        root = logging.getLogger()
        handler_types = [type(h).__name__ for h in root.handlers]
        assert handler_types == ["StreamHandler", "RotatingFileHandler"]
        assert (tmp_path / "logs" / "deep").is_dir()

    def test_invalid_level_defaults_to_info(self):
        setup_logging(level="INVALID_LEVEL")
        assert logging.getLogger().level == logging.INFO

    def test_asyncio_logger_quieted(self):
        setup_logging(level="DEBUG")
        assert logging.getLogger("asyncio").level == logging.WARNING

    def test_structlog_processor_formatter_used(self):
        setup_logging()
        for handler in logging.getLogger().handlers:
            assert "ProcessorFormatter" in type(handler.formatter).__name__

    def test_structlog_events_go_to_stderr(self, capsys):
        setup_logging(level="INFO")
        WorkerLifecycle("echo_worker").start("r1", {"mode": "one-shot"})
        captured = capsys.readouterr()
        assert captured.out == ""
        assert "worker_start" in captured.err
        assert "echo_worker" in captured.err

    def test_request_id_appears_in_json_file(self, tmp_path):
        setup_logging(level="DEBUG", log_dir=tmp_path, json_file=True)
        set_request_id("test-req-42")
        logging.getLogger("test.request.id").info("with request id")

        lines = (tmp_path / "warchest.log").read_text(encoding="utf-8").strip().splitlines()
        data = json.loads(lines[-1])
        assert data["event"] == "with request id"
        assert data["request_id"] == "test-req-42"


# ── Worker logging ────────────────────────────────────────


class TestNormalizeWorkerName:
    @pytest.mark.parametrize("raw,expected", [
        ("sell-ops", "sell-ops"),
        ("sell ops/w1", "sell-ops-w1"),
        ("a:b*c", "abc"),
        ("   ", "worker"),
        (None, "worker"),
        ("***", "worker"),
    ])
    def test_names(self, raw, expected):
        assert normalize_worker_name(raw) == expected


class TestDailyWorkerFileHandler:
    def _record(self, msg: str) -> logging.LogRecord:
        return logging.LogRecord("t", logging.INFO, __file__, 1, msg, None, None)

    def test_file_name_uses_worker_and_date(self, tmp_path: Path):
        handler = DailyWorkerFileHandler(tmp_path, "sell ops", date_fn=lambda: "2026-01-02")
        handler.emit(self._record("hello"))
        handler.close()
        assert (tmp_path / "sell-ops_2026-01-02.log").read_text().strip() == "hello"

    def test_date_change_opens_new_file(self, tmp_path: Path):
        day = ["2026-01-02"]
        handler = DailyWorkerFileHandler(tmp_path, "w", date_fn=lambda: day[0])
        handler.emit(self._record("one"))
        day[0] = "2026-01-03"
        handler.emit(self._record("two"))
        handler.close()
        assert (tmp_path / "w_2026-01-02.log").read_text().strip() == "one"
        assert (tmp_path / "w_2026-01-03.log").read_text().strip() == "two"

    def test_size_cap_continues_in_numbered_file(self, tmp_path: Path):
        handler = DailyWorkerFileHandler(tmp_path, "w", max_bytes=20, date_fn=lambda: "2026-01-02")
        handler.emit(self._record("x" * 15))
        handler.emit(self._record("y" * 15))
        handler.close()
        assert (tmp_path / "w_2026-01-02.log").read_text().strip() == "x" * 15
        assert (tmp_path / "w_2026-01-02.log.1").read_text().strip() == "y" * 15

    def test_prune_removes_only_old_files_of_this_worker(self, tmp_path: Path):
        old = tmp_path / "w_2020-01-01.log"
        other = tmp_path / "other_2020-01-01.log"
        for path in (old, other):
            path.write_text("old")
            stale = time.time() - 30 * 86400
            os.utime(path, (stale, stale))
        handler = DailyWorkerFileHandler(tmp_path, "w", retention_days=7)
        handler.close()
        assert not old.exists()
        assert other.exists()


class TestSetupWorkerLogging:
    def test_installs_file_and_console(self, tmp_path: Path):
        handler = setup_worker_logging("buy:w1", tmp_path, level="DEBUG")
        root = logging.getLogger()
        assert handler in root.handlers
        assert len(root.handlers) == 2
        logging.getLogger("warchest.test").warning("worker line")
        handler.flush()
        lines = handler.current_path.read_text(encoding="utf-8").strip().splitlines()
        assert json.loads(lines[-1])["event"] == "worker line"

    def test_without_console(self, tmp_path: Path):
        setup_worker_logging("w", tmp_path, also_to_console=False)
        assert len(logging.getLogger().handlers) == 1


class TestChildFallbackLogging:
    def test_without_log_dir_child_logs_to_stderr(self, monkeypatch, capsys):
        monkeypatch.delenv(ENV_LOG_DIR, raising=False)
        monkeypatch.setenv(ENV_LOG_LEVEL, "DEBUG")
        _configure_child_logging("echo_worker")
        lifecycle = WorkerLifecycle("echo_worker")
        lifecycle.start("r1")
        lifecycle.success("r1", {"ok": True}, None)
        logging.getLogger("warchest.supervisor.harness").info("Worker ready")

        captured = capsys.readouterr()
        assert captured.out == ""
        assert "worker_success" in captured.err
        assert "Worker ready" in captured.err
        assert logging.getLogger().level == logging.DEBUG
