# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""Unit tests for WorkerLifecycle."""

from __future__ import annotations

import logging

from tests.helpers.mocks import FakeClock
from warchest.supervisor.instrumentation import WorkerLifecycle


class TestWorkerLifecycle:
    def test_records_share_one_shape(self):
        clock = FakeClock(1_000)
        records: list[dict] = []
        lifecycle = WorkerLifecycle("sell-ops", metrics_sink=records.append, clock=clock)

        started = lifecycle.start("r1", {"pid": 7})
        clock.advance(250)
        lifecycle.success("r1", {"b": 1, "a": 2}, started)
        lifecycle.cleanup("r1")

        assert [r["event"] for r in records] == ["start", "success", "cleanup"]
        for record in records:
            assert record["worker"] == "sell-ops"
            assert record["request_id"] == "r1"
            assert "duration_ms" in record
        assert records[0]["pid"] == 7
        assert records[1]["duration_ms"] == 250
        assert records[1]["result_keys"] == ["a", "b"]

    def test_error_record(self):
        clock = FakeClock(0)
        records: list[dict] = []
        lifecycle = WorkerLifecycle("w", metrics_sink=records.append, clock=clock)
        started = lifecycle.start("r1")
        clock.advance(10)
        lifecycle.error("r1", TimeoutError("slow rpc"), started)
        assert records[-1]["error"] == "slow rpc"
        assert records[-1]["error_type"] == "TimeoutError"
        assert records[-1]["duration_ms"] == 10

    def test_missing_start_gives_no_duration(self):
        records: list[dict] = []
        WorkerLifecycle("w", metrics_sink=records.append).success("r1", [1, 2], None)
        assert records[0]["duration_ms"] is None
        assert records[0]["result_len"] == 2

    def test_failing_sink_is_contained(self, caplog):
        def sink(record):
            raise RuntimeError("sink down")

        lifecycle = WorkerLifecycle("w", metrics_sink=sink)
        with caplog.at_level(logging.WARNING, logger="warchest.supervisor.instrumentation"):
            lifecycle.start("r1")
        assert "Metrics sink failed" in caplog.text

    def test_no_sink_is_fine(self):
        lifecycle = WorkerLifecycle("w")
        started = lifecycle.start("r1")
        lifecycle.success("r1", None, started)
        lifecycle.cleanup("r1")
