# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""Unit tests for the service alert ring buffer."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from tests.helpers.mocks import FakeClock
from warchest.supervisor.alerts import ServiceAlertBuffer


class TestServiceAlertBuffer:
    def test_newest_first_and_capped(self):
        clock = FakeClock(0)
        buffer = ServiceAlertBuffer(capacity=3, clock=clock)
        for i in range(5):
            clock.advance(1)
            buffer.push("info", f"m{i}")
        snapshot = buffer.snapshot()
        assert len(buffer) == 3
        assert [a["message"] for a in snapshot] == ["m4", "m3", "m2"]
        assert snapshot[0]["ts"] == 5

    def test_unknown_level_becomes_info(self):
        alert = ServiceAlertBuffer().push("fatal", "x")
        assert alert.level == "info"

    def test_meta_is_copied(self):
        meta = {"wallet": "w1"}
        alert = ServiceAlertBuffer().push("warn", "slow", meta)
        meta["wallet"] = "w2"
        assert alert.meta == {"wallet": "w1"}

    def test_sink_receives_level_and_message(self):
        sink = MagicMock()
        ServiceAlertBuffer(sink=sink).push("error", "worker crashed")
        sink.assert_called_once_with("error", "worker crashed")

    def test_failing_sink_does_not_drop_alert(self):
        sink = MagicMock(side_effect=RuntimeError("webhook down"))
        buffer = ServiceAlertBuffer(sink=sink)
        buffer.push("warn", "stale")
        assert [a.message for a in buffer] == ["stale"]

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            ServiceAlertBuffer(capacity=0)
