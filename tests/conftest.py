# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""Global test fixtures for Warchest.

Provides filesystem isolation, config cache management and a fork client
wired to temporary directories.
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest
from dotenv import load_dotenv

from tests.helpers.filesystem import WORKERS_DIR, create_test_data_dir
from tests.helpers.mocks import FakeClock

load_dotenv()

PROJECT_ROOT = Path(__file__).resolve().parent.parent


# ── Fixtures ──────────────────────────────────────────────


@pytest.fixture(autouse=True, scope="session")
def _child_pythonpath():
    """Fixture workers import ``warchest``; make the checkout visible to them."""
    previous = os.environ.get("PYTHONPATH")
    parts = [str(PROJECT_ROOT)] + ([previous] if previous else [])
    os.environ["PYTHONPATH"] = os.pathsep.join(parts)
    yield
    if previous is None:
        os.environ.pop("PYTHONPATH", None)
    else:
        os.environ["PYTHONPATH"] = previous


@pytest.fixture
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Create an isolated Warchest runtime data directory.

    - Redirects ``WARCHEST_DATA_DIR`` to a temp directory
    - Invalidates the config cache before and after the test
    """
    from warchest.config import invalidate_cache

    d = create_test_data_dir(tmp_path)
    monkeypatch.setenv("WARCHEST_DATA_DIR", str(d))
    invalidate_cache()
    yield d
    invalidate_cache()


@pytest.fixture
def workers_dir() -> Path:
    return WORKERS_DIR


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fork_client(tmp_path: Path):
    from warchest.config.models import ForkConfig
    from warchest.supervisor.fork_client import ForkClient

    return ForkClient(
        ForkConfig(
            default_timeout_ms=15_000,
            stop_grace_ms=3_000,
            exit_wait_ms=3_000,
            lock_dir=str(tmp_path / "locks"),
        ),
        tmp_dir=tmp_path / "tmp",
    )
