# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0

"""Centralized path resolution for Warchest.

All modules import directory paths from here instead of computing them ad-hoc.
Runtime data directory can be overridden via WARCHEST_DATA_DIR environment variable.
"""

from __future__ import annotations

import os
from pathlib import Path


# Default runtime data directory
_DEFAULT_DATA_DIR = Path.home() / ".warchest"


def get_data_dir() -> Path:
    """Return the runtime data directory, respecting WARCHEST_DATA_DIR env var."""
    env_val = os.environ.get("WARCHEST_DATA_DIR")
    if env_val:
        return Path(env_val).expanduser().resolve()
    return _DEFAULT_DATA_DIR


def get_lock_dir() -> Path:
    return get_data_dir() / "locks"


def get_log_dir() -> Path:
    return get_data_dir() / "logs"


def get_status_path() -> Path:
    """Return the status snapshot written by the supervisor on every tick."""
    return get_data_dir() / "status.json"


def get_session_db_path() -> Path:
    return get_data_dir() / "sessions.sqlite3"


def get_tmp_dir() -> Path:
    return get_data_dir() / "tmp"
