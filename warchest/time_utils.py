# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0

"""Clock helpers.

Supervision state is kept in integer epoch milliseconds so that it can be
written to the status snapshot and session store without conversion.
Components accept a ``clock`` callable returning the same unit, which tests
replace with a controllable fake.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], int]


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def now_utc() -> datetime:
    """Return current time as timezone-aware UTC datetime."""
    return datetime.now(tz=timezone.utc)


def now_iso() -> str:
    """Return current time as ISO8601 string with UTC offset."""
    return now_utc().isoformat()
