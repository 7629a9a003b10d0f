# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0

"""Async retry/backoff for transient network failures."""
from __future__ import annotations

import asyncio
import errno
import logging
import socket
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from warchest.exceptions import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ── Constants ──────────────────────────────────────────────

_DEFAULT_ATTEMPTS = 3
_DEFAULT_BASE_MS = 200
_DEFAULT_MAX_MS = 2_000

TRANSIENT_CODES = frozenset({
    "ECONNRESET", "ECONNREFUSED", "ETIMEDOUT", "EAI_AGAIN", "ENETUNREACH",
})


# ── Classification ─────────────────────────────────────────


def _error_code(exc: BaseException) -> str | None:
    code = getattr(exc, "code", None)
    if isinstance(code, str):
        return code
    if isinstance(exc, socket.gaierror) and exc.errno == socket.EAI_AGAIN:
        return "EAI_AGAIN"
    if isinstance(exc, OSError) and isinstance(exc.errno, int) and exc.errno > 0:
        return errno.errorcode.get(exc.errno)
    if isinstance(exc, TimeoutError):
        return "ETIMEDOUT"
    return None


def _status(exc: BaseException) -> int | None:
    for attr in ("status", "status_code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def is_retryable_error(exc: BaseException | None) -> bool:
    """True for transient socket errors, HTTP 5xx and HTTP 429."""
    if exc is None:
        return False
    if _error_code(exc) in TRANSIENT_CODES:
        return True
    status = _status(exc)
    if status is not None and (status >= 500 or status == 429):
        return True
    return False


# ── Public API ─────────────────────────────────────────────


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = _DEFAULT_ATTEMPTS,
    base_ms: int = _DEFAULT_BASE_MS,
    max_ms: int = _DEFAULT_MAX_MS,
    should_retry: Callable[[BaseException], bool] = is_retryable_error,
    on_retry: Callable[[BaseException, int], Any] | None = None,
    sleep_fn: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Await *fn* with exponential backoff while its failures are transient.

    Args:
        fn: Zero-argument coroutine factory; called once per attempt.
        attempts: Total attempts, including the first.
        base_ms: Delay before the second attempt; doubles afterwards.
        max_ms: Cap on the computed delay.
        should_retry: Predicate deciding whether a failure is transient.
        on_retry: Optional hook ``(exc, attempt)`` invoked before each sleep.
        sleep_fn: Sleep coroutine (seconds).  Tests swap in a no-op.

    Raises:
        RetryExhaustedError: Once a non-retryable failure occurs or the
            attempts run out.  ``last_error`` holds the final failure.
    """
    last_exc: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except Exception as exc:
            last_exc = exc
            if not should_retry(exc) or attempt >= attempts:
                break
            delay_ms = min(max_ms, base_ms * 2 ** (attempt - 1))
            logger.warning(
                "Transient error (attempt %d/%d), retrying in %dms: %s",
                attempt, attempts, delay_ms, exc,
            )
            if on_retry is not None:
                on_retry(exc, attempt)
            await sleep_fn(delay_ms / 1000)
    raise RetryExhaustedError(attempts, last_exc) from last_exc
