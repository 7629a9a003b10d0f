"""
IPC envelope protocol: JSON Lines over a local stream socket.
"""

# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import math
import traceback
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import PurePath
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from warchest.exceptions import TransportError, ValidationError

logger = logging.getLogger(__name__)

# ── Constants ──────────────────────────────────────────────────
IPC_BUFFER_LIMIT = 16 * 1024 * 1024  # 16MB; default asyncio limit is 64KB
IPC_CHUNK_MAX = 1 * 1024 * 1024      # 1MB max chunk for socket writes
MAX_SAFE_INTEGER = 2**53 - 1         # largest integer a JSON double holds exactly

# Channel plumbing passed from parent to child through the environment
ENV_IPC_FD = "WARCHEST_IPC_FD"
ENV_PAYLOAD_FILE = "WARCHEST_PAYLOAD_FILE"
ENV_WORKER_NAME = "WARCHEST_WORKER_NAME"
ENV_LOG_DIR = "WARCHEST_LOG_DIR"
ENV_LOG_LEVEL = "WARCHEST_LOG_LEVEL"


# ── Protocol Types ──────────────────────────────────────────────────

class EnvelopeType(str, Enum):
    """Closed set of message kinds on the parent/child channel."""
    INVOKE = "invoke"
    RESULT = "result"
    ERROR = "error"
    PROGRESS = "progress"
    STOP = "stop"


@dataclass
class Envelope:
    """A single message exchanged between supervisor and worker.

    ``request_id`` correlates ``invoke`` with its ``result``/``error``.
    ``progress`` envelopes carry ``{"event", "data"}`` in ``payload`` and may
    reference the active request id, but are never used for correlation.
    ``stop`` carries ``{"reason"}`` in ``payload``.
    """

    type: EnvelopeType
    request_id: str = ""
    payload: Any = None
    result: Any = None
    error: dict[str, Any] | None = None

    # ── Constructors ──

    @classmethod
    def invoke(cls, request_id: str, payload: Any) -> Envelope:
        return cls(EnvelopeType.INVOKE, request_id=request_id, payload=payload)

    @classmethod
    def reply(cls, request_id: str, result: Any) -> Envelope:
        return cls(EnvelopeType.RESULT, request_id=request_id, result=result)

    @classmethod
    def failure(cls, request_id: str, exc: BaseException) -> Envelope:
        return cls(EnvelopeType.ERROR, request_id=request_id, error=error_to_dict(exc))

    @classmethod
    def progress(cls, event: str, data: Any = None, request_id: str = "") -> Envelope:
        return cls(
            EnvelopeType.PROGRESS,
            request_id=request_id,
            payload={"event": event, "data": data if data is not None else {}},
        )

    @classmethod
    def stop(cls, reason: str | None = None) -> Envelope:
        return cls(EnvelopeType.STOP, payload={"reason": reason})

    # ── Accessors ──

    @property
    def event(self) -> str | None:
        """Progress event name, or ``None`` for other envelope types."""
        if self.type is EnvelopeType.PROGRESS and isinstance(self.payload, dict):
            return self.payload.get("event")
        return None

    @property
    def event_data(self) -> Any:
        if self.type is EnvelopeType.PROGRESS and isinstance(self.payload, dict):
            return self.payload.get("data")
        return None

    @property
    def reason(self) -> str | None:
        if self.type is EnvelopeType.STOP and isinstance(self.payload, dict):
            return self.payload.get("reason")
        return None

    # ── Serialization ──

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type.value, "requestId": self.request_id}
        if self.payload is not None:
            data["payload"] = self.payload
        if self.type is EnvelopeType.RESULT:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data

    def to_json(self) -> str:
        """Serialize to JSON line (without the trailing newline)."""
        try:
            return json.dumps(self.to_dict(), allow_nan=False)
        except (TypeError, ValueError) as e:
            raise TransportError(f"Envelope not serializable: {e}") from e

    @classmethod
    def from_dict(cls, data: Any) -> Envelope:
        if not isinstance(data, dict):
            raise TransportError(f"Envelope must be a JSON object, got {type(data).__name__}")
        try:
            kind = EnvelopeType(data.get("type"))
        except ValueError as e:
            raise TransportError(f"Unknown envelope type: {data.get('type')!r}") from e
        error = data.get("error")
        if error is not None and not isinstance(error, dict):
            error = {"message": str(error)}
        return cls(
            type=kind,
            request_id=str(data.get("requestId") or ""),
            payload=data.get("payload"),
            result=data.get("result"),
            error=error,
        )

    @classmethod
    def from_json(cls, line: str) -> Envelope:
        """Deserialize from JSON line."""
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            raise TransportError(f"Invalid JSON on IPC channel: {e}") from e
        return cls.from_dict(data)


def error_to_dict(exc: BaseException) -> dict[str, Any]:
    """Build the ``error`` member of an error envelope from an exception."""
    message = str(exc) or type(exc).__name__
    stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return {
        "message": message,
        "stack": stack or None,
        "name": type(exc).__name__,
    }


# ── Payload Sanitization ────────────────────────────────────────────

def sanitize_payload(value: Any) -> Any:
    """Return a transport-safe copy of *value*.

    Integers beyond the exactly-representable JSON range are converted to
    decimal strings so that consumers parsing numbers as doubles do not lose
    precision.  Common non-JSON types are normalized (Decimal, datetime,
    Enum, Path, tuple/set, dataclass).  Already-safe input comes back equal.

    Raises:
        ValidationError: For NaN/Infinity floats or unsupported objects.
    """
    return _sanitize(value, path="$")


def _sanitize(value: Any, path: str) -> Any:
    if value is None or isinstance(value, (str, bool)):
        return value
    if isinstance(value, Enum):
        return _sanitize(value.value, path)
    if isinstance(value, int):
        if -MAX_SAFE_INTEGER <= value <= MAX_SAFE_INTEGER:
            return value
        return str(value)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ValidationError(f"Non-finite number at {path}")
        return value
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise ValidationError(f"Non-finite number at {path}")
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, PurePath):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        raise ValidationError(f"Binary data is not transport-safe at {path}")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _sanitize(dataclasses.asdict(value), path)
    if isinstance(value, Mapping):
        return {
            str(_sanitize(k, path)): _sanitize(v, f"{path}.{k}")
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value, key=repr) if isinstance(value, (set, frozenset)) else value
        return [_sanitize(v, f"{path}[{i}]") for i, v in enumerate(items)]
    raise ValidationError(
        f"Unsupported payload type {type(value).__name__} at {path}"
    )


# ── Framed Stream ────────────────────────────────────────────────────

class EnvelopeStream:
    """
    Newline-delimited JSON framing over an asyncio stream pair.

    Writes are serialized through a lock so that concurrent senders
    (progress emitters and reply writers) never interleave partial lines.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer
        self._write_lock = asyncio.Lock()
        self._closed = False

    @classmethod
    async def from_socket(cls, sock: Any) -> EnvelopeStream:
        """Wrap a connected socket object (e.g. one end of a socketpair)."""
        reader, writer = await asyncio.open_connection(sock=sock, limit=IPC_BUFFER_LIMIT)
        return cls(reader, writer)

    @property
    def closed(self) -> bool:
        return self._closed or self.writer.is_closing()

    async def _chunked_write(self, data: bytes) -> None:
        """Write *data*, splitting into IPC_CHUNK_MAX-sized pieces.

        Large JSON lines written in one call may overflow the OS send buffer;
        draining between chunks lets the kernel flush.
        """
        if len(data) <= IPC_CHUNK_MAX:
            self.writer.write(data)
            await self.writer.drain()
            return

        offset = 0
        while offset < len(data):
            end = min(offset + IPC_CHUNK_MAX, len(data))
            self.writer.write(data[offset:end])
            await self.writer.drain()
            offset = end

    async def send(self, envelope: Envelope) -> None:
        """Write one envelope.

        Raises:
            TransportError: If the channel is closed or the write fails.
        """
        line = (envelope.to_json() + "\n").encode("utf-8")
        async with self._write_lock:
            if self.closed:
                raise TransportError("IPC channel closed")
            try:
                await self._chunked_write(line)
            except (ConnectionError, OSError, RuntimeError) as e:
                raise TransportError(f"Envelope write failed: {e}") from e
        logger.debug("IPC sent: %s (id=%s)", envelope.type.value, envelope.request_id)

    async def receive(self) -> Envelope | None:
        """Read the next envelope; ``None`` at end of stream.

        Raises:
            TransportError: On a malformed line.  The stream stays usable.
        """
        while True:
            try:
                line_bytes = await self.reader.readline()
            except (ConnectionError, OSError) as e:
                logger.debug("IPC read failed: %s", e)
                return None
            except ValueError as e:
                # Line exceeded IPC_BUFFER_LIMIT
                raise TransportError(f"Envelope too large: {e}") from e
            if not line_bytes:
                return None
            line = line_bytes.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            return Envelope.from_json(line)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            logger.debug("IPC close error", exc_info=True)
