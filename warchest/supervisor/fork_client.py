"""
Parent-side fork client: spawn worker processes and call them over IPC.
"""

# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import os
import secrets
import signal
import socket
import sys
import tempfile
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from warchest.config.models import EndpointConfig, ForkConfig
from warchest.exceptions import (
    RemoteWorkerError,
    TransportError,
    ValidationError,
    WorkerError,
    WorkerExitError,
    WorkerTimeoutError,
)
from warchest.paths import get_lock_dir, get_tmp_dir
from warchest.supervisor.instrumentation import MetricsSink, WorkerLifecycle
from warchest.supervisor.ipc import (
    ENV_IPC_FD,
    ENV_LOG_DIR,
    ENV_LOG_LEVEL,
    ENV_PAYLOAD_FILE,
    ENV_WORKER_NAME,
    Envelope,
    EnvelopeStream,
    EnvelopeType,
    sanitize_payload,
)
from warchest.supervisor.pid_tag import acquire_pid_tag
from warchest.time_utils import Clock, now_ms

logger = logging.getLogger(__name__)

# ── Environment mapping ───────────────────────────────────────

ENV_RPC_ENDPOINT = "WARCHEST_RPC_ENDPOINT"
ENV_DATA_ENDPOINT = "WARCHEST_DATA_ENDPOINT"
ENV_WALLET_IDS = "WARCHEST_WALLET_IDS"
ENV_STORE_PATH = "WARCHEST_STORE_PATH"

_READER_DRAIN_TIMEOUT = 1.0  # seconds to flush replies still buffered after exit
_SEND_FAILURE_EXIT_WAIT_MS = 1_000

ProgressListener = Callable[["WorkerHandle", str, Any], Any]


def build_worker_env(
    *,
    rpc_endpoint: str | None = None,
    data_endpoint: str | None = None,
    wallet_ids: Iterable[Any] | None = None,
    store_path: str | os.PathLike | None = None,
    extra: dict[str, Any] | None = None,
) -> dict[str, str]:
    """Map connection hints onto the fixed worker environment names.

    Only hints that are set produce variables; *extra* pairs pass through
    verbatim (``None`` values are skipped).
    """
    env: dict[str, str] = {}
    if rpc_endpoint:
        env[ENV_RPC_ENDPOINT] = str(rpc_endpoint)
    if data_endpoint:
        env[ENV_DATA_ENDPOINT] = str(data_endpoint)
    if isinstance(wallet_ids, (str, int)):
        wallets = [str(wallet_ids)]
    else:
        wallets = [str(w) for w in (wallet_ids or [])]
    if wallets:
        env[ENV_WALLET_IDS] = ",".join(wallets)
    if store_path:
        env[ENV_STORE_PATH] = str(store_path)
    for key, value in (extra or {}).items():
        if value is None:
            continue
        env[str(key)] = str(value)
    return env


def endpoint_env(endpoints: EndpointConfig, extra: dict[str, Any] | None = None) -> dict[str, str]:
    return build_worker_env(
        rpc_endpoint=endpoints.rpc_endpoint,
        data_endpoint=endpoints.data_endpoint,
        wallet_ids=endpoints.wallet_ids,
        store_path=endpoints.store_path,
        extra=extra,
    )


def generate_request_id() -> str:
    return secrets.token_hex(8)


def _release_targets(resource: Any) -> list[tuple[str, Callable[[], Any]]]:
    """Release callables for a caller-attached resource."""
    targets = [
        (f"{type(resource).__name__}.{attr}", getattr(resource, attr))
        for attr in ("close", "unsubscribe", "release")
        if callable(getattr(resource, attr, None))
    ]
    if not targets and callable(resource):
        targets.append((getattr(resource, "__name__", "callback"), resource))
    return targets


async def _run_releases(releases: list[tuple[str, Callable[[], Any]]], label: str) -> None:
    for name, fn in releases:
        try:
            result = fn()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.warning("Release of %s failed for %s", name, label, exc_info=True)


# ── Data types ────────────────────────────────────────────────


class WorkerStatus(Enum):
    STARTING = "starting"
    ALIVE = "alive"
    ERROR = "error"
    STOPPED = "stopped"


@dataclass
class InvokeOptions:
    """Per-call options for :meth:`ForkClient.invoke` and friends.

    ``timeout_ms=None`` uses the client default; ``0`` disables the timer.
    """

    payload: Any = None
    env: dict[str, Any] = field(default_factory=dict)
    endpoints: EndpointConfig | None = None
    timeout_ms: int | None = None
    request_id: str | None = None
    worker_name: str | None = None
    resources: list[Any] = field(default_factory=list)
    lock_tag: str | None = None
    on_progress: ProgressListener | None = None


@dataclass
class InvokeResult:
    result: Any
    request_id: str
    raw: dict[str, Any]


# ── Call correlation ──────────────────────────────────────────


class WorkerCall:
    """One invoke/reply exchange with a worker.

    Whichever of result, error, timeout or process exit arrives first
    settles the call; the others are ignored.  Every registration made for
    the call (message listener, exit listener, timer, caller resources) is
    released exactly once, right after settlement.
    """

    def __init__(
        self,
        handle: WorkerHandle,
        request_id: str,
        *,
        timeout_ms: int | None,
        resources: Iterable[Any] = (),
    ):
        loop = asyncio.get_running_loop()
        self.handle = handle
        self.request_id = request_id
        self.timeout_ms = timeout_ms
        self._future: asyncio.Future[InvokeResult] = loop.create_future()
        self._future.add_done_callback(_consume_future)
        self._settled = False
        self._release_task: asyncio.Task | None = None
        self._lifecycle = handle.lifecycle
        self._started_at = self._lifecycle.start(request_id, {"pid": handle.process_id})

        self._releases: list[tuple[str, Callable[[], Any]]] = [
            ("message listener", handle.add_message_listener(self._on_message)),
            ("exit listener", handle.add_exit_listener(self._on_exit)),
        ]
        if timeout_ms:
            timer = loop.call_later(timeout_ms / 1000, self._on_timeout)
            self._releases.append(("timeout timer", timer.cancel))
        for resource in resources:
            self._releases.extend(_release_targets(resource))

        if handle.exit_code is not None:
            self._on_exit(handle.exit_code)

    @property
    def done(self) -> bool:
        return self._settled

    # ── Settlement sources ──

    def _on_message(self, envelope: Envelope) -> None:
        if envelope.request_id != self.request_id:
            return
        if envelope.type is EnvelopeType.RESULT:
            self._settle(result=InvokeResult(envelope.result, self.request_id, envelope.to_dict()))
        elif envelope.type is EnvelopeType.ERROR:
            err = envelope.error or {}
            self._settle(error=RemoteWorkerError(
                err.get("message") or "Worker error",
                remote_stack=err.get("stack"),
                remote_type=err.get("name"),
                request_id=self.request_id,
            ))

    def _on_exit(self, exit_code: int | None) -> None:
        self._settle(error=WorkerExitError(exit_code, worker_name=self.handle.worker_name))

    def _on_timeout(self) -> None:
        exc = WorkerTimeoutError(self.timeout_ms or 0, self.request_id)
        exc.handle = self.handle
        self._settle(error=exc)

    def fail(self, exc: BaseException) -> None:
        self._settle(error=exc)

    def _settle(
        self,
        result: InvokeResult | None = None,
        error: BaseException | None = None,
        cancelled: bool = False,
    ) -> None:
        if self._settled:
            return
        self._settled = True

        if cancelled:
            self._lifecycle.error(self.request_id, asyncio.CancelledError(), self._started_at)
            self._future.cancel()
        elif error is not None:
            self._lifecycle.error(self.request_id, error, self._started_at)
            if not self._future.done():
                self._future.set_exception(error)
        else:
            self._lifecycle.success(self.request_id, result.result, self._started_at)
            if not self._future.done():
                self._future.set_result(result)

        self._release_task = asyncio.get_running_loop().create_task(self._release())

    async def _release(self) -> None:
        releases, self._releases = self._releases, []
        await _run_releases(releases, f"request {self.request_id}")
        self._lifecycle.cleanup(self.request_id)

    async def wait(self) -> InvokeResult:
        """Await settlement; resources are released before this returns."""
        try:
            return await asyncio.shield(self._future)
        except asyncio.CancelledError:
            self._settle(cancelled=True)
            raise
        finally:
            if self._release_task is not None:
                await asyncio.shield(self._release_task)
            self.handle._forget_call(self)


def _consume_future(fut: asyncio.Future) -> None:
    # Calls launched without a waiter must not log "exception never retrieved"
    if not fut.cancelled():
        fut.exception()


# ── Worker handle ─────────────────────────────────────────────


class WorkerHandle:
    """
    A spawned worker process with its IPC channel.

    Owned by whoever spawned it; a restart replaces the handle rather than
    reusing it.
    """

    def __init__(
        self,
        worker_name: str,
        worker_path: Path,
        process: asyncio.subprocess.Process,
        stream: EnvelopeStream,
        *,
        metrics_sink: MetricsSink | None = None,
        clock: Clock | None = None,
    ):
        self.worker_name = worker_name
        self.worker_path = worker_path
        self.process = process
        self._clock = clock or now_ms
        self.started_at: int = self._clock()
        self.last_heartbeat_at: int | None = None
        self.last_restart_at: int | None = None
        self.status = WorkerStatus.STARTING
        self.exit_code: int | None = None
        self.lifecycle = WorkerLifecycle(worker_name, metrics_sink=metrics_sink, clock=self._clock)

        self._stream = stream
        self._message_listeners: list[Callable[[Envelope], Any]] = []
        self._exit_listeners: list[Callable[[int | None], Any]] = []
        self._exit_resources: list[tuple[str, Callable[[], Any]]] = []
        self._calls: dict[str, WorkerCall] = {}
        self.last_request_id: str | None = None
        self._stop_requested = False
        self._reader_task: asyncio.Task | None = None
        self._exit_task: asyncio.Task | None = None

    def _start(self) -> None:
        self._reader_task = asyncio.create_task(
            self._read_loop(), name=f"worker-reader-{self.worker_name}",
        )
        self._exit_task = asyncio.create_task(
            self._watch_exit(), name=f"worker-exit-{self.worker_name}",
        )

    @property
    def process_id(self) -> int:
        return self.process.pid

    def is_alive(self) -> bool:
        return self.process.returncode is None and self.exit_code is None

    # ── Listeners ──

    def add_message_listener(self, listener: Callable[[Envelope], Any]) -> Callable[[], None]:
        """Register *listener*; returns a function that removes it."""
        self._message_listeners.append(listener)

        def remove() -> None:
            if listener in self._message_listeners:
                self._message_listeners.remove(listener)

        return remove

    def add_exit_listener(self, listener: Callable[[int | None], Any]) -> Callable[[], None]:
        self._exit_listeners.append(listener)

        def remove() -> None:
            if listener in self._exit_listeners:
                self._exit_listeners.remove(listener)

        return remove

    def add_progress_listener(self, listener: ProgressListener) -> Callable[[], None]:
        """Register ``listener(handle, event, data)`` for progress envelopes."""

        def on_message(envelope: Envelope) -> None:
            if envelope.type is EnvelopeType.PROGRESS:
                listener(self, envelope.event or "", envelope.event_data)

        return self.add_message_listener(on_message)

    def release_on_exit(self, resource: Any) -> None:
        """Release *resource* (close/unsubscribe/release) once the process exits."""
        self._exit_resources.extend(_release_targets(resource))

    def listener_counts(self) -> tuple[int, int]:
        return len(self._message_listeners), len(self._exit_listeners)

    # ── Background tasks ──

    async def _read_loop(self) -> None:
        while True:
            try:
                envelope = await self._stream.receive()
            except TransportError as e:
                logger.warning("Malformed envelope from %s: %s", self.worker_name, e)
                continue
            if envelope is None:
                return
            if self.status is WorkerStatus.STARTING:
                self.status = WorkerStatus.ALIVE
            for listener in list(self._message_listeners):
                try:
                    listener(envelope)
                except Exception:
                    logger.exception("Message listener failed for %s", self.worker_name)

    async def _watch_exit(self) -> int:
        code = await self.process.wait()
        try:
            await asyncio.wait_for(asyncio.shield(self._reader_task), timeout=_READER_DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.debug("Reader for %s still open after exit", self.worker_name)
        except Exception:
            logger.exception("Reader for %s failed", self.worker_name)

        self.exit_code = code
        if code == 0 or self._stop_requested:
            self.status = WorkerStatus.STOPPED
            logger.info("Worker exited: %s (PID %s, code=%s)", self.worker_name, self.process_id, code)
        else:
            self.status = WorkerStatus.ERROR
            logger.warning("Worker exited abnormally: %s (PID %s, code=%s)", self.worker_name, self.process_id, code)

        for listener in list(self._exit_listeners):
            try:
                listener(code)
            except Exception:
                logger.exception("Exit listener failed for %s", self.worker_name)

        releases, self._exit_resources = self._exit_resources, []
        await _run_releases(releases, f"worker {self.worker_name}")

        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
        await self._stream.close()
        return code

    # ── Calls ──

    async def start_call(
        self,
        payload: Any,
        *,
        request_id: str | None = None,
        timeout_ms: int | None = None,
        resources: Iterable[Any] = (),
    ) -> WorkerCall:
        """Register a call and send its ``invoke`` envelope."""
        rid = request_id or generate_request_id()
        pending = self._calls.get(rid)
        if pending is not None and not pending.done:
            raise ValidationError(f"requestId {rid} is already pending")

        call = WorkerCall(self, rid, timeout_ms=timeout_ms, resources=resources)
        self._calls[rid] = call
        self.last_request_id = rid
        if call.done:
            return call

        try:
            await self._stream.send(Envelope.invoke(rid, payload))
        except TransportError as exc:
            # A child that died before reading settles the call via its exit
            if not await self.wait_exit(_SEND_FAILURE_EXIT_WAIT_MS):
                call.fail(exc)
        return call

    async def request(
        self,
        payload: Any,
        *,
        request_id: str | None = None,
        timeout_ms: int | None = None,
        resources: Iterable[Any] = (),
    ) -> InvokeResult:
        call = await self.start_call(
            payload, request_id=request_id, timeout_ms=timeout_ms, resources=resources,
        )
        return await call.wait()

    async def wait_reply(self, request_id: str) -> InvokeResult:
        call = self._calls.get(request_id)
        if call is None:
            raise ValidationError(f"No call {request_id} on worker {self.worker_name}")
        return await call.wait()

    def _forget_call(self, call: WorkerCall) -> None:
        if self._calls.get(call.request_id) is call:
            del self._calls[call.request_id]

    # ── Termination ──

    async def wait_exit(self, timeout_ms: int | None = None) -> bool:
        """Wait for the process to exit; ``False`` if still alive after *timeout_ms*."""
        if self._exit_task is None:
            return not self.is_alive()
        try:
            if timeout_ms is None:
                await asyncio.shield(self._exit_task)
            else:
                await asyncio.wait_for(asyncio.shield(self._exit_task), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            return False
        return True

    def send_signal(self, sig: int) -> bool:
        if not self.is_alive():
            return False
        try:
            self.process.send_signal(sig)
        except ProcessLookupError:
            return False
        return True

    def kill(self, sig: int = signal.SIGKILL) -> bool:
        """Force kill the process (SIGKILL by default)."""
        if self.send_signal(sig):
            logger.warning("Sent %s to %s (PID %s)", signal.Signals(sig).name, self.worker_name, self.process_id)
            return True
        return False

    async def stop(self, reason: str | None = None, grace_ms: int = 5_000) -> bool:
        """
        Ask the worker to shut down.

        Shutdown flow:
        1. Send a ``stop`` envelope
        2. Wait up to *grace_ms* for the process to exit
        3. If still alive, send SIGTERM

        Returns:
            True if the process exited within the grace period.
        """
        if not self.is_alive():
            return True
        self._stop_requested = True
        logger.info("Stopping worker %s (PID %s, reason=%s)", self.worker_name, self.process_id, reason)
        try:
            await self._stream.send(Envelope.stop(reason))
        except TransportError as e:
            logger.debug("Stop envelope not delivered to %s: %s", self.worker_name, e)

        if await self.wait_exit(grace_ms):
            return True

        logger.warning(
            "Worker %s did not exit within %dms, sending SIGTERM", self.worker_name, grace_ms,
        )
        self.send_signal(signal.SIGTERM)
        return False

    def __repr__(self) -> str:
        return f"<WorkerHandle {self.worker_name} pid={self.process_id} status={self.status.value}>"


# ── Detached workers ──────────────────────────────────────────


@dataclass
class DetachedHandle:
    """A fire-and-forget worker; its result is never collected."""

    worker_name: str
    request_id: str
    payload_path: Path
    process: asyncio.subprocess.Process
    started_at: int

    @property
    def process_id(self) -> int:
        return self.process.pid

    def is_alive(self) -> bool:
        return self.process.returncode is None

    async def stop(self, reason: str | None = None, grace_ms: int = 5_000) -> bool:
        """Terminate with SIGTERM, escalating to SIGKILL after *grace_ms*."""
        if not self.is_alive():
            return True
        logger.info("Stopping detached worker %s (PID %s, reason=%s)", self.worker_name, self.process_id, reason)
        try:
            self.process.terminate()
            await asyncio.wait_for(self.process.wait(), timeout=grace_ms / 1000)
            return True
        except ProcessLookupError:
            return True
        except asyncio.TimeoutError:
            logger.warning("Detached worker %s ignored SIGTERM, sending SIGKILL", self.worker_name)
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
            return False


# ── Client ────────────────────────────────────────────────────


class ForkClient:
    """Spawns workers and correlates their replies."""

    def __init__(
        self,
        config: ForkConfig | None = None,
        endpoints: EndpointConfig | None = None,
        *,
        log_dir: Path | None = None,
        log_level: str | None = None,
        tmp_dir: Path | None = None,
        metrics_sink: MetricsSink | None = None,
        clock: Clock | None = None,
    ):
        self.config = config or ForkConfig()
        self.endpoints = endpoints or EndpointConfig()
        self.log_dir = log_dir
        self.log_level = log_level
        self.tmp_dir = tmp_dir
        self.metrics_sink = metrics_sink
        self._clock = clock or now_ms
        self._handles: dict[int, WorkerHandle] = {}

    @property
    def lock_dir(self) -> Path:
        if self.config.lock_dir:
            return Path(self.config.lock_dir).expanduser()
        return get_lock_dir()

    def live_handles(self) -> list[WorkerHandle]:
        self._handles = {pid: h for pid, h in self._handles.items() if h.is_alive()}
        return list(self._handles.values())

    def _resolve_worker(self, worker_path: str | os.PathLike) -> Path:
        path = Path(worker_path).expanduser()
        if not path.is_file():
            raise ValidationError(f"Worker script not found: {path}")
        return path.resolve()

    def _timeout_for(self, options: InvokeOptions) -> int:
        if options.timeout_ms is None:
            return self.config.default_timeout_ms
        if options.timeout_ms < 0:
            raise ValidationError(f"timeout_ms must not be negative: {options.timeout_ms}")
        return options.timeout_ms

    def _child_env(
        self,
        worker_name: str,
        extra: dict[str, Any] | None,
        endpoints: EndpointConfig | None,
    ) -> dict[str, str]:
        env = dict(os.environ)
        env.update(endpoint_env(endpoints or self.endpoints, extra))
        env[ENV_WORKER_NAME] = worker_name
        if self.log_dir is not None:
            env[ENV_LOG_DIR] = str(self.log_dir)
        if self.log_level:
            env[ENV_LOG_LEVEL] = self.log_level
        return env

    async def spawn(
        self,
        worker_path: str | os.PathLike,
        *,
        worker_name: str | None = None,
        env: dict[str, Any] | None = None,
        endpoints: EndpointConfig | None = None,
    ) -> WorkerHandle:
        """Start a worker process connected over a fresh socket pair."""
        path = self._resolve_worker(worker_path)
        name = worker_name or path.stem
        child_env = self._child_env(name, env, endpoints)

        parent_sock, child_sock = socket.socketpair()
        child_env[ENV_IPC_FD] = str(child_sock.fileno())
        try:
            process = await asyncio.create_subprocess_exec(
                self.config.python_executable or sys.executable,
                str(path),
                env=child_env,
                stdin=asyncio.subprocess.DEVNULL,
                pass_fds=(child_sock.fileno(),),
            )
        except OSError as e:
            parent_sock.close()
            raise WorkerError(f"Failed to spawn worker {name}: {e}") from e
        finally:
            child_sock.close()

        stream = await EnvelopeStream.from_socket(parent_sock)
        handle = WorkerHandle(
            name, path, process, stream,
            metrics_sink=self.metrics_sink, clock=self._clock,
        )
        handle._start()
        self._handles[process.pid] = handle
        logger.info("Worker spawned: %s (PID %s)", name, process.pid)
        return handle

    async def _prepare(self, worker_path: str | os.PathLike, options: InvokeOptions) -> tuple[Any, WorkerHandle]:
        payload = sanitize_payload(options.payload)
        self._timeout_for(options)
        lock = None
        if options.lock_tag:
            lock = await acquire_pid_tag(options.lock_tag, self.lock_dir)
        try:
            handle = await self.spawn(
                worker_path,
                worker_name=options.worker_name,
                env=options.env,
                endpoints=options.endpoints,
            )
        except BaseException:
            if lock is not None:
                await lock.release()
            raise
        if lock is not None:
            # The guarded resource stays in use until the process is gone
            handle.release_on_exit(lock)
        if options.on_progress is not None:
            handle.add_progress_listener(options.on_progress)
        return payload, handle

    async def invoke(
        self,
        worker_path: str | os.PathLike,
        options: InvokeOptions | None = None,
    ) -> InvokeResult:
        """
        Run a one-shot worker and return its reply.

        Raises:
            ValidationError: Payload not transport-safe or worker missing.
            LockConflictError: ``lock_tag`` is already held.
            WorkerTimeoutError: No reply in time.  The child is NOT killed;
                ``exc.handle`` lets the caller stop it.
            WorkerExitError: The child exited before replying.
            RemoteWorkerError: The handler raised.
        """
        options = options or InvokeOptions()
        payload, handle = await self._prepare(worker_path, options)
        call = await handle.start_call(
            payload,
            request_id=options.request_id,
            timeout_ms=self._timeout_for(options),
            resources=options.resources,
        )
        try:
            result = await call.wait()
        except WorkerTimeoutError:
            logger.warning(
                "Worker %s timed out; PID %s left running", handle.worker_name, handle.process_id,
            )
            raise
        except WorkerError:
            await handle.wait_exit(self.config.exit_wait_ms)
            raise
        await handle.wait_exit(self.config.exit_wait_ms)
        return result

    async def launch(
        self,
        worker_path: str | os.PathLike,
        options: InvokeOptions | None = None,
    ) -> WorkerHandle:
        """Start a long-running worker and send its first invocation.

        Returns immediately; the reply (if any) is available through
        ``handle.wait_reply(handle.last_request_id)``.
        """
        options = options or InvokeOptions(timeout_ms=0)
        payload, handle = await self._prepare(worker_path, options)
        call = await handle.start_call(
            payload,
            request_id=options.request_id,
            timeout_ms=self._timeout_for(options),
            resources=options.resources,
        )
        logger.debug("Launched %s with request %s", handle.worker_name, call.request_id)
        return handle

    async def spawn_detached(
        self,
        worker_path: str | os.PathLike,
        options: InvokeOptions | None = None,
    ) -> DetachedHandle:
        """Spawn an unsupervised worker that reads its payload from a file."""
        options = options or InvokeOptions()
        payload = sanitize_payload(options.payload)
        path = self._resolve_worker(worker_path)
        name = options.worker_name or path.stem
        request_id = options.request_id or generate_request_id()

        tmp_dir = self.tmp_dir or get_tmp_dir()
        document = json.dumps({"requestId": request_id, "payload": payload})
        payload_path = await asyncio.to_thread(_write_payload_file, tmp_dir, name, document)

        env = self._child_env(name, options.env, options.endpoints)
        env[ENV_PAYLOAD_FILE] = str(payload_path)
        try:
            process = await asyncio.create_subprocess_exec(
                self.config.python_executable or sys.executable,
                str(path),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            await asyncio.to_thread(payload_path.unlink, missing_ok=True)
            raise WorkerError(f"Failed to spawn detached worker {name}: {e}") from e

        logger.info("Detached worker spawned: %s (PID %s)", name, process.pid)
        return DetachedHandle(
            worker_name=name,
            request_id=request_id,
            payload_path=payload_path,
            process=process,
            started_at=self._clock(),
        )


def _write_payload_file(tmp_dir: Path, worker_name: str, document: str) -> Path:
    tmp_dir.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(prefix=f"{worker_name}-", suffix=".json", dir=tmp_dir)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(document)
    return Path(name)
