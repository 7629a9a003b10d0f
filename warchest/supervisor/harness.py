# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""
Child-side worker harness.

A worker script wraps its handler and hands control to the harness::

    from warchest.supervisor.harness import run_worker

    async def handler(payload, tools):
        tools.progress("scan:heartbeat", {"status": "ok"})
        return {"echo": payload}

    if __name__ == "__main__":
        run_worker(handler)

The harness connects to the channel inherited from the parent
(``WARCHEST_IPC_FD``), turns ``invoke`` envelopes into handler calls and
handler outcomes into ``result``/``error`` envelopes.  When
``WARCHEST_PAYLOAD_FILE`` is set instead, the worker was spawned detached:
the payload is read from that file and the handler runs exactly once.
"""

from __future__ import annotations

import asyncio
import contextvars
import inspect
import json
import logging
import os
import signal
import socket
import sys
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from warchest.exceptions import TransportError, ValidationError
from warchest.logging_config import (
    clear_request_id,
    set_request_id,
    setup_logging,
    setup_worker_logging,
)
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
from warchest.time_utils import now_ms

logger = logging.getLogger(__name__)

Handler = Callable[[Any, "WorkerTools"], Any]
CloseHook = Callable[[], Any]

_OUTBOX_DRAIN_TIMEOUT = 5.0

# Request id of the invocation whose handler (or a task it spawned) is running
_current_invocation: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "warchest_current_invocation", default=None,
)


def _invocation_of(source: Any) -> str | None:
    """Request id bound in the context of *source* (a task), if any."""
    get_context = getattr(source, "get_context", None)
    if get_context is None:
        return None
    return get_context().get(_current_invocation)


# ── Tools ──────────────────────────────────────────────────────

class WorkerTools:
    """Facilities handed to the handler alongside its payload."""

    def __init__(self, harness: WorkerHarness, request_id: str):
        self._harness = harness
        self.request_id = request_id
        self.env = dict(os.environ)
        self.logger = logging.getLogger(f"warchest.worker.{harness.worker_name}")

    @property
    def stopping(self) -> asyncio.Event:
        """Set once the worker has been asked to shut down."""
        return self._harness.stopping

    def progress(self, event: str, data: Any = None) -> None:
        """Emit a progress envelope (heartbeat, evaluation, alert, ...)."""
        self._harness.emit_progress(event, data, self.request_id)

    def heartbeat(
        self,
        status: str = "ok",
        counters: dict[str, Any] | None = None,
        note: str | None = None,
        domain: str | None = None,
    ) -> None:
        event = f"{domain}:heartbeat" if domain else "heartbeat"
        body: dict[str, Any] = {"ts": now_ms(), "status": status, "counters": counters or {}}
        if note:
            body["note"] = note
        self.progress(event, body)

    def track(self, resource: Any) -> Any:
        """Register a resource to be closed/unsubscribed on worker cleanup."""
        return self._harness.track(resource)


# ── Harness ────────────────────────────────────────────────────

@dataclass
class _Invocation:
    request_id: str
    task: asyncio.Task
    fault: asyncio.Future


class WorkerHarness:
    """
    Child-side request loop around a single handler.

    Modes:
    - one-shot (``exit_on_complete=True``): cleanup runs, the reply is
      written and the process exits after the first invocation.
    - long-running: further ``invoke`` messages are served until ``stop``,
      parent disconnect, SIGINT or SIGTERM; ``on_close`` runs before exit.
    """

    def __init__(
        self,
        handler: Handler,
        exit_on_complete: bool = True,
        on_close: CloseHook | None = None,
        worker_name: str | None = None,
        metrics_sink: MetricsSink | None = None,
    ):
        self.handler = handler
        self.exit_on_complete = exit_on_complete
        self.on_close = on_close
        self.worker_name = (
            worker_name
            or os.environ.get(ENV_WORKER_NAME)
            or Path(sys.argv[0]).stem
            or "worker"
        )
        self.lifecycle = WorkerLifecycle(self.worker_name, metrics_sink=metrics_sink)

        self.stopping = asyncio.Event()
        self._done = asyncio.Event()
        self._exit_code = 0
        self._stream: EnvelopeStream | None = None
        self._outbox: asyncio.Queue[tuple[Envelope, asyncio.Future | None]] = asyncio.Queue()
        self._writer_task: asyncio.Task | None = None
        self._reader_task: asyncio.Task | None = None
        self._shutdown_task: asyncio.Task | None = None
        self._active: dict[str, _Invocation] = {}
        self._resources: list[Any] = []
        self._cleaned = False
        self._prev_thread_hook: Any = None

    # ── Resource tracking ──

    def track(self, resource: Any) -> Any:
        if resource is not None:
            self._resources.append(resource)
        return resource

    async def _run_cleanup(self) -> None:
        """Close tracked resources, then run ``on_close``.  Runs once."""
        if self._cleaned:
            return
        self._cleaned = True

        for resource in list(self._resources):
            closer = getattr(resource, "close", None) or getattr(resource, "stop", None)
            unsubscribe = getattr(resource, "unsubscribe", None)
            if closer is None and unsubscribe is None and callable(resource):
                closer = resource
            for fn in (closer, unsubscribe):
                if not callable(fn):
                    continue
                try:
                    result = fn()
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception("Cleanup of tracked resource failed: %r", resource)
        self._resources.clear()

        if self.on_close is not None:
            try:
                result = self.on_close()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("on_close hook failed for %s", self.worker_name)

    # ── Outbound ──

    def emit_progress(self, event: str, data: Any, request_id: str = "") -> None:
        try:
            safe = sanitize_payload(data)
        except ValidationError as e:
            logger.warning("Dropping progress %s: %s", event, e)
            return
        envelope = Envelope.progress(event, safe, request_id=request_id)
        if self._stream is None:
            logger.debug("progress (detached) %s: %s", event, safe)
            return
        self._outbox.put_nowait((envelope, None))

    async def _send(self, envelope: Envelope) -> None:
        """Queue *envelope* behind earlier progress and wait until written."""
        if self._stream is None:
            return
        fut = asyncio.get_running_loop().create_future()
        self._outbox.put_nowait((envelope, fut))
        await fut

    async def _writer_loop(self) -> None:
        while True:
            envelope, fut = await self._outbox.get()
            try:
                await self._stream.send(envelope)
            except TransportError as e:
                logger.warning("Failed to send %s envelope: %s", envelope.type.value, e)
                if fut is not None and not fut.done():
                    fut.set_exception(e)
            else:
                if fut is not None and not fut.done():
                    fut.set_result(None)
            finally:
                self._outbox.task_done()

    # ── Inbound ──

    async def _reader_loop(self) -> None:
        while True:
            try:
                envelope = await self._stream.receive()
            except TransportError as e:
                logger.warning("Ignoring malformed envelope: %s", e)
                continue
            if envelope is None:
                logger.info("Parent channel closed; shutting down %s", self.worker_name)
                self.request_shutdown("disconnect")
                return
            if envelope.type is EnvelopeType.INVOKE:
                self._start_invocation(envelope.request_id or uuid.uuid4().hex[:16], envelope.payload)
            elif envelope.type is EnvelopeType.STOP:
                logger.info("Stop requested for %s (reason=%s)", self.worker_name, envelope.reason)
                self.request_shutdown(envelope.reason or "stop")
                return
            else:
                logger.debug("Ignoring %s envelope from parent", envelope.type.value)

    def _start_invocation(self, request_id: str, payload: Any) -> None:
        if request_id in self._active:
            logger.warning("Duplicate invoke for pending request %s ignored", request_id)
            return
        loop = asyncio.get_running_loop()
        fault = loop.create_future()
        task = loop.create_task(self._handle_invoke(request_id, payload, fault))
        self._active[request_id] = _Invocation(request_id, task, fault)

    async def _call_handler(self, payload: Any, tools: WorkerTools) -> Any:
        result = self.handler(payload, tools)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _execute(self, request_id: str, payload: Any, fault: asyncio.Future) -> Envelope:
        """Run the handler and build the reply envelope."""
        tools = WorkerTools(self, request_id)
        started_at = self.lifecycle.start(request_id, {"mode": "one-shot" if self.exit_on_complete else "long-running"})
        set_request_id(request_id)
        token = _current_invocation.set(request_id)
        handler_task = asyncio.ensure_future(self._call_handler(payload, tools))
        try:
            done, _ = await asyncio.wait(
                {handler_task, fault}, return_when=asyncio.FIRST_COMPLETED,
            )
            if handler_task not in done:
                handler_task.cancel()
                raise fault.result()
            result = sanitize_payload(handler_task.result())
        except Exception as exc:
            self.lifecycle.error(request_id, exc, started_at)
            return Envelope.failure(request_id, exc)
        finally:
            if not handler_task.done():
                handler_task.cancel()
            _current_invocation.reset(token)
            clear_request_id()
        self.lifecycle.success(request_id, result, started_at)
        return Envelope.reply(request_id, result)

    async def _handle_invoke(self, request_id: str, payload: Any, fault: asyncio.Future) -> None:
        try:
            reply = await self._execute(request_id, payload, fault)
        except asyncio.CancelledError:
            logger.info("Invocation %s cancelled", request_id)
            self._active.pop(request_id, None)
            self.lifecycle.cleanup(request_id)
            raise

        self._active.pop(request_id, None)

        if self.exit_on_complete:
            await self._run_cleanup()
        try:
            await self._send(reply)
        except TransportError:
            logger.error("Reply for %s could not be delivered", request_id)
        self.lifecycle.cleanup(request_id)

        if self.exit_on_complete:
            self._finish(0 if reply.type is EnvelopeType.RESULT else 1)

    # ── Faults ──

    def _on_fault(self, exc: BaseException, origin: str, request_id: str | None = None) -> None:
        """Route an uncaught exception to its invocation, or log it.

        Without a known *request_id* the fault goes to the pending invocation
        only when there is exactly one.
        """
        if request_id is not None:
            target = self._active.get(request_id)
            pending = [target] if target is not None and not target.fault.done() else []
        else:
            pending = [inv for inv in self._active.values() if not inv.fault.done()]
        if len(pending) == 1:
            target = pending[0]
            logger.error(
                "Uncaught %s during invocation %s: %s",
                origin, target.request_id, exc,
            )
            target.fault.set_result(exc)
            return
        if pending:
            logger.error(
                "Uncaught %s with %d invocations pending in %s: %s",
                origin, len(pending), self.worker_name, exc, exc_info=exc,
            )
            return
        logger.error(
            "Uncaught %s outside an invocation in %s: %s",
            origin, self.worker_name, exc, exc_info=exc,
        )

    def _loop_exception_handler(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        exc = context.get("exception")
        if exc is None:
            exc = RuntimeError(context.get("message", "unhandled error in event loop"))
        if isinstance(exc, asyncio.CancelledError):
            return
        source = context.get("task") or context.get("future") or asyncio.current_task(loop)
        self._on_fault(exc, "exception", _invocation_of(source))

    def _install_fault_hooks(self, loop: asyncio.AbstractEventLoop) -> None:
        loop.set_exception_handler(self._loop_exception_handler)

        def _thread_hook(args: threading.ExceptHookArgs) -> None:
            if args.exc_value is None:
                return
            loop.call_soon_threadsafe(
                self._on_fault, args.exc_value, "thread exception", _current_invocation.get(),
            )

        self._prev_thread_hook = threading.excepthook
        threading.excepthook = _thread_hook

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handlers unavailable for %s", sig.name)

    def _remove_fault_hooks(self, loop: asyncio.AbstractEventLoop) -> None:
        loop.set_exception_handler(None)
        if self._prev_thread_hook is not None:
            threading.excepthook = self._prev_thread_hook
            self._prev_thread_hook = None
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass

    # ── Shutdown ──

    def request_shutdown(self, reason: str = "stop") -> None:
        """Begin graceful shutdown (idempotent)."""
        if self._shutdown_task is not None or self._done.is_set():
            return
        self.stopping.set()
        self._shutdown_task = asyncio.get_running_loop().create_task(self._shutdown(reason))

    async def _shutdown(self, reason: str) -> None:
        logger.info("Shutting down %s (reason=%s)", self.worker_name, reason)
        tasks = [inv.task for inv in self._active.values()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._run_cleanup()
        self._finish(0)

    def _finish(self, exit_code: int) -> None:
        self._exit_code = exit_code
        self._done.set()

    # ── Entry points ──

    async def serve(self) -> int:
        """Run until the worker is done; returns the process exit code."""
        loop = asyncio.get_running_loop()
        self._install_fault_hooks(loop)
        try:
            payload_file = os.environ.get(ENV_PAYLOAD_FILE)
            if payload_file:
                return await self._run_detached(Path(payload_file))
            return await self._run_attached()
        finally:
            self._remove_fault_hooks(loop)

    async def _run_attached(self) -> int:
        fd_raw = os.environ.get(ENV_IPC_FD)
        if not fd_raw:
            logger.error("%s is not set; worker must be spawned by ForkClient", ENV_IPC_FD)
            return 2
        sock = socket.socket(fileno=int(fd_raw))
        self._stream = await EnvelopeStream.from_socket(sock)
        self._writer_task = asyncio.create_task(self._writer_loop())
        self._reader_task = asyncio.create_task(self._reader_loop())
        logger.info("Worker ready: %s (PID %s)", self.worker_name, os.getpid())

        try:
            await self._done.wait()
        finally:
            try:
                await asyncio.wait_for(self._outbox.join(), timeout=_OUTBOX_DRAIN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("Outbound queue not drained before exit")
            for task in (self._reader_task, self._writer_task):
                if task is not None:
                    task.cancel()
            await asyncio.gather(
                *(t for t in (self._reader_task, self._writer_task) if t is not None),
                return_exceptions=True,
            )
            await self._stream.close()
        return self._exit_code

    async def _run_detached(self, payload_file: Path) -> int:
        try:
            raw = await asyncio.to_thread(payload_file.read_text, encoding="utf-8")
            document = json.loads(raw)
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Cannot read detached payload %s: %s", payload_file, e)
            return 2
        finally:
            try:
                await asyncio.to_thread(payload_file.unlink, missing_ok=True)
            except OSError:
                logger.debug("Failed to remove payload file %s", payload_file, exc_info=True)

        request_id = str(document.get("requestId") or uuid.uuid4().hex[:16])
        fault = asyncio.get_running_loop().create_future()
        reply = await self._execute(request_id, document.get("payload"), fault)
        await self._run_cleanup()
        self.lifecycle.cleanup(request_id)
        if reply.type is EnvelopeType.ERROR:
            logger.error("Detached run %s failed: %s", request_id, (reply.error or {}).get("message"))
            return 1
        logger.info("Detached run %s completed", request_id)
        return 0


def create_worker_harness(
    handler: Handler,
    *,
    exit_on_complete: bool = True,
    on_close: CloseHook | None = None,
    worker_name: str | None = None,
) -> WorkerHarness:
    return WorkerHarness(
        handler,
        exit_on_complete=exit_on_complete,
        on_close=on_close,
        worker_name=worker_name,
    )


def _configure_child_logging(worker_name: str) -> None:
    level = os.environ.get(ENV_LOG_LEVEL, "INFO")
    log_dir = os.environ.get(ENV_LOG_DIR)
    if log_dir:
        setup_worker_logging(worker_name, Path(log_dir), level=level)
    else:
        # stdout is inherited from the parent; keep it free of log lines
        setup_logging(level=level)


def run_worker(
    handler: Handler,
    *,
    exit_on_complete: bool = True,
    on_close: CloseHook | None = None,
    worker_name: str | None = None,
) -> None:
    """Entry point for worker scripts; never returns."""
    name = worker_name or os.environ.get(ENV_WORKER_NAME) or Path(sys.argv[0]).stem

    _configure_child_logging(name)

    async def _main() -> int:
        harness = create_worker_harness(
            handler,
            exit_on_complete=exit_on_complete,
            on_close=on_close,
            worker_name=name,
        )
        return await harness.serve()

    sys.exit(asyncio.run(_main()))
