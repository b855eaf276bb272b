"""
Async-first ParentWorker: spawns a worker process and drives it over HTTP.
"""

import asyncio
import os
import signal
import sys
import threading
import uuid
from typing import Any, Dict, Optional, Set

from .discovery import Endpoint
from .errors import RemoteCallError, TransportError
from .logging import LogEvent, LogHandler, StructuredLogger
from .message import Call
from .metrics import Metrics
from .poller import LongPollLoop
from .proxy import PageProxy, WorkerProxy
from .request_queue import RequestQueue
from .supervisor import ProcessSupervisor, build_argv, worker_env
from .transport import HttpTransport

DEFAULT_POLL_INTERVAL = 0.5


def _poll_interval_from_env() -> float:
    raw = os.environ.get("GHOSTWIRE_POLL_INTERVAL")
    if not raw:
        return DEFAULT_POLL_INTERVAL
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"Invalid GHOSTWIRE_POLL_INTERVAL {raw!r}")
    if value <= 0:
        raise ValueError(f"GHOSTWIRE_POLL_INTERVAL must be positive, got {raw}")
    return value


# Global registry for signal handling (module-level, not ClassVar)
_signal_handlers_installed: bool = False
_active_workers: Set["ParentWorker"] = set()


def _install_signal_handlers():
    """Install signal handlers once (global)."""
    global _signal_handlers_installed
    if _signal_handlers_installed:
        return
    if threading.current_thread() is not threading.main_thread():
        return
    _signal_handlers_installed = True

    previous = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}

    def handle_signal(signum, frame):
        """Close every active worker, then defer to the previous handler."""
        for worker in list(_active_workers):
            if worker._loop and not worker._loop.is_closed():
                worker._loop.call_soon_threadsafe(
                    lambda w=worker: asyncio.ensure_future(w.close())
                )
        handler = previous.get(signum)
        if callable(handler):
            handler(signum, frame)
        elif signum == signal.SIGINT:
            signal.default_int_handler(signum, frame)

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)


class ParentWorker:
    """
    Controller for one worker process.

    Usage:
        async with ParentWorker(parameters={"load-images": "no"}) as worker:
            page = await worker.create_page()
            page.on("onConsoleMessage", print)
            status = await page.open("file:///tmp/index.html")
            title = await page.get("title")

    Every call goes through the request queue (one in flight); events arrive
    through the long-poll loop. With flush_before_completing (the default) a
    call does not complete until the events emitted before its reply have
    been delivered.
    """

    def __init__(
        self,
        executable: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
        env: Optional[Dict[str, str]] = None,
        poll_interval: Optional[float] = None,
        startup_timeout: float = 10.0,
        call_timeout: Optional[float] = None,
        flush_before_completing: bool = True,
        wire_format: str = "json",
        alive_timeout: Optional[float] = None,
        alive_timeout_init: Optional[float] = None,
        discoverer=None,
        log_handler: Optional[LogHandler] = None,
        enable_metrics: bool = True,
    ):
        self._executable = executable or sys.executable
        self.parameters = dict(parameters or {})
        self._env = env
        self.poll_interval = poll_interval if poll_interval is not None else _poll_interval_from_env()
        self.startup_timeout = startup_timeout
        self.call_timeout = call_timeout
        self.flush_before_completing = flush_before_completing
        self.wire_format = wire_format
        self.alive_timeout = alive_timeout
        self.alive_timeout_init = alive_timeout_init
        self._discoverer = discoverer
        self._worker_id = str(uuid.uuid4())[:8]

        # Metrics collection
        self.enable_metrics = enable_metrics
        self._metrics = Metrics() if enable_metrics else None

        # Structured logging
        self._logger = StructuredLogger(handler=log_handler, worker_id=self._worker_id)

        # Async state
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.running = False
        self._closed = False
        self.exit_code: Optional[int] = None

        self.supervisor: Optional[ProcessSupervisor] = None
        self.transport: Optional[HttpTransport] = None
        self._queue: Optional[RequestQueue] = None
        self._poller: Optional[LongPollLoop] = None

        self._root: Optional[WorkerProxy] = None
        self._pages: Dict[int, PageProxy] = {}

    @staticmethod
    def spawn(**options) -> "ParentWorker":
        """Create a ParentWorker; call start() (or use ``async with``) to launch it."""
        return ParentWorker(**options)

    @property
    def metrics(self) -> Optional[Metrics]:
        """Get the metrics collector."""
        return self._metrics

    @property
    def logger(self) -> StructuredLogger:
        """Get the structured logger."""
        return self._logger

    def set_log_handler(self, handler: LogHandler):
        """
        Set a custom log handler.

        Usage:
            worker.set_log_handler(lambda entry: print(entry.to_json()))
            # Or with pretty printing:
            from ghostwire.core.logging import default_pretty_handler
            worker.set_log_handler(default_pretty_handler)
        """
        self._logger.set_handler(handler)

    @property
    def poller(self) -> LongPollLoop:
        if self._poller is None:
            # Handlers may be registered before start()
            self._poller = LongPollLoop(
                self._poll,
                interval=self.poll_interval,
                logger=self._logger,
                metrics=self._metrics,
                materialize=self.page,
            )
        return self._poller

    @property
    def root(self) -> WorkerProxy:
        """Proxy for the worker's global surface."""
        if self._root is None:
            self._root = WorkerProxy(self)
        return self._root

    @property
    def pid(self) -> Optional[int]:
        return self.supervisor.pid if self.supervisor else None

    def page(self, handle: int) -> PageProxy:
        """The proxy for a page handle (one proxy per handle)."""
        proxy = self._pages.get(handle)
        if proxy is None:
            proxy = PageProxy(self, handle)
            self._pages[handle] = proxy
        return proxy

    def _forget_page(self, handle: int):
        self._pages.pop(handle, None)
        if self._poller is not None:
            self._poller.forget(handle)

    async def start(self):
        """Spawn the worker and start the call and poll channels."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()

        argv = build_argv(self._executable, self.parameters)
        env = worker_env(self._env, self.alive_timeout, self.alive_timeout_init)
        self.supervisor = ProcessSupervisor(
            argv,
            env=env,
            startup_timeout=self.startup_timeout,
            discoverer=self._discoverer,
            logger=self._logger,
        )
        endpoint = await self.supervisor.start()
        self._open_channels(endpoint)
        self.supervisor.on_exit(self._on_worker_exit)
        _install_signal_handlers()

    async def connect(self, endpoint: Endpoint):
        """
        Drive a worker that is already listening at ``endpoint``.

        Nothing is spawned; exit() asks the worker to stop but cannot wait
        for a process it does not own.
        """
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._open_channels(endpoint)

    def _open_channels(self, endpoint: Endpoint):
        if self._closed or (self._poller is not None and self._poller.worker_gone):
            # Restarting: handles of the previous worker are gone.
            self._closed = False
            self.exit_code = None
            self._pages.clear()
            self.poller.reset()
        self.transport = HttpTransport(
            endpoint,
            wire_format=self.wire_format,
            call_timeout=self.call_timeout,
        )
        self._queue = RequestQueue(self.transport.send_call, logger=self._logger, metrics=self._metrics)
        self._queue.start()
        self.poller.start()
        self.running = True
        _active_workers.add(self)

    async def _poll(self):
        if self.transport is None:
            raise TransportError("worker is not running")
        return await self.transport.poll()

    def _on_worker_exit(self, exit_code: Optional[int]):
        self.running = False
        self.exit_code = exit_code
        if self._poller is not None:
            self._poller.worker_exited(exit_code)
        if self._queue is not None:
            asyncio.ensure_future(self._queue.close("worker exited"))

    async def _call_internal(
        self,
        target,
        operation: str,
        *args,
        flush: Optional[bool] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Internal unified async call method.

        Raises:
            RemoteCallError: the worker answered with a fault
            TransportError: the call never got a reply
            TimeoutError: no reply within ``timeout``
        """
        if not self.running or self._queue is None:
            raise TransportError("worker is not running")

        call = Call(target, operation, list(args))
        future = self._queue.submit(call)
        effective_timeout = timeout if timeout is not None else self.call_timeout
        try:
            reply = await asyncio.wait_for(asyncio.shield(future), effective_timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(
                f"Operation '{operation}' on {target} timed out after {effective_timeout} seconds"
            )

        should_flush = self.flush_before_completing if flush is None else flush
        if should_flush and self.running:
            await self.poller.flush()

        if reply.is_fault:
            raise RemoteCallError(reply.fault, reply.fault_type)
        return reply.result

    # Global surface

    async def create_page(self) -> PageProxy:
        return await self.root.create_page()

    async def inject_js(self, path: str) -> bool:
        return await self.root.invoke("injectJs", path)

    async def add_cookie(self, cookie: Dict[str, Any]) -> bool:
        return await self.root.invoke("addCookie", cookie)

    async def delete_cookie(self, name: str) -> bool:
        return await self.root.invoke("deleteCookie", name)

    async def clear_cookies(self) -> bool:
        return await self.root.invoke("clearCookies")

    async def set_proxy(self, host, port=None, proxy_type="http", user=None, password=None) -> bool:
        return await self.root.invoke("setProxy", host, port, proxy_type, user, password)

    def on(self, kind: str, handler=None):
        """Handler for a global notification (e.g. ``onError``)."""
        return self.root.on(kind, handler)

    async def ping(self) -> bool:
        if self.transport is None:
            return False
        return await self.transport.ping()

    async def exit(self, code: int = 0, timeout: float = 5.0) -> Optional[int]:
        """Ask the worker to exit with ``code`` and wait for the process to end."""
        if self.running:
            await self.root.exit(code)
            if self.supervisor is None:
                self.exit_code = code
            else:
                try:
                    await self.supervisor.wait(timeout)
                except asyncio.TimeoutError:
                    self._logger.warn(LogEvent.WORKER_STOP, "Worker ignored exit request")
        await self.close()
        return self.exit_code

    async def close(self):
        """Close the worker and cleanup resources."""
        if self._closed:
            return
        self._closed = True
        self.running = False
        _active_workers.discard(self)

        try:
            if self._poller is not None:
                await self._poller.stop()
            if self._queue is not None:
                await self._queue.close("worker shutting down")
            if self.transport is not None:
                await self.transport.close()
            if self.supervisor is not None:
                code = await self.supervisor.terminate()
                if self.exit_code is None:
                    self.exit_code = code
        except Exception as e:
            self._logger.error(
                LogEvent.WORKER_STOP,
                f"Error during cleanup: {e}",
                error=str(e),
            )
        self._logger.worker_stop(reason="shutdown")

    def handle_sync(self) -> "ParentHandleSync":
        """Blocking facade that runs this worker on a background loop thread."""
        from .sync_wrapper import ParentHandleSync

        return ParentHandleSync(self)

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, tb):
        await self.close()

    def __repr__(self):
        state = "running" if self.running else "stopped"
        return f"<ParentWorker {self._worker_id} pid={self.pid} {state}>"

