"""
Worker process: HTTP server hosting the call and poll channels.

Run with ``python -m ghostwire.core.child [--name=value ...]``. The first line
on stdout is the readiness line; everything else the worker reports goes to
stderr as structured JSON.
"""

import asyncio
import os
import signal
import sys
import threading
from typing import Dict, List, Optional

from aiohttp import web

from .dispatcher import CallDispatcher, PendingCompletion
from .events import EventBuffer
from .logging import LogEvent, LogLevel, StructuredLogger, stderr_json_handler
from .message import JSON_CONTENT_TYPE, MSGPACK_CONTENT_TYPE, Call, encode, pack_events
from .page import ResourceLoader, RootObject
from .registry import HandleRegistry
from .watchdog import ALIVE_TIMEOUT, ALIVE_TIMEOUT_INIT, EXIT_ABANDONED, LivenessWatchdog

READY_LINE = "Ready [{pid}] [{port}]"


def _content_type(request: web.Request) -> str:
    if request.content_type == MSGPACK_CONTENT_TYPE:
        return MSGPACK_CONTENT_TYPE
    return JSON_CONTENT_TYPE


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        print(f"FATAL: Invalid {name} '{raw}'", file=sys.stderr)
        sys.exit(1)
    if value <= 0:
        print(f"FATAL: {name} must be positive, got {raw}", file=sys.stderr)
        sys.exit(1)
    return value


def parse_parameters(argv: List[str]) -> Dict[str, str]:
    """Collect ``--name=value`` (or bare ``--flag``) arguments."""
    parameters: Dict[str, str] = {}
    for arg in argv:
        if not arg.startswith("--"):
            continue
        name, sep, value = arg[2:].partition("=")
        if name:
            parameters[name] = value if sep else "true"
    return parameters


class ChildWorker:
    """
    The worker side of the bridge.

    POST /  one Call, answered by one Reply (500 only for undecodable bodies)
    GET /   drain the event buffer
    HEAD /  ping
    Every request, whatever its kind, resets the liveness watchdog.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 0,
        alive_timeout: float = ALIVE_TIMEOUT,
        alive_timeout_init: float = ALIVE_TIMEOUT_INIT,
        parameters: Optional[Dict[str, str]] = None,
        logger: Optional[StructuredLogger] = None,
        stdout=None,
    ):
        self.host = host
        self.port = port
        self.exit_code: Optional[int] = None
        self._stdout = stdout
        self._logger = logger or StructuredLogger(handler=stderr_json_handler)
        self._logger.set_context(worker_id="worker", pid=os.getpid())

        self.events = EventBuffer()
        self.registry = HandleRegistry()
        self.loader = ResourceLoader()
        self.root = RootObject(
            self.events,
            self.registry,
            on_exit=self.exit,
            parameters=parameters,
            loader=self.loader,
        )
        self.dispatcher = CallDispatcher(self.registry, self.root)
        self.watchdog = LivenessWatchdog(
            on_expire=self._on_abandoned,
            timeout=alive_timeout,
            initial_timeout=alive_timeout_init,
        )

        self._runner: Optional[web.AppRunner] = None
        self._stopped: Optional[asyncio.Event] = None

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._contact_middleware])
        app.router.add_post("/", self.handle_call)
        app.router.add_get("/", self.handle_poll, allow_head=False)
        app.router.add_route("HEAD", "/", self.handle_ping)
        return app

    @web.middleware
    async def _contact_middleware(self, request: web.Request, handler):
        # We got a request, that means the controller is still alive
        self.watchdog.touch()
        return await handler(request)

    async def handle_call(self, request: web.Request) -> web.Response:
        content_type = _content_type(request)
        body = await request.read()
        try:
            call = Call.unpack(body, content_type)
        except ValueError as e:
            self._logger.warn(LogEvent.REQUEST_MALFORMED, "Rejected malformed call", error=str(e))
            return web.Response(
                status=500,
                body=encode({"fault": f"malformed request: {e}"}, content_type),
                content_type=content_type,
            )

        outcome = self.dispatcher.dispatch(call)
        if isinstance(outcome, PendingCompletion):
            reply = await outcome.wait()
        else:
            reply = outcome

        if reply.is_fault:
            self._logger.debug(
                LogEvent.CALL_ERROR,
                f"Fault in {call.operation}",
                call_id=call.id,
                handle=call.target,
                operation=call.operation,
                error=reply.fault.splitlines()[0],
                error_type=reply.fault_type,
            )
        return web.Response(status=200, body=reply.pack(content_type), content_type=content_type)

    async def handle_poll(self, request: web.Request) -> web.StreamResponse:
        content_type = _content_type(request)
        batch = self.events.drain_all()
        payload = pack_events(batch, content_type)

        response = web.StreamResponse(status=200)
        response.content_type = content_type
        response.content_length = len(payload)
        try:
            await response.prepare(request)
            await response.write(payload)
            await response.write_eof()
        except ConnectionError as e:
            # Not delivered: keep the batch for the next poll.
            self.events.restore(batch)
            self._logger.warn(LogEvent.POLL_ERROR, "Poll response not delivered", error=str(e))
        except asyncio.CancelledError:
            self.events.restore(batch)
            raise
        return response

    async def handle_ping(self, request: web.Request) -> web.Response:
        return web.Response(status=200)

    async def start(self):
        """Bind, announce readiness and arm the watchdog."""
        self._stopped = asyncio.Event()
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        self.port = self._runner.addresses[0][1]

        out = self._stdout or sys.stdout
        out.write(READY_LINE.format(pid=os.getpid(), port=self.port) + "\n")
        out.flush()

        self.watchdog.start()
        self._logger.info(LogEvent.WORKER_READY, f"Listening on {self.host}:{self.port}")

    def exit(self, code: int = 0):
        """Orderly exit requested by the controller."""
        self.watchdog.disable()
        self._terminate(code)

    def _on_abandoned(self):
        self._logger.warn(
            LogEvent.WATCHDOG_EXPIRED,
            "No contact from controller, shutting down",
        )
        self._terminate(EXIT_ABANDONED)

    def _terminate(self, code: int):
        if self.exit_code is None:
            self.exit_code = code
        if self._stopped is not None:
            # Let the in-flight reply leave before the server stops.
            asyncio.get_running_loop().call_soon(self._stopped.set)

    async def stop(self):
        self.watchdog.disable()
        self.dispatcher.abandon_pending()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        await self.loader.close()
        self._logger.log(
            LogEvent.WORKER_STOP,
            f"Worker stopped with code {self.exit_code}",
            level=LogLevel.INFO if self.exit_code == 0 else LogLevel.WARN,
            metadata={"exit_code": self.exit_code},
        )

    async def serve(self) -> int:
        """Run until exit() or watchdog expiry; returns the exit status."""
        await self.start()
        try:
            await self._stopped.wait()
        finally:
            await self.stop()
        return self.exit_code if self.exit_code is not None else 0

    def _handle_signals(self):
        """Setup signal handlers for graceful shutdown."""
        if threading.current_thread() is not threading.main_thread():
            return

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.exit, 128 + sig)
            except (NotImplementedError, RuntimeError):
                # Not available on this platform (e.g. Windows)
                pass

    async def _main(self) -> int:
        self._handle_signals()
        return await self.serve()

    def run(self) -> int:
        """Run the worker with signal handling."""
        return asyncio.run(self._main())


def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    worker = ChildWorker(
        alive_timeout=_env_float("GHOSTWIRE_ALIVE_TIMEOUT", ALIVE_TIMEOUT),
        alive_timeout_init=_env_float("GHOSTWIRE_ALIVE_TIMEOUT_INIT", ALIVE_TIMEOUT_INIT),
        parameters=parse_parameters(argv),
    )
    return worker.run()


if __name__ == "__main__":
    sys.exit(main())
