"""
Process supervisor: spawns the worker, waits for readiness, discovers the
endpoint and watches for exit.
"""

import asyncio
import inspect
import os
import re
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .discovery import Endpoint, PsutilEndpointDiscoverer
from .errors import EndpointDiscoveryError, WorkerStartupError
from .logging import LogEvent, StructuredLogger

READY_PATTERN = re.compile(r"^Ready \[(\d+)\] \[(\d+)\]")

WORKER_MODULE = "ghostwire.core.child"


class SupervisorState(Enum):
    SPAWNING = "spawning"
    AWAITING_READINESS = "awaiting_readiness"
    DISCOVERING = "discovering"
    READY = "ready"
    TERMINATED = "terminated"


ExitCallback = Callable[[Optional[int]], None]


def build_argv(executable: str, parameters: Optional[Dict[str, object]] = None) -> List[str]:
    argv = [executable, "-m", WORKER_MODULE]
    for name, value in (parameters or {}).items():
        if value is True:
            argv.append(f"--{name}")
        elif value is not None and value is not False:
            argv.append(f"--{name}={value}")
    return argv


class ProcessSupervisor:
    """
    Owns one worker process.

    start() walks SPAWNING -> AWAITING_READINESS -> DISCOVERING -> READY or
    raises WorkerStartupError after killing the process. Once READY, worker
    output lines go to the structured logger and on_exit callbacks fire once
    when the process ends.
    """

    def __init__(
        self,
        argv: List[str],
        env: Optional[Dict[str, str]] = None,
        startup_timeout: float = 10.0,
        discoverer=None,
        logger: Optional[StructuredLogger] = None,
    ):
        self.argv = list(argv)
        self.env = env
        self.startup_timeout = startup_timeout
        self.discoverer = discoverer or PsutilEndpointDiscoverer()
        self._logger = logger or StructuredLogger()

        self.state = SupervisorState.SPAWNING
        self.process: Optional[asyncio.subprocess.Process] = None
        self.pid: Optional[int] = None
        self.endpoint: Optional[Endpoint] = None
        self.exit_code: Optional[int] = None

        self._exit_callbacks: List[ExitCallback] = []
        self._exited = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return self.state == SupervisorState.READY

    def on_exit(self, callback: ExitCallback):
        """Register a callback fired once with the worker's exit code."""
        if self._exited.is_set():
            callback(self.exit_code)
        else:
            self._exit_callbacks.append(callback)

    async def start(self) -> Endpoint:
        self._logger.worker_spawn(self.argv)
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
            )
        except OSError as e:
            self.state = SupervisorState.TERMINATED
            raise self._startup_fault(f"failed to launch worker: {e}") from e

        self.pid = self.process.pid
        self._logger.set_context(pid=self.pid)
        self.state = SupervisorState.AWAITING_READINESS

        try:
            pid, port = await self._await_readiness()
            self.state = SupervisorState.DISCOVERING
            endpoint = self.discoverer.discover(pid, advertised_port=port)
            if inspect.isawaitable(endpoint):
                endpoint = await endpoint
            self.endpoint = endpoint
        except EndpointDiscoveryError as e:
            await self._abort()
            self._logger.error(LogEvent.STARTUP_ERROR, str(e), error=str(e), error_type=type(e).__name__)
            raise
        except WorkerStartupError:
            await self._abort()
            raise

        self.state = SupervisorState.READY
        self._logger.worker_ready(self.endpoint.host, self.endpoint.port)

        self._tasks = [
            asyncio.create_task(self._forward(self.process.stdout, "stdout")),
            asyncio.create_task(self._forward(self.process.stderr, "stderr")),
            asyncio.create_task(self._watch_exit()),
        ]
        return self.endpoint

    def _startup_fault(self, message: str) -> WorkerStartupError:
        self._logger.error(LogEvent.STARTUP_ERROR, message, error=message)
        return WorkerStartupError(message)

    async def _await_readiness(self):
        try:
            line = await asyncio.wait_for(self.process.stdout.readline(), self.startup_timeout)
        except asyncio.TimeoutError:
            raise self._startup_fault(
                f"worker produced no output within {self.startup_timeout}s"
            )

        if not line:
            code = await self.process.wait()
            stderr = (await self.process.stderr.read()).decode("utf-8", errors="replace").strip()
            detail = f": {stderr.splitlines()[-1]}" if stderr else ""
            raise self._startup_fault(f"worker exited with code {code} before it was ready{detail}")

        text = line.decode("utf-8", errors="replace").rstrip("\r\n")
        match = READY_PATTERN.match(text)
        if not match:
            raise self._startup_fault(f"unexpected worker output: {text!r}")
        return int(match.group(1)), int(match.group(2))

    async def _abort(self):
        self.state = SupervisorState.TERMINATED
        if self.process is not None and self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
            await self.process.wait()
        if self.process is not None:
            self.exit_code = self.process.returncode

    async def _forward(self, stream: asyncio.StreamReader, name: str):
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._logger.info(LogEvent.WORKER_OUTPUT, text, metadata={"stream": name})

    async def _watch_exit(self):
        code = await self.process.wait()
        self.exit_code = code
        self.state = SupervisorState.TERMINATED
        self._logger.process_exit(code)
        self._exited.set()
        callbacks, self._exit_callbacks = self._exit_callbacks, []
        for callback in callbacks:
            try:
                callback(code)
            except Exception as e:
                self._logger.warn(LogEvent.HANDLER_ERROR, "Exit callback raised", error=str(e))

    async def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait for the worker to exit; returns its exit code."""
        await asyncio.wait_for(self._exited.wait(), timeout)
        return self.exit_code

    async def terminate(self, grace: float = 2.0) -> Optional[int]:
        """Stop the worker: SIGTERM, then SIGKILL after `grace` seconds."""
        if self.process is None:
            self.state = SupervisorState.TERMINATED
            return None

        if self.process.returncode is None:
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(self.process.wait(), grace)
            except asyncio.TimeoutError:
                self.process.kill()
                await self.process.wait()

        if not self._exited.is_set() and self._tasks:
            # Let the exit watcher run its callbacks.
            await asyncio.wait([self._tasks[-1]], timeout=grace)
        await self._drain_tasks()
        self.state = SupervisorState.TERMINATED
        self.exit_code = self.process.returncode
        return self.exit_code

    async def _drain_tasks(self):
        for task in self._tasks:
            if not task.done():
                task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []


def worker_env(
    env: Optional[Dict[str, str]] = None,
    alive_timeout: Optional[float] = None,
    alive_timeout_init: Optional[float] = None,
) -> Dict[str, str]:
    """Environment for the worker process, with watchdog overrides."""
    merged = os.environ.copy()
    if env:
        merged.update(env)
    if alive_timeout is not None:
        merged["GHOSTWIRE_ALIVE_TIMEOUT"] = str(alive_timeout)
    if alive_timeout_init is not None:
        merged["GHOSTWIRE_ALIVE_TIMEOUT_INIT"] = str(alive_timeout_init)
    # The worker runs `-m ghostwire.core.child`; make this copy importable.
    source_root = str(Path(__file__).resolve().parents[2])
    paths = [p for p in merged.get("PYTHONPATH", "").split(os.pathsep) if p]
    if source_root not in paths:
        merged["PYTHONPATH"] = os.pathsep.join([source_root] + paths)
    merged.setdefault("PYTHONUNBUFFERED", "1")
    return merged
