"""
Controller-side long-poll loop delivering worker events to local handlers.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .errors import TransportError
from .events import PAGE_CREATED
from .logging import LogEvent, StructuredLogger
from .message import Event
from .metrics import Metrics

Handler = Callable[..., Any]
HandlerKey = Tuple[Optional[int], str]


def unwrap(payload: List[Any]) -> Any:
    return payload[0] if len(payload) == 1 else payload


class LongPollLoop:
    """
    Polls the worker every `interval` seconds and dispatches each event, in
    order, to the handler registered for its (handle, kind).

    Every poll, periodic or forced by flush(), runs under one lock so a flush
    never overtakes a poll already on the wire.
    """

    def __init__(
        self,
        poll: Callable[[], Awaitable[List[Event]]],
        interval: float = 0.5,
        logger: Optional[StructuredLogger] = None,
        metrics: Optional[Metrics] = None,
        materialize: Optional[Callable[[int], Any]] = None,
        flush_attempts: int = 3,
        flush_retry_delay: float = 0.05,
    ):
        self._poll = poll
        self.interval = interval
        self._logger = logger or StructuredLogger()
        self._metrics = metrics
        self._materialize = materialize
        self.flush_attempts = max(1, flush_attempts)
        self.flush_retry_delay = flush_retry_delay
        self._handlers: Dict[HandlerKey, Handler] = {}
        self._lock = asyncio.Lock()
        self._dispatching: Optional[asyncio.Task] = None
        self._task: Optional[asyncio.Task] = None
        self.worker_gone = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def register(self, handle: Optional[int], kind: str, handler: Handler):
        self._handlers[(handle, kind)] = handler

    def unregister(self, handle: Optional[int], kind: str) -> Optional[Handler]:
        return self._handlers.pop((handle, kind), None)

    def handler_for(self, handle: Optional[int], kind: str) -> Optional[Handler]:
        return self._handlers.get((handle, kind))

    def forget(self, handle: int):
        """Drop every handler registered for a released handle."""
        for key in [key for key in self._handlers if key[0] == handle]:
            del self._handlers[key]

    def reset(self):
        """Prepare for a new worker: keep global handlers, drop per-handle ones."""
        self.worker_gone = False
        for key in [key for key in self._handlers if key[0] is not None]:
            del self._handlers[key]

    def start(self):
        if self.running or self.worker_gone:
            return
        self._task = asyncio.create_task(self._run())

    async def _run(self):
        while not self.worker_gone:
            await asyncio.sleep(self.interval)
            if self.worker_gone:
                break
            await self.poll_once()

    async def poll_once(self, raise_errors: bool = False) -> int:
        """
        One poll-and-dispatch cycle; returns how many events were delivered.

        A failed poll is logged and counted; it is re-raised only when
        ``raise_errors`` is set and the worker is still running.
        """
        async with self._lock:
            if self.worker_gone:
                return 0
            try:
                events = await self._poll()
            except TransportError as e:
                if self.worker_gone:
                    return 0
                self._logger.poll_error(str(e))
                if self._metrics:
                    self._metrics.record_poll(success=False)
                if raise_errors:
                    raise
                return 0

            if self._metrics:
                self._metrics.record_poll(success=True, events=len(events))

            self._dispatching = asyncio.current_task()
            try:
                for event in events:
                    await self.dispatch(event)
            finally:
                self._dispatching = None
            return len(events)

    async def flush(self) -> int:
        """
        Force a poll now and deliver what it returns.

        A flush requested from inside an event handler is a no-op: the batch
        being dispatched already holds every event emitted before it.

        A failed poll leaves its events on the worker, so it is retried up to
        ``flush_attempts`` times. If every attempt fails while the worker is
        still running, TransportError is raised.
        """
        if self.worker_gone:
            return 0
        if self._dispatching is not None and self._dispatching is asyncio.current_task():
            return 0
        for attempt in range(1, self.flush_attempts + 1):
            try:
                return await self.poll_once(raise_errors=True)
            except TransportError as e:
                if attempt == self.flush_attempts:
                    raise TransportError(
                        f"events could not be delivered after {attempt} poll attempts: {e}"
                    ) from e
                await asyncio.sleep(self.flush_retry_delay)
        return 0

    async def dispatch(self, event: Event):
        payload = list(event.payload)
        if event.kind == PAGE_CREATED and payload and self._materialize is not None:
            payload = [self._materialize(payload[0])] + payload[1:]

        handler = self._handlers.get((event.handle, event.kind))
        if handler is None:
            return

        self._logger.debug(
            LogEvent.EVENT_DISPATCH,
            f"Delivering {event.kind}",
            handle=event.handle,
            operation=event.kind,
        )
        try:
            result = handler(unwrap(payload))
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self._logger.warn(
                LogEvent.HANDLER_ERROR,
                f"Handler for {event.kind} raised",
                handle=event.handle,
                operation=event.kind,
                error=str(e),
                error_type=type(e).__name__,
            )

    def worker_exited(self, exit_code: Optional[int] = None):
        """Stop permanently; a poll abandoned by the exit is dropped."""
        self.worker_gone = True
        if self._task is not None and not self._task.done() and self._task is not asyncio.current_task():
            if not self._lock.locked():
                self._task.cancel()

    async def stop(self):
        self.worker_gone = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
