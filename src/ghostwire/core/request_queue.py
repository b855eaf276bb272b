"""
Controller-side request queue: the only path by which calls reach the worker.
"""

import asyncio
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Optional, Tuple

from .errors import TransportError
from .logging import LogEvent, StructuredLogger
from .message import Call, Reply
from .metrics import Metrics

Sender = Callable[[Call], Awaitable[Reply]]
CompletionCallback = Callable[[Any], None]


class RequestQueue:
    """
    FIFO of pending calls with at most one in flight.

    submit() returns a future resolved with the Reply (or failed with a
    TransportError). The optional on_complete callback fires with the same
    outcome before the next queued call is sent, so completion order is
    submission order.
    """

    def __init__(
        self,
        sender: Sender,
        logger: Optional[StructuredLogger] = None,
        metrics: Optional[Metrics] = None,
    ):
        self._sender = sender
        self._logger = logger or StructuredLogger()
        self._metrics = metrics
        self._pending: Deque[Tuple[Call, asyncio.Future, Optional[CompletionCallback]]] = deque()
        self._wakeup: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self.in_flight: Optional[Call] = None
        self._current: Optional[Tuple[Call, asyncio.Future, Optional[CompletionCallback]]] = None

    def __len__(self):
        return len(self._pending)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._closed = False
        self._wakeup = asyncio.Event()
        self._task = asyncio.create_task(self._run())

    def submit(self, call: Call, on_complete: Optional[CompletionCallback] = None) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        if self._closed:
            future.set_exception(TransportError("request queue is closed"))
            return future
        self._pending.append((call, future, on_complete))
        if self._metrics:
            self._metrics.enqueue()
        if self._wakeup is not None:
            self._wakeup.set()
        return future

    async def _run(self):
        while not self._closed:
            if not self._pending:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            self._current = self._pending.popleft()
            call, future, on_complete = self._current
            self.in_flight = call
            outcome = await self._send(call)
            self.in_flight = None
            self._current = None

            if not future.done():
                if isinstance(outcome, BaseException):
                    future.set_exception(outcome)
                else:
                    future.set_result(outcome)
            if on_complete is not None:
                try:
                    on_complete(outcome)
                except Exception as e:
                    self._logger.warn(
                        LogEvent.HANDLER_ERROR,
                        f"Completion callback for {call.operation} raised",
                        call_id=call.id,
                        error=str(e),
                    )

    async def _send(self, call: Call):
        self._logger.call_start(call_id=call.id, handle=call.target, operation=call.operation)
        start = self._metrics.start_call() if self._metrics else time.perf_counter()
        try:
            reply = await self._sender(call)
        except TransportError as e:
            outcome: Any = e
            success, error, error_type = False, str(e), type(e).__name__
        else:
            outcome = reply
            success, error, error_type = not reply.is_fault, reply.fault, reply.fault_type

        if self._metrics:
            duration_ms = self._metrics.end_call(start, success=success)
        else:
            duration_ms = (time.perf_counter() - start) * 1000
        self._logger.call_end(
            call_id=call.id,
            handle=call.target,
            operation=call.operation,
            duration_ms=duration_ms,
            success=success,
            error=error.splitlines()[0] if error else None,
            error_type=error_type,
        )
        return outcome

    async def close(self, reason: str = "request queue closed"):
        """Stop the consumer and fail every call still waiting."""
        self._closed = True
        pending = list(self._pending)
        self._pending.clear()
        current, self._current = self._current, None
        if current is not None:
            pending.insert(0, current)
        for call, future, on_complete in pending:
            error = TransportError(f"{reason}: {call.operation} abandoned")
            if not future.done():
                future.set_exception(error)
            if on_complete is not None:
                on_complete(error)

        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
