"""
Worker-side call dispatcher.
"""

import asyncio
import inspect
import traceback
from typing import Dict, Optional, Set, Union

from .errors import DispatchError
from .message import Call, Reply
from .registry import HandleRegistry, RemoteObject


class PendingCompletion:
    """
    A deferred call that was accepted but has not completed yet.

    Phase one is the record's creation; phase two is complete(), fired by the
    operation's own completion. The HTTP handler waits on the record.
    """

    def __init__(self, call: Call):
        self.call = call
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def call_id(self) -> str:
        return self.call.id

    @property
    def done(self) -> bool:
        return self._future.done()

    def complete(self, reply: Reply):
        if not self._future.done():
            self._future.set_result(reply)

    async def wait(self) -> Reply:
        return await asyncio.shield(self._future)


class CallDispatcher:
    """
    Routes a Call to the root object or to a handle's object and produces
    exactly one Reply, either immediately or through a PendingCompletion.
    """

    def __init__(self, registry: HandleRegistry, root: RemoteObject):
        self.registry = registry
        self.root = root
        self.pending: Dict[str, PendingCompletion] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._detached: Set[asyncio.Task] = set()

    def resolve_target(self, call: Call) -> RemoteObject:
        if call.is_global:
            return self.root
        return self.registry.resolve(call.target)

    def dispatch(self, call: Call) -> Union[Reply, PendingCompletion]:
        try:
            target = self.resolve_target(call)
            operation = target.resolve_operation(call.operation)
        except DispatchError as e:
            return Reply.failure(call.id, e)
        except Exception as e:
            return Reply.failure(call.id, e, traceback.format_exc())

        if target.is_deferred(call.operation):
            return self._defer(call, operation)

        try:
            result = operation(*call.args)
        except Exception as e:
            return Reply.failure(call.id, e, traceback.format_exc())

        if inspect.isawaitable(result):
            # Injected async defs still answer immediately; the coroutine runs detached.
            self._detach(target, result)
            result = None
        return Reply.success(call.id, result)

    def _detach(self, target: RemoteObject, awaitable):
        task = asyncio.ensure_future(awaitable)
        self._detached.add(task)
        task.add_done_callback(lambda t: self._detached_done(target, t))

    def _detached_done(self, target: RemoteObject, task: asyncio.Task):
        self._detached.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            target.report_error(exc)

    def _defer(self, call: Call, operation) -> PendingCompletion:
        record = PendingCompletion(call)
        self.pending[call.id] = record

        async def run():
            return await operation(*call.args)

        task = asyncio.ensure_future(run())
        self._tasks[call.id] = task
        task.add_done_callback(lambda t, r=record: self._finish(r, t))
        return record

    def _finish(self, record: PendingCompletion, task: asyncio.Task):
        self.pending.pop(record.call_id, None)
        self._tasks.pop(record.call_id, None)
        if task.cancelled():
            record.complete(Reply.failure(record.call_id, asyncio.CancelledError("operation cancelled")))
            return
        exc = task.exception()
        if exc is not None:
            detail = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            record.complete(Reply.failure(record.call_id, exc, detail))
        else:
            record.complete(Reply.success(record.call_id, task.result()))

    def abandon_pending(self, reason: str = "worker shutting down") -> int:
        """Resolve every open completion with a fault; returns how many."""
        records = list(self.pending.values())
        for task in list(self._tasks.values()):
            task.cancel()
        for task in list(self._detached):
            task.cancel()
        for record in records:
            record.complete(Reply.failure(record.call_id, RuntimeError(reason)))
        self.pending.clear()
        return len(records)

    def pending_for(self, call_id: str) -> Optional[PendingCompletion]:
        return self.pending.get(call_id)
