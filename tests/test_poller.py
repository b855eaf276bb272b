"""
Tests for the controller's long-poll loop.

Tests cover:
- Payload unwrapping for handlers
- In-order dispatch, sync and async handlers
- Handler failures logged without stopping the batch
- Transport errors logged and retried on the next interval
- flush(): serialized with periodic polls, no-op from inside a handler,
  failed polls retried before giving up
- onPageCreated materialization
- Stopping on worker exit
"""

import asyncio
import sys
import os

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from ghostwire.core.errors import TransportError
from ghostwire.core.logging import StructuredLogger
from ghostwire.core.message import Event
from ghostwire.core.metrics import Metrics
from ghostwire.core.poller import LongPollLoop, unwrap


class ScriptedPoll:
    """Returns queued batches (or raises queued errors), then empty lists."""

    def __init__(self, *batches):
        self.batches = list(batches)
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self.delay = 0.0

    async def __call__(self):
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            if not self.batches:
                return []
            batch = self.batches.pop(0)
            if isinstance(batch, Exception):
                raise batch
            return batch
        finally:
            self.active -= 1


def silent_logger(entries=None):
    return StructuredLogger(handler=entries.append if entries is not None else (lambda entry: None))


class TestUnwrap:
    def test_single_element_is_bare(self):
        assert unwrap(["success"]) == "success"
        assert unwrap([None]) is None

    def test_other_lengths_stay_lists(self):
        assert unwrap([]) == []
        assert unwrap(["msg", 0, ""]) == ["msg", 0, ""]


class TestDispatch:
    @pytest.mark.asyncio
    async def test_events_go_to_matching_handlers_in_order(self):
        seen = []
        poll = ScriptedPoll(
            [
                Event(1, "onLoadStarted"),
                Event(2, "onAlert", ["other page"]),
                Event(1, "onLoadFinished", ["success"]),
                Event(None, "onError", ["boom", []]),
            ]
        )
        loop = LongPollLoop(poll, logger=silent_logger())
        loop.register(1, "onLoadStarted", lambda p: seen.append(("started", p)))
        loop.register(1, "onLoadFinished", lambda p: seen.append(("finished", p)))
        loop.register(None, "onError", lambda p: seen.append(("error", p)))

        delivered = await loop.poll_once()

        assert delivered == 4
        assert seen == [("started", []), ("finished", "success"), ("error", ["boom", []])]

    @pytest.mark.asyncio
    async def test_async_handlers_are_awaited(self):
        seen = []

        async def handler(payload):
            await asyncio.sleep(0.01)
            seen.append(payload)

        poll = ScriptedPoll([Event(1, "onAlert", ["a"]), Event(1, "onAlert", ["b"])])
        loop = LongPollLoop(poll, logger=silent_logger())
        loop.register(1, "onAlert", handler)

        await loop.poll_once()
        assert seen == ["a", "b"]

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_batch(self):
        entries = []
        seen = []

        def broken(payload):
            raise ValueError("handler bug")

        poll = ScriptedPoll([Event(1, "onAlert", ["x"]), Event(1, "onClosing")])
        loop = LongPollLoop(poll, logger=silent_logger(entries))
        loop.register(1, "onAlert", broken)
        loop.register(1, "onClosing", seen.append)

        await loop.poll_once()

        assert seen == [[]]
        errors = [e for e in entries if e.event == "handler_error"]
        assert errors[0].error == "handler bug"
        assert errors[0].error_type == "ValueError"

    @pytest.mark.asyncio
    async def test_unregister_and_forget(self):
        seen = []
        loop = LongPollLoop(ScriptedPoll(), logger=silent_logger())
        loop.register(1, "onAlert", seen.append)
        loop.register(1, "onClosing", seen.append)
        loop.register(2, "onAlert", seen.append)

        assert loop.unregister(1, "onAlert") is not None
        loop.forget(1)

        assert loop.handler_for(1, "onClosing") is None
        assert loop.handler_for(2, "onAlert") is not None

    @pytest.mark.asyncio
    async def test_page_created_payload_is_materialized(self):
        seen = []
        poll = ScriptedPoll([Event(None, "onPageCreated", [5])])
        loop = LongPollLoop(poll, logger=silent_logger(), materialize=lambda handle: f"page-{handle}")
        loop.register(None, "onPageCreated", seen.append)

        await loop.poll_once()
        assert seen == ["page-5"]


class TestPolling:
    @pytest.mark.asyncio
    async def test_transport_error_is_retried(self):
        entries = []
        metrics = Metrics()
        seen = []
        poll = ScriptedPoll(TransportError("connection refused"), [Event(1, "onAlert", ["later"])])
        loop = LongPollLoop(poll, interval=0.01, logger=silent_logger(entries), metrics=metrics)
        loop.register(1, "onAlert", seen.append)

        loop.start()
        for _ in range(100):
            if seen:
                break
            await asyncio.sleep(0.01)
        await loop.stop()

        assert seen == ["later"]
        assert any(e.event == "poll_error" for e in entries)
        snapshot = metrics.snapshot()
        assert snapshot.polls_failed == 1
        assert snapshot.events_delivered == 1

    @pytest.mark.asyncio
    async def test_flush_is_serialized_with_periodic_poll(self):
        poll = ScriptedPoll()
        poll.delay = 0.05
        loop = LongPollLoop(poll, interval=0.0, logger=silent_logger())
        loop.start()
        await asyncio.sleep(0.01)

        await asyncio.gather(loop.flush(), loop.flush())
        await loop.stop()

        assert poll.max_active == 1

    @pytest.mark.asyncio
    async def test_flush_from_handler_is_noop(self):
        results = []
        loop = None

        async def handler(payload):
            results.append(await loop.flush())

        poll = ScriptedPoll([Event(1, "onAlert", ["x"])], [Event(1, "onAlert", ["never"])])
        loop = LongPollLoop(poll, logger=silent_logger())
        loop.register(1, "onAlert", handler)

        await asyncio.wait_for(loop.flush(), timeout=1)

        assert results == [0]
        assert poll.calls == 1

    @pytest.mark.asyncio
    async def test_flush_retries_failed_poll(self):
        seen = []
        metrics = Metrics()
        poll = ScriptedPoll(TransportError("connection reset"), [Event(1, "onAlert", ["hi"])])
        loop = LongPollLoop(poll, logger=silent_logger(), metrics=metrics, flush_retry_delay=0.0)
        loop.register(1, "onAlert", seen.append)

        assert await loop.flush() == 1

        assert seen == ["hi"]
        assert poll.calls == 2
        assert metrics.snapshot().polls_failed == 1

    @pytest.mark.asyncio
    async def test_flush_raises_when_every_attempt_fails(self):
        poll = ScriptedPoll(*[TransportError("connection reset") for _ in range(3)])
        loop = LongPollLoop(poll, logger=silent_logger(), flush_attempts=3, flush_retry_delay=0.0)

        with pytest.raises(TransportError, match="after 3 poll attempts"):
            await loop.flush()
        assert poll.calls == 3

    @pytest.mark.asyncio
    async def test_periodic_poll_error_is_not_raised(self):
        loop = LongPollLoop(ScriptedPoll(TransportError("connection reset")), logger=silent_logger())
        assert await loop.poll_once() == 0

    @pytest.mark.asyncio
    async def test_worker_exit_stops_polling(self):
        poll = ScriptedPoll()
        loop = LongPollLoop(poll, interval=0.01, logger=silent_logger())
        loop.start()
        await asyncio.sleep(0.03)

        loop.worker_exited(0)
        await asyncio.sleep(0.01)
        calls = poll.calls
        await asyncio.sleep(0.05)

        assert poll.calls == calls
        assert not loop.running
        assert await loop.flush() == 0

    @pytest.mark.asyncio
    async def test_error_after_worker_exit_is_silent(self):
        entries = []
        loop = None

        async def failing_poll():
            loop.worker_exited(0)
            raise TransportError("connection reset")

        loop = LongPollLoop(failing_poll, logger=silent_logger(entries))
        assert await loop.poll_once() == 0
        assert not any(e.event == "poll_error" for e in entries)

    @pytest.mark.asyncio
    async def test_start_after_exit_does_nothing(self):
        loop = LongPollLoop(ScriptedPoll(), logger=silent_logger())
        loop.worker_exited()
        loop.start()
        assert not loop.running
