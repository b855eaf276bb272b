"""
Tests for the event buffer and notification triggers.

Tests cover:
- Take-and-clear draining
- Restoring an undelivered batch ahead of newer events
- Suppression of resource events for inline data: URLs
- Injected handlers overriding the default buffered event
- Child page registration with onPageCreated
"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from ghostwire.core.events import (
    PAGE_CREATED,
    PAGE_NOTIFICATIONS,
    RESOURCE_NOTIFICATIONS,
    EventBuffer,
    Triggers,
    handlers_from,
    is_inline_resource,
)
from ghostwire.core.message import Event
from ghostwire.core.registry import HandleRegistry, RemoteObject


class TestEventBuffer:
    def test_drain_takes_everything_in_order(self):
        buffer = EventBuffer()
        buffer.emit(Event(1, "a"))
        buffer.emit(Event(1, "b"))

        assert [e.kind for e in buffer.drain_all()] == ["a", "b"]
        assert len(buffer) == 0
        assert buffer.drain_all() == []

    def test_restore_puts_batch_back_first(self):
        """A failed delivery loses nothing and duplicates nothing."""
        buffer = EventBuffer()
        buffer.emit(Event(1, "first"))
        buffer.emit(Event(1, "second"))
        batch = buffer.drain_all()

        buffer.emit(Event(1, "third"))
        buffer.restore(batch)

        assert [e.kind for e in buffer.drain_all()] == ["first", "second", "third"]

    def test_restore_empty_batch(self):
        buffer = EventBuffer()
        buffer.emit(Event(None, "x"))
        buffer.restore([])
        assert len(buffer) == 1

    def test_peek_does_not_drain(self):
        buffer = EventBuffer()
        buffer.emit(Event(1, "x"))
        assert buffer.peek() == [Event(1, "x")]
        assert len(buffer) == 1


class TestInlineResources:
    def test_data_url_resource_is_inline(self):
        for kind in RESOURCE_NOTIFICATIONS:
            assert is_inline_resource(kind, [{"url": "data:text/plain,hi"}])

    def test_network_resource_is_not_inline(self):
        assert not is_inline_resource("onResourceRequested", [{"url": "http://example.com/"}])

    def test_other_kinds_never_inline(self):
        assert not is_inline_resource("onUrlChanged", [{"url": "data:text/plain,hi"}])

    def test_missing_payload(self):
        assert not is_inline_resource("onResourceReceived", [])
        assert not is_inline_resource("onResourceReceived", ["data:x"])


class TestTriggers:
    def test_emit_buffers_with_handle(self):
        buffer = EventBuffer()
        triggers = Triggers(buffer, handle=3)
        triggers.emit("onAlert", "hello")

        assert buffer.drain_all() == [Event(3, "onAlert", ["hello"])]

    def test_inline_resource_events_never_buffered(self):
        buffer = EventBuffer()
        triggers = Triggers(buffer, handle=1)
        triggers.emit("onResourceRequested", {"url": "data:image/png;base64,AAAA"}, None)
        triggers.emit("onResourceReceived", {"url": "data:image/png;base64,AAAA"})
        triggers.emit("onResourceReceived", {"url": "file:///tmp/a.html"})

        assert [e.payload[0]["url"] for e in buffer.drain_all()] == ["file:///tmp/a.html"]

    def test_fire_without_handler_emits(self):
        buffer = EventBuffer()
        triggers = Triggers(buffer, handle=1, lookup=handlers_from({}))

        assert triggers.fire("onConfirm", "sure?") is None
        assert buffer.drain_all() == [Event(1, "onConfirm", ["sure?"])]

    def test_fire_with_injected_handler(self):
        buffer = EventBuffer()
        properties = {"onPrompt": lambda message, default: default + "!"}
        triggers = Triggers(buffer, handle=1, lookup=handlers_from(properties))

        assert triggers.fire("onPrompt", "name?", "bob") == "bob!"
        assert len(buffer) == 0

    def test_non_callable_property_is_not_a_handler(self):
        lookup = handlers_from({"onAlert": "not callable"})
        assert lookup("onAlert") is None

    def test_bind_changes_handle(self):
        buffer = EventBuffer()
        triggers = Triggers(buffer)
        triggers.bind(9)
        triggers.emit("onClosing")
        assert buffer.drain_all()[0].handle == 9

    def test_page_created_registers_before_announcing(self):
        buffer = EventBuffer()
        registry = HandleRegistry()
        parent = RemoteObject(buffer)
        registry.register(parent)

        child = RemoteObject(buffer)
        child_handle = parent.triggers.page_created(registry, child)

        assert child_handle == 2
        assert registry.resolve(child_handle) is child
        assert buffer.drain_all() == [Event(1, PAGE_CREATED, [2])]

    def test_page_notifications_cover_page_created(self):
        assert PAGE_CREATED in PAGE_NOTIFICATIONS
