"""
Worker-side event buffer and notification triggers.
"""

from typing import Any, Callable, Dict, Iterable, List, Optional

from .message import Event

PAGE_NOTIFICATIONS = (
    "onAlert",
    "onCallback",
    "onClosing",
    "onConfirm",
    "onConsoleMessage",
    "onError",
    "onFilePicker",
    "onInitialized",
    "onLoadFinished",
    "onLoadStarted",
    "onNavigationRequested",
    "onPrompt",
    "onResourceRequested",
    "onResourceReceived",
    "onResourceTimeout",
    "onResourceError",
    "onUrlChanged",
    "onPageCreated",
)

RESOURCE_NOTIFICATIONS = frozenset(
    {"onResourceRequested", "onResourceReceived", "onResourceError", "onResourceTimeout"}
)

PAGE_CREATED = "onPageCreated"


class EventBuffer:
    """
    Ordered buffer of notifications waiting for the next poll.

    Owned by the worker and handed to both the trigger side (emit) and the poll
    handler (drain_all / restore).
    """

    def __init__(self):
        self._events: List[Event] = []

    def emit(self, event: Event):
        self._events.append(event)

    def drain_all(self) -> List[Event]:
        """Take every buffered event and leave the buffer empty."""
        batch, self._events = self._events, []
        return batch

    def restore(self, batch: Iterable[Event]):
        """Put back a batch whose delivery failed, ahead of newer events."""
        batch = list(batch)
        if batch:
            self._events[:0] = batch

    def peek(self) -> List[Event]:
        return list(self._events)

    def __len__(self):
        return len(self._events)


def is_inline_resource(kind: str, payload: List[Any]) -> bool:
    """True for resource notifications about inline ``data:`` URLs."""
    if kind not in RESOURCE_NOTIFICATIONS or not payload:
        return False
    info = payload[0]
    url = info.get("url") if isinstance(info, dict) else None
    return isinstance(url, str) and url.startswith("data:")


class Triggers:
    """
    Emission side of the buffer, bound to one handle.

    fire() consults the object's injected handlers first: a callable installed
    under the notification name answers the trigger instead of the default
    buffered event, as the controller asked for it.
    """

    def __init__(
        self,
        buffer: EventBuffer,
        handle: Optional[int] = None,
        lookup: Optional[Callable[[str], Optional[Callable]]] = None,
    ):
        self.buffer = buffer
        self.handle = handle
        self._lookup = lookup

    def bind(self, handle: Optional[int]):
        self.handle = handle

    def emit(self, kind: str, *payload):
        payload = list(payload)
        if is_inline_resource(kind, payload):
            return
        self.buffer.emit(Event(self.handle, kind, payload))

    def fire(self, kind: str, *payload):
        handler = self._lookup(kind) if self._lookup else None
        if handler is not None:
            return handler(*payload)
        self.emit(kind, *payload)
        return None

    def page_created(self, registry, child) -> int:
        """Register a child object now and announce its handle."""
        child_handle = registry.register(child)
        self.emit(PAGE_CREATED, child_handle)
        return child_handle


def handlers_from(properties: Dict[str, Any]) -> Callable[[str], Optional[Callable]]:
    """Lookup for callables injected at the top of a property tree."""

    def lookup(kind: str) -> Optional[Callable]:
        candidate = properties.get(kind)
        return candidate if callable(candidate) else None

    return lookup
