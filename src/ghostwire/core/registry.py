"""
Handle registry and the capability surface every remote object shares.
"""

import itertools
import traceback
from typing import Any, Callable, Dict, List, Optional

from .errors import UnknownOperationError, UnknownTargetError
from .events import EventBuffer, Triggers, handlers_from
from .sandbox import compile_callable, new_scope


def _split(path) -> List[str]:
    if isinstance(path, (list, tuple)):
        keys = [str(k) for k in path]
    elif isinstance(path, str):
        keys = path.split(".")
    else:
        raise TypeError(f"property path must be a string or list, got {type(path).__name__}")
    if not keys or any(k == "" for k in keys):
        raise ValueError(f"invalid property path {path!r}")
    return keys


def _child(node: Any, key: str) -> Any:
    if isinstance(node, dict):
        return node.get(key)
    if isinstance(node, list):
        try:
            return node[int(key)]
        except (ValueError, IndexError):
            return None
    if node is None:
        return None
    return getattr(node, key, None)


def lookup_path(tree: Any, path) -> Any:
    """Descend through dicts, lists and attributes; missing keys yield None."""
    node = tree
    for key in _split(path):
        node = _child(node, key)
        if node is None:
            return None
    return node


def assign_path(tree: Dict[str, Any], path, value: Any) -> None:
    """Write ``value`` at ``path``, creating intermediate dicts when absent."""
    keys = _split(path)
    node: Any = tree
    for key in keys[:-1]:
        nxt = _child(node, key)
        if not isinstance(nxt, (dict, list)):
            nxt = {}
            if isinstance(node, dict):
                node[key] = nxt
            else:
                setattr(node, key, nxt)
        node = nxt
    last = keys[-1]
    if isinstance(node, dict):
        node[last] = value
    elif isinstance(node, list):
        node[int(last)] = value
    else:
        setattr(node, last, value)


class RemoteObject:
    """
    Base for every object a handle can address.

    Subclasses declare an explicit ``operations`` table mapping wire names to
    method names, and ``deferred_operations`` naming the coroutine operations
    whose reply waits for their own completion.
    """

    operations: Dict[str, str] = {
        "getProperty": "get_property",
        "setProperty": "set_property",
        "setFunction": "set_function",
    }
    deferred_operations = frozenset()

    def __init__(self, events: EventBuffer):
        self.handle: Optional[int] = None
        self.properties: Dict[str, Any] = {}
        self.scope: Dict[str, Any] = new_scope()
        self.triggers = Triggers(events, lookup=handlers_from(self.properties))

    def on_bind(self, handle: Optional[int]):
        self.handle = handle
        self.triggers.bind(handle)

    # Uniform capabilities

    def get_property(self, path):
        return lookup_path(self.properties, path)

    def set_property(self, path, value):
        assign_path(self.properties, path, value)
        return True

    def set_function(self, name: str, source: str, wrap: bool = False):
        fn = compile_callable(source, self.scope, filename=f"<{name}>")
        if wrap is True:
            fn = self._wrap_callback(name, fn)
        assign_path(self.properties, name, fn)
        return True

    def _wrap_callback(self, name: str, fn: Callable) -> Callable:
        emit = self.triggers.emit

        def wrapped(*args):
            emit(name, *args)
            return fn(*args)

        wrapped.__name__ = getattr(fn, "__name__", name)
        wrapped.__wrapped__ = fn
        return wrapped

    def report_error(self, exc: BaseException):
        """Announce a script error nobody is waiting on as onError [message, trace]."""
        trace = [
            {"file": frame.filename, "line": frame.lineno, "function": frame.name}
            for frame in traceback.extract_tb(exc.__traceback__)
        ]
        self.triggers.fire("onError", f"{type(exc).__name__}: {exc}", trace)

    # Operation lookup

    def resolve_operation(self, name: str) -> Callable:
        method_name = self.operations.get(name)
        if method_name is not None:
            return getattr(self, method_name)
        try:
            injected = lookup_path(self.properties, name)
        except (TypeError, ValueError):
            injected = None
        if callable(injected):
            return injected
        raise UnknownOperationError(name, self.handle if self.handle is not None else "global")

    def is_deferred(self, name: str) -> bool:
        return name in self.deferred_operations


class HandleRegistry:
    """Assigns handles (1, 2, 3, ...) and owns the objects they address."""

    def __init__(self, first: int = 1):
        self._counter = itertools.count(first)
        self._objects: Dict[int, RemoteObject] = {}
        self._last: Optional[int] = None

    def allocate(self) -> int:
        handle = next(self._counter)
        self._last = handle
        return handle

    def bind(self, handle: int, obj: RemoteObject):
        if handle in self._objects:
            raise ValueError(f"handle {handle} is already bound")
        if self._last is None or handle > self._last:
            raise ValueError(f"handle {handle} was not allocated by this registry")
        self._objects[handle] = obj
        obj.on_bind(handle)

    def register(self, obj: RemoteObject) -> int:
        handle = self.allocate()
        self.bind(handle, obj)
        return handle

    def resolve(self, handle) -> RemoteObject:
        if isinstance(handle, bool) or not isinstance(handle, int):
            raise UnknownTargetError(handle)
        try:
            return self._objects[handle]
        except KeyError:
            raise UnknownTargetError(handle)

    def release(self, handle: int) -> Optional[RemoteObject]:
        return self._objects.pop(handle, None)

    def handles(self) -> List[int]:
        return sorted(self._objects)

    def __contains__(self, handle):
        return handle in self._objects

    def __len__(self):
        return len(self._objects)
