"""
Controller-side proxies standing in for remote objects.

    page = await worker.create_page()
    page.on("onLoadFinished", lambda status: print(status))
    await page.open("https://example.com")
    title = await page.evaluate(lambda: document.title)
    await page.set("viewportSize", {"width": 1024, "height": 768})
    await page.include_js("https://code.jquery.com/jquery.js")
"""

import ast
import copy
import inspect
import re
import textwrap
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

from .message import GLOBAL_TARGET

if TYPE_CHECKING:
    from .async_worker import ParentWorker

_CAMEL_BOUNDARY = re.compile(r"_([a-z0-9])")


def to_operation(name: str) -> str:
    """``include_js`` -> ``includeJs``; names without underscores pass through."""
    return _CAMEL_BOUNDARY.sub(lambda m: m.group(1).upper(), name)


def function_source(fn: Union[str, Callable]) -> str:
    """
    Source text for a function to ship to the worker.

    Strings pass through. A lambda is cut out of the line it was written on;
    a def loses its decorators.
    """
    if isinstance(fn, str):
        return fn
    if not callable(fn):
        raise TypeError(f"expected a function or source text, got {type(fn).__name__}")

    try:
        source = textwrap.dedent(inspect.getsource(fn))
    except (OSError, TypeError) as e:
        raise ValueError(f"source of {fn!r} is not available; pass it as a string") from e

    try:
        tree = ast.parse(source)
    except SyntaxError as e:
        # getsource gives a fragment for a lambda inside a multi-line call
        raise ValueError(f"could not parse source of {fn.__name__}; pass it as a string") from e

    wanted = ast.Lambda if fn.__name__ == "<lambda>" else (ast.FunctionDef, ast.AsyncFunctionDef)
    for node in ast.walk(tree):
        if isinstance(node, wanted) and getattr(node, "name", fn.__name__) == fn.__name__:
            segment = ast.get_source_segment(source, node)
            if segment:
                return segment
    raise ValueError(f"could not locate source of {fn.__name__}; pass it as a string")


class RemoteObjectProxy:
    """
    Stand-in for one remote object.

    Any attribute not defined here becomes a remote operation:
    ``await proxy.set_content(html)`` calls ``setContent``.
    """

    def __init__(self, worker: "ParentWorker", handle: Optional[int]):
        self._worker = worker
        self.handle = handle
        self._options = {}

    @property
    def target(self):
        return GLOBAL_TARGET if self.handle is None else self.handle

    def with_options(self, **options) -> "RemoteObjectProxy":
        """
        A view of this proxy whose calls use the given options.

        Options: flush (bool), timeout (seconds).
        """
        view = copy.copy(self)
        view._options = {**self._options, **options}
        return view

    async def invoke(self, operation: str, *args, flush: Optional[bool] = None, timeout: Optional[float] = None) -> Any:
        if flush is None:
            flush = self._options.get("flush")
        if timeout is None:
            timeout = self._options.get("timeout")
        return await self._worker._call_internal(
            self.target, operation, *args, flush=flush, timeout=timeout
        )

    async def get(self, path: str) -> Any:
        return await self.invoke("getProperty", path)

    async def set(self, path: str, value: Any) -> bool:
        return await self.invoke("setProperty", path, value)

    async def set_fn(self, name: str, fn: Union[str, Callable], wrap: bool = False) -> bool:
        """Install a function on the remote object under ``name``."""
        return await self.invoke("setFunction", name, function_source(fn), wrap)

    def on(self, kind: str, handler: Optional[Callable] = None):
        """
        Register a local handler for a notification of this object.

        Usable as a decorator:

            @page.on("onConsoleMessage")
            def log(message):
                ...
        """
        if handler is None:
            def decorator(fn):
                self._worker.poller.register(self.handle, kind, fn)
                return fn

            return decorator
        self._worker.poller.register(self.handle, kind, handler)
        return handler

    def off(self, kind: str) -> Optional[Callable]:
        return self._worker.poller.unregister(self.handle, kind)

    def __getattr__(self, name: str):
        if name.startswith("_"):
            raise AttributeError(name)
        operation = to_operation(name)

        async def remote_method(*args):
            return await self.invoke(operation, *args)

        remote_method.__name__ = name
        return remote_method

    def __eq__(self, other):
        return (
            isinstance(other, RemoteObjectProxy)
            and other._worker is self._worker
            and other.handle == self.handle
        )

    def __hash__(self):
        return hash((id(self._worker), self.handle))

    def __repr__(self):
        return f"<{type(self).__name__} {self.target}>"


class PageProxy(RemoteObjectProxy):
    """A page created in the worker."""

    async def evaluate(self, fn: Union[str, Callable], *args) -> Any:
        """Run a function inside the page and return its result."""
        return await self.invoke("evaluate", function_source(fn), *args)

    async def evaluate_async(self, fn: Union[str, Callable], delay_ms: float = 0, *args) -> None:
        return await self.invoke("evaluateAsync", function_source(fn), delay_ms, *args)

    async def open(self, url: str) -> str:
        """Load ``url``; completes with ``"success"`` or ``"fail"`` when loading ends."""
        return await self.invoke("open", url)

    async def include_js(self, url: str) -> bool:
        return await self.invoke("includeJs", url)

    async def close(self):
        try:
            return await self.invoke("close")
        finally:
            self._worker._forget_page(self.handle)


class WorkerProxy(RemoteObjectProxy):
    """The worker's global surface."""

    def __init__(self, worker: "ParentWorker"):
        super().__init__(worker, None)

    async def create_page(self) -> PageProxy:
        created = await self.invoke("createPage")
        return self._worker.page(created["handle"])

    async def exit(self, code: int = 0):
        return await self.invoke("exit", code, flush=False)
