"""
Sync wrapper for async ParentWorker.
Provides a synchronous API on top of the async core.
"""

import asyncio
import threading
from typing import Any, Callable, Optional, TYPE_CHECKING

from .proxy import RemoteObjectProxy

if TYPE_CHECKING:
    from .async_worker import ParentWorker


class SyncWrapper:
    """
    Runs an async ParentWorker on an event loop in a background thread and
    exposes blocking calls into it.
    """

    def __init__(self, async_worker: "ParentWorker"):
        """
        Initialize sync wrapper.

        Args:
            async_worker: The async ParentWorker instance to wrap
        """
        self._worker = async_worker
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[threading.Thread] = None
        self._loop_started = threading.Event()
        self._loop_stopped = threading.Event()

    @property
    def worker(self) -> "ParentWorker":
        return self._worker

    def start(self):
        """Start the worker synchronously."""
        self._ensure_loop()
        return self.run(self._worker.start())

    def run(self, coro, timeout: Optional[float] = None) -> Any:
        """Run a coroutine on the background loop and wait for its result."""
        self._ensure_loop()
        return self._run_async(coro, timeout)

    def close(self):
        """Close the worker synchronously."""
        if self._loop and not self._loop.is_closed():
            self._run_async(self._worker.close())
            self._stop_loop()

    def _ensure_loop(self):
        """Ensure an event loop is running in a background thread."""
        if self._loop is None or self._loop.is_closed():
            self._start_loop()

    def _start_loop(self):
        """Start an event loop in a background thread."""
        self._loop_started.clear()
        self._loop_stopped.clear()

        def run_loop():
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
            self._loop_started.set()
            self._loop.run_forever()
            self._loop.close()
            self._loop_stopped.set()

        self._loop_thread = threading.Thread(target=run_loop, name="ghostwire-loop", daemon=True)
        self._loop_thread.start()
        self._loop_started.wait()

    def _stop_loop(self):
        """Stop the background event loop."""
        if self._loop and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._loop_stopped.wait(timeout=2)
            if self._loop_thread is not None:
                self._loop_thread.join(timeout=2)
        self._loop = None
        self._loop_thread = None

    def _run_async(self, coro, timeout: Optional[float] = None):
        """
        Run an async coroutine in the background loop.

        Args:
            coro: The coroutine to run

        Returns:
            The result of the coroutine
        """
        if not self._loop or self._loop.is_closed():
            coro.close()
            raise RuntimeError("Event loop is not running")
        if threading.current_thread() is self._loop_thread:
            coro.close()
            raise RuntimeError("blocking call made from the worker's own event loop thread")

        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result(timeout)

    def __enter__(self):
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, tb):
        """Context manager exit."""
        self.close()


class SyncObjectProxy:
    """
    Blocking view of a RemoteObjectProxy.

    Usage:
        with worker.handle_sync() as h:
            page = h.create_page()
            page.open("file:///tmp/index.html")
            print(page.get("title"))

    Event handlers registered with on() run on the background loop thread
    and receive async proxies; they must not make blocking calls.
    """

    def __init__(self, wrapper: SyncWrapper, proxy: RemoteObjectProxy):
        self._wrapper = wrapper
        self._proxy = proxy

    @property
    def handle(self) -> Optional[int]:
        return self._proxy.handle

    @property
    def async_proxy(self) -> RemoteObjectProxy:
        return self._proxy

    def _wrap(self, result):
        if isinstance(result, RemoteObjectProxy):
            return SyncObjectProxy(self._wrapper, result)
        return result

    def with_options(self, **options) -> "SyncObjectProxy":
        """
        Set options for calls made through the returned proxy.

        Args:
            **options: flush, timeout
        """
        return SyncObjectProxy(self._wrapper, self._proxy.with_options(**options))

    def invoke(self, operation: str, *args, flush: Optional[bool] = None, timeout: Optional[float] = None):
        return self._wrap(self._wrapper.run(self._proxy.invoke(operation, *args, flush=flush, timeout=timeout)))

    def on(self, kind: str, handler: Optional[Callable] = None):
        return self._proxy.on(kind, handler)

    def off(self, kind: str):
        return self._proxy.off(kind)

    def __getattr__(self, name):
        """
        Create a synchronous method call proxy.

        Args:
            name: Name of the remote method, or of a proxy helper such as
                evaluate, get, set or set_fn

        Returns:
            A callable that executes the remote method synchronously
        """
        if name.startswith("_"):
            raise AttributeError(name)
        target = getattr(self._proxy, name)

        def remote_method(*args, **kwargs):
            return self._wrap(self._wrapper.run(target(*args, **kwargs)))

        remote_method.__name__ = name
        return remote_method

    def __repr__(self):
        return f"<SyncObjectProxy {self._proxy.target}>"


class ParentHandleSync:
    """
    Sync handle for ParentWorker - provides lifecycle + call interface.

    Separates process definition (Worker) from runtime interface (Handle).
    The handle is cheap to create and delegates all operations to the worker.

    Usage:
        worker = ParentWorker(parameters={"load-images": "no"})
        with worker.handle_sync() as h:
            page = h.create_page()
            status = page.open("file:///tmp/index.html")
            h.exit(0)
    """

    def __init__(self, worker: "ParentWorker"):
        """
        Initialize sync handle.

        Args:
            worker: The ParentWorker instance to delegate to
        """
        self._worker = worker
        self._wrapper = SyncWrapper(worker)
        self._root: Optional[SyncObjectProxy] = None

    @property
    def root(self) -> SyncObjectProxy:
        """Blocking proxy for the worker's global surface."""
        if self._root is None:
            self._root = SyncObjectProxy(self._wrapper, self._worker.root)
        return self._root

    def create_page(self) -> SyncObjectProxy:
        return self.root.create_page()

    def on(self, kind: str, handler: Optional[Callable] = None):
        return self._worker.on(kind, handler)

    def exit(self, code: int = 0) -> Optional[int]:
        result = self._wrapper.run(self._worker.exit(code))
        self._wrapper.close()
        return result

    def start(self) -> None:
        """Start the worker (spawn process, wait for readiness)."""
        self._wrapper.start()

    def stop(self) -> None:
        """Stop the worker (cleanup resources, terminate child)."""
        self._wrapper.close()

    def __enter__(self) -> "ParentHandleSync":
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, tb) -> None:
        """Context manager exit."""
        self.stop()
