"""
ghostwire - drive a headless page-scripting worker process as a local object.

The worker runs as its own OS process behind a loopback HTTP channel: calls
travel one at a time over ``POST /``, notifications come back by long-polling
``GET /``, and the worker shuts itself down when the controller stops talking
to it.

## Quick Start

```python
from ghostwire import ParentWorker

async with ParentWorker() as worker:
    page = await worker.create_page()

    @page.on("onConsoleMessage")
    def log(message):
        print("page:", message)

    status = await page.open("data:text/html,<title>hi</title>")
    title = await page.evaluate(lambda: document.title)
    await worker.exit(0)
```

### Synchronous use
```python
worker = ParentWorker()
with worker.handle_sync() as h:
    page = h.create_page()
    page.set_content("<title>sync</title>")
    print(page.get("title"))
```

### Extending remote objects
```python
await page.set_fn("double", lambda x: x * 2)
assert await page.double(21) == 42
```

### With Observability (Metrics & Logging)
```python
from ghostwire import ParentWorker, default_json_handler

worker = ParentWorker(log_handler=default_json_handler)
...
metrics = worker.metrics.snapshot()
print(f"Avg latency: {metrics.latency_avg_ms}ms, polls: {metrics.polls_total}")
```
"""

from .core.async_worker import ParentWorker
from .core.errors import (
    GhostwireError,
    TransportError,
    MalformedRequestError,
    RemoteCallError,
    WorkerStartupError,
    EndpointDiscoveryError,
)
from .core.proxy import RemoteObjectProxy, PageProxy, WorkerProxy
from .core.sync_wrapper import ParentHandleSync, SyncObjectProxy
from .core.metrics import Metrics, MetricsSnapshot
from .core.logging import (
    StructuredLogger,
    LogEntry,
    LogEvent,
    LogLevel,
    LogHandler,
    default_json_handler,
    default_pretty_handler,
)

__version__ = "1.0.0"
__all__ = [
    # Core
    "ParentWorker",
    "RemoteObjectProxy",
    "PageProxy",
    "WorkerProxy",
    "ParentHandleSync",
    "SyncObjectProxy",
    # Errors
    "GhostwireError",
    "TransportError",
    "MalformedRequestError",
    "RemoteCallError",
    "WorkerStartupError",
    "EndpointDiscoveryError",
    # Metrics
    "Metrics",
    "MetricsSnapshot",
    # Logging
    "StructuredLogger",
    "LogEntry",
    "LogEvent",
    "LogLevel",
    "LogHandler",
    "default_json_handler",
    "default_pretty_handler",
]
