"""
Core modules for the controller/worker bridge.

The worker entry point, ghostwire.core.child, is run with ``python -m`` and is
not imported here.
"""

from .async_worker import ParentWorker
from .discovery import Endpoint, PsutilEndpointDiscoverer
from .errors import (
    GhostwireError,
    TransportError,
    MalformedRequestError,
    RemoteCallError,
    WorkerStartupError,
    EndpointDiscoveryError,
    DispatchError,
    UnknownTargetError,
    UnknownOperationError,
    ScriptError,
    LoadError,
)
from .message import Call, Reply, Event, GLOBAL_TARGET
from .proxy import RemoteObjectProxy, PageProxy, WorkerProxy
from .supervisor import ProcessSupervisor, SupervisorState
from .sync_wrapper import SyncWrapper, SyncObjectProxy, ParentHandleSync
from .watchdog import ALIVE_TIMEOUT, ALIVE_TIMEOUT_INIT, EXIT_ABANDONED
from .metrics import Metrics, MetricsSnapshot
from .logging import (
    StructuredLogger,
    LogEntry,
    LogEvent,
    LogLevel,
    LogHandler,
    default_json_handler,
    default_pretty_handler,
)

__all__ = [
    "ParentWorker",
    "Endpoint",
    "PsutilEndpointDiscoverer",
    # Errors
    "GhostwireError",
    "TransportError",
    "MalformedRequestError",
    "RemoteCallError",
    "WorkerStartupError",
    "EndpointDiscoveryError",
    "DispatchError",
    "UnknownTargetError",
    "UnknownOperationError",
    "ScriptError",
    "LoadError",
    # Wire
    "Call",
    "Reply",
    "Event",
    "GLOBAL_TARGET",
    # Proxies
    "RemoteObjectProxy",
    "PageProxy",
    "WorkerProxy",
    "SyncWrapper",
    "SyncObjectProxy",
    "ParentHandleSync",
    # Lifecycle
    "ProcessSupervisor",
    "SupervisorState",
    "ALIVE_TIMEOUT",
    "ALIVE_TIMEOUT_INIT",
    "EXIT_ABANDONED",
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
