"""
Error taxonomy shared by the controller and the worker.
"""

from typing import Optional


class GhostwireError(Exception):
    """Base class for all ghostwire errors."""


# Controller side


class TransportError(GhostwireError):
    """Connection refused/reset, timeout, or undecodable traffic on a channel."""


class MalformedRequestError(TransportError):
    """The worker rejected a request it could not decode (HTTP 500)."""


class RemoteCallError(GhostwireError):
    """A call reached the worker and came back as a fault reply."""

    def __init__(self, fault: str, fault_type: Optional[str] = None):
        super().__init__(fault)
        self.fault = fault
        self.fault_type = fault_type


class WorkerStartupError(GhostwireError):
    """The worker process failed before it became ready."""


class EndpointDiscoveryError(WorkerStartupError):
    """The listening endpoint of a spawned worker could not be determined."""


# Worker side (converted to fault replies by the dispatcher)


class DispatchError(GhostwireError):
    """Base class for faults produced while routing a call."""


class UnknownTargetError(DispatchError):
    """The call addressed a handle that was never allocated or was released."""

    def __init__(self, handle):
        super().__init__(f"unknown target {handle!r}")
        self.handle = handle


class UnknownOperationError(DispatchError):
    """The target has no operation with the requested name."""

    def __init__(self, operation: str, target):
        super().__init__(f"unknown operation {operation!r} on target {target!r}")
        self.operation = operation
        self.target = target


class ScriptError(GhostwireError):
    """Injected source text failed to compile or is not a callable."""


class LoadError(GhostwireError):
    """A page resource could not be loaded."""

    def __init__(self, url: str, reason: str, code: int = 0):
        super().__init__(f"failed to load {url}: {reason}")
        self.url = url
        self.reason = reason
        self.code = code
