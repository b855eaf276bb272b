"""
Wire codec for the call and poll channels.
"""

import json
import math
import uuid
import msgpack
from typing import Any, Dict, List, Optional, Union

GLOBAL_TARGET = "global"

JSON_CONTENT_TYPE = "application/json"
MSGPACK_CONTENT_TYPE = "application/msgpack"

WIRE_FORMATS = {
    "json": JSON_CONTENT_TYPE,
    "msgpack": MSGPACK_CONTENT_TYPE,
}

Target = Union[int, str]


def _sanitize(obj: Any) -> Any:
    """Sanitize a value so both codecs accept it.

    Handles:
    - NaN/Infinity → null
    - Integer overflow → clamp to int64
    - Non-string keys → string conversion
    - Tuples → lists
    """
    INT64_MAX = 2**63 - 1
    INT64_MIN = -(2**63)

    if isinstance(obj, dict):
        return {str(k): _sanitize(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_sanitize(v) for v in obj]
    elif isinstance(obj, bool):
        return obj
    elif isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            return None
        return obj
    elif isinstance(obj, int):
        return max(INT64_MIN, min(INT64_MAX, obj))
    return obj


def content_type_for(wire_format: str) -> str:
    """Map a wire format name to its Content-Type."""
    try:
        return WIRE_FORMATS[wire_format]
    except KeyError:
        raise ValueError(
            f"Unknown wire format {wire_format!r}, expected one of {sorted(WIRE_FORMATS)}"
        )


def encode(data: Any, content_type: str = JSON_CONTENT_TYPE) -> bytes:
    """Serialize a plain structure for the given Content-Type."""
    sanitized = _sanitize(data)
    if content_type == MSGPACK_CONTENT_TYPE:
        return msgpack.packb(sanitized, use_bin_type=True, default=str)
    return json.dumps(sanitized, default=str).encode("utf-8")


def decode(data: bytes, content_type: str = JSON_CONTENT_TYPE) -> Any:
    """Deserialize bytes produced by :func:`encode`.

    Raises ValueError for anything that does not decode.
    """
    if not isinstance(data, (bytes, bytearray)):
        raise ValueError(f"Expected bytes, got {type(data)}")
    if len(data) == 0:
        raise ValueError("Empty message data")

    if content_type == MSGPACK_CONTENT_TYPE:
        try:
            # Unpack with size limits (DoS protection)
            return msgpack.unpackb(
                data,
                raw=False,
                max_bin_len=10 * 1024 * 1024,
                max_str_len=10 * 1024 * 1024,
                max_array_len=100_000,
                max_map_len=100_000,
            )
        except msgpack.exceptions.ExtraData as e:
            raise ValueError(f"Message contains extra data: {e}")
        except (msgpack.exceptions.UnpackException, ValueError) as e:
            raise ValueError(f"Failed to unpack message: {e}")

    try:
        return json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Failed to decode JSON message: {e}")


class Call:
    """
    A request for the worker to run one operation.

    Fields:
    - id: str = unique UUID, keys deferred completions on the worker
    - target: int | "global" = handle of the remote object
    - operation: str = operation name on the target
    - args: List = positional arguments
    """

    def __init__(
        self,
        target: Target,
        operation: str,
        args: Optional[List[Any]] = None,
        call_id: Optional[str] = None,
    ):
        self.id = call_id or str(uuid.uuid4())
        self.target = target
        self.operation = operation
        self.args = list(args or [])

    @property
    def is_global(self) -> bool:
        return self.target == GLOBAL_TARGET

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "target": self.target,
            "operation": self.operation,
            "args": self.args,
        }

    def pack(self, content_type: str = JSON_CONTENT_TYPE) -> bytes:
        return encode(self.to_dict(), content_type)

    @classmethod
    def from_dict(cls, data: Any) -> "Call":
        """Validate a decoded structure and build a Call."""
        if not isinstance(data, dict):
            raise ValueError(f"Expected an object, got {type(data).__name__}")

        operation = data.get("operation")
        if not isinstance(operation, str) or not operation:
            raise ValueError("Message missing 'operation' field")

        target = data.get("target", GLOBAL_TARGET)
        if target is None:
            target = GLOBAL_TARGET
        if isinstance(target, bool) or not (
            isinstance(target, int) or target == GLOBAL_TARGET
        ):
            raise ValueError(f"Invalid target {target!r}")

        args = data.get("args", [])
        if not isinstance(args, list):
            raise ValueError("'args' must be a list")

        return cls(
            target=target,
            operation=operation,
            args=args,
            call_id=data.get("id") or None,
        )

    @classmethod
    def unpack(cls, data: bytes, content_type: str = JSON_CONTENT_TYPE) -> "Call":
        return cls.from_dict(decode(data, content_type))

    def __repr__(self):
        return f"Call(target={self.target!r}, operation={self.operation!r}, args={self.args!r})"


class Reply:
    """
    Outcome of exactly one Call: either a result or a fault.

    A fault travels with HTTP 200; it belongs to the call, not to the channel.
    """

    def __init__(
        self,
        call_id: Optional[str] = None,
        result: Any = None,
        fault: Optional[str] = None,
        fault_type: Optional[str] = None,
    ):
        self.id = call_id
        self.result = result
        self.fault = fault
        self.fault_type = fault_type

    @classmethod
    def success(cls, call_id: Optional[str], result: Any) -> "Reply":
        return cls(call_id=call_id, result=result)

    @classmethod
    def failure(cls, call_id: Optional[str], exc: BaseException, detail: Optional[str] = None) -> "Reply":
        fault = f"{type(exc).__name__}: {exc}"
        if detail:
            fault = f"{fault}\n{detail}"
        return cls(call_id=call_id, fault=fault, fault_type=type(exc).__name__)

    @property
    def is_fault(self) -> bool:
        return self.fault is not None

    def to_dict(self) -> Dict[str, Any]:
        if self.is_fault:
            return {"id": self.id, "fault": self.fault, "fault_type": self.fault_type}
        return {"id": self.id, "result": self.result}

    def pack(self, content_type: str = JSON_CONTENT_TYPE) -> bytes:
        return encode(self.to_dict(), content_type)

    @classmethod
    def unpack(cls, data: bytes, content_type: str = JSON_CONTENT_TYPE) -> "Reply":
        decoded = decode(data, content_type)
        if not isinstance(decoded, dict):
            raise ValueError(f"Expected an object, got {type(decoded).__name__}")
        if "fault" in decoded and decoded["fault"] is not None:
            return cls(
                call_id=decoded.get("id"),
                fault=str(decoded["fault"]),
                fault_type=decoded.get("fault_type"),
            )
        return cls(call_id=decoded.get("id"), result=decoded.get("result"))

    def __repr__(self):
        if self.is_fault:
            return f"Reply(fault={self.fault!r})"
        return f"Reply(result={self.result!r})"


class Event:
    """
    An asynchronous notification buffered inside the worker.

    handle is None for global notifications.
    """

    __slots__ = ("handle", "kind", "payload")

    def __init__(self, handle: Optional[int], kind: str, payload: Optional[List[Any]] = None):
        self.handle = handle
        self.kind = kind
        self.payload = list(payload or [])

    def to_dict(self) -> Dict[str, Any]:
        return {"handle": self.handle, "kind": self.kind, "payload": self.payload}

    @classmethod
    def from_dict(cls, data: Any) -> "Event":
        if not isinstance(data, dict) or not isinstance(data.get("kind"), str):
            raise ValueError(f"Malformed event: {data!r}")
        return cls(data.get("handle"), data["kind"], data.get("payload") or [])

    def __eq__(self, other):
        if not isinstance(other, Event):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return f"Event(handle={self.handle!r}, kind={self.kind!r}, payload={self.payload!r})"


def pack_events(events: List[Event], content_type: str = JSON_CONTENT_TYPE) -> bytes:
    """Serialize a drained batch for a poll response."""
    return encode({"events": [event.to_dict() for event in events]}, content_type)


def unpack_events(data: bytes, content_type: str = JSON_CONTENT_TYPE) -> List[Event]:
    decoded = decode(data, content_type)
    if not isinstance(decoded, dict) or not isinstance(decoded.get("events"), list):
        raise ValueError("Poll response missing 'events' list")
    return [Event.from_dict(item) for item in decoded["events"]]
