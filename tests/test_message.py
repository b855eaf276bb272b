"""
Tests for the wire codec.

Tests cover:
- Call / Reply / Event construction and dict form
- JSON and msgpack encoding
- Validation of malformed calls
- Sanitization (NaN, Infinity, integer overflow, tuples)
"""

import json
import math
import msgpack
import sys
import os

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from ghostwire.core.message import (
    Call,
    Reply,
    Event,
    GLOBAL_TARGET,
    JSON_CONTENT_TYPE,
    MSGPACK_CONTENT_TYPE,
    content_type_for,
    encode,
    decode,
    pack_events,
    unpack_events,
    _sanitize,
)


class TestCall:
    """Test Call creation and validation."""

    def test_defaults(self):
        """A call gets a UUID id and an empty argument list."""
        call = Call(GLOBAL_TARGET, "createPage")

        assert call.id is not None
        assert len(call.id) == 36
        assert call.args == []
        assert call.is_global

    def test_ids_are_unique(self):
        assert Call(1, "open").id != Call(1, "open").id

    def test_handle_target_is_not_global(self):
        assert not Call(1, "evaluate").is_global

    def test_to_dict(self):
        call = Call(1, "open", ["x", 5], call_id="abc")

        assert call.to_dict() == {
            "id": "abc",
            "target": 1,
            "operation": "open",
            "args": ["x", 5],
        }

    def test_from_dict_defaults_target_to_global(self):
        call = Call.from_dict({"id": "1", "operation": "createPage"})
        assert call.target == GLOBAL_TARGET

    def test_from_dict_null_target_is_global(self):
        call = Call.from_dict({"id": "1", "target": None, "operation": "exit"})
        assert call.is_global

    def test_from_dict_missing_operation(self):
        with pytest.raises(ValueError, match="operation"):
            Call.from_dict({"id": "1", "target": 1})

    def test_from_dict_rejects_bad_target(self):
        with pytest.raises(ValueError, match="Invalid target"):
            Call.from_dict({"target": "page-1", "operation": "open"})

    def test_from_dict_rejects_bool_target(self):
        with pytest.raises(ValueError):
            Call.from_dict({"target": True, "operation": "open"})

    def test_from_dict_rejects_non_list_args(self):
        with pytest.raises(ValueError, match="args"):
            Call.from_dict({"target": 1, "operation": "open", "args": "x"})

    def test_from_dict_rejects_non_object(self):
        with pytest.raises(ValueError, match="Expected an object"):
            Call.from_dict(["open"])

    def test_unpack_json(self):
        body = json.dumps({"id": "z", "target": 2, "operation": "evaluate", "args": [1]}).encode()
        call = Call.unpack(body)

        assert call.id == "z"
        assert call.target == 2
        assert call.args == [1]

    def test_unpack_msgpack(self):
        body = msgpack.packb({"id": "z", "target": "global", "operation": "exit", "args": [3]})
        call = Call.unpack(body, MSGPACK_CONTENT_TYPE)

        assert call.operation == "exit"
        assert call.args == [3]

    def test_unpack_garbage(self):
        with pytest.raises(ValueError):
            Call.unpack(b"{not json")


class TestReply:
    """Test Reply success and fault forms."""

    def test_success(self):
        reply = Reply.success("id1", {"handle": 1})

        assert not reply.is_fault
        assert reply.to_dict() == {"id": "id1", "result": {"handle": 1}}

    def test_failure_carries_type_and_detail(self):
        reply = Reply.failure("id2", KeyError("nope"), "Traceback ...")

        assert reply.is_fault
        assert reply.fault_type == "KeyError"
        assert reply.fault.startswith("KeyError: 'nope'")
        assert reply.fault.endswith("Traceback ...")

    def test_fault_dict_has_no_result(self):
        data = Reply.failure("id3", ValueError("bad")).to_dict()

        assert "result" not in data
        assert data["fault"] == "ValueError: bad"

    def test_unpack_fault(self):
        body = json.dumps({"id": "a", "fault": "Boom", "fault_type": "RuntimeError"}).encode()
        reply = Reply.unpack(body)

        assert reply.is_fault
        assert reply.fault_type == "RuntimeError"

    def test_unpack_null_result_is_success(self):
        reply = Reply.unpack(b'{"id": "a", "result": null}')

        assert not reply.is_fault
        assert reply.result is None

    def test_pack_msgpack(self):
        reply = Reply.success("m", [1, 2, 3])
        decoded = Reply.unpack(reply.pack(MSGPACK_CONTENT_TYPE), MSGPACK_CONTENT_TYPE)

        assert decoded.result == [1, 2, 3]


class TestEvent:
    """Test Event and poll batches."""

    def test_global_event_has_null_handle(self):
        assert Event(None, "onError", ["msg", []]).to_dict()["handle"] is None

    def test_equality(self):
        assert Event(1, "onAlert", ["hi"]) == Event(1, "onAlert", ["hi"])
        assert Event(1, "onAlert", ["hi"]) != Event(2, "onAlert", ["hi"])

    def test_batch_preserves_order(self):
        events = [Event(1, "onLoadStarted"), Event(1, "onLoadFinished", ["success"])]
        data = pack_events(events)

        assert json.loads(data) == {
            "events": [
                {"handle": 1, "kind": "onLoadStarted", "payload": []},
                {"handle": 1, "kind": "onLoadFinished", "payload": ["success"]},
            ]
        }
        assert unpack_events(data) == events

    def test_empty_batch(self):
        assert unpack_events(pack_events([])) == []

    def test_unpack_requires_events_list(self):
        with pytest.raises(ValueError, match="events"):
            unpack_events(b'{"items": []}')

    def test_malformed_event(self):
        with pytest.raises(ValueError, match="Malformed event"):
            unpack_events(b'{"events": [{"handle": 1}]}')


class TestCodec:
    """Test encode/decode and content types."""

    def test_content_type_for(self):
        assert content_type_for("json") == JSON_CONTENT_TYPE
        assert content_type_for("msgpack") == MSGPACK_CONTENT_TYPE

    def test_unknown_wire_format(self):
        with pytest.raises(ValueError, match="Unknown wire format"):
            content_type_for("xml")

    def test_decode_empty(self):
        with pytest.raises(ValueError, match="Empty"):
            decode(b"")

    def test_decode_requires_bytes(self):
        with pytest.raises(ValueError, match="Expected bytes"):
            decode("text")

    def test_unserializable_values_become_strings(self):
        class Thing:
            def __str__(self):
                return "thing"

        assert decode(encode({"x": Thing()})) == {"x": "thing"}
        assert decode(encode({"x": Thing()}, MSGPACK_CONTENT_TYPE), MSGPACK_CONTENT_TYPE) == {"x": "thing"}


class TestSanitize:
    """Test value sanitization."""

    def test_nan_and_infinity_become_none(self):
        assert _sanitize([math.nan, math.inf, -math.inf, 1.5]) == [None, None, None, 1.5]

    def test_integer_overflow_clamped(self):
        assert _sanitize(2**70) == 2**63 - 1
        assert _sanitize(-(2**70)) == -(2**63)

    def test_keys_become_strings(self):
        assert _sanitize({1: "a", (2, 3): "b"}) == {"1": "a", "(2, 3)": "b"}

    def test_tuples_become_lists(self):
        assert _sanitize((1, (2, 3))) == [1, [2, 3]]

    def test_bools_untouched(self):
        assert _sanitize(True) is True
