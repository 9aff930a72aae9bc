"""Wire protocol for pipelined RPC.

One JSON object per frame, in one of three shapes::

    {"type": "call", "questionId": 1, "method": "makeGreeting", "params": ["Alice"]}
    {"type": "return", "answerId": 1, "result": "Hello, Alice!"}
    {"type": "exception", "answerId": 1, "error": "Unknown method \"foo\""}

A top-level element of ``params`` shaped ``{"resultOf": id}`` is a reference
to the eventual result of another call on the same connection. Params are
decoded once, here, into ``LiteralParam | Reference`` so nothing further in
the stack has to sniff value shapes. References nested inside composite
values are not recognised and travel as plain literals.

``answerId`` 0 is reserved for failures that belong to no question.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Final

from pipelinerpc.error import DecodeError

CONNECTION_ANSWER_ID: Final[int] = 0
REFERENCE_KEY: Final[str] = "resultOf"
INVALID_JSON: Final[str] = "Invalid JSON"


def is_int_not_bool(x: object) -> bool:
    """Check if x is an int but not a bool.

    ``True`` must never alias question id 1.
    """
    return isinstance(x, int) and not isinstance(x, bool)


def is_question_id(x: object) -> bool:
    return is_int_not_bool(x) and x > 0


# Params


@dataclass(frozen=True, slots=True)
class LiteralParam:
    """A parameter passed through as-is."""

    value: Any

    def to_json(self) -> Any:
        return self.value


@dataclass(frozen=True, slots=True)
class Reference:
    """A parameter standing for the result of question ``question_id``."""

    question_id: int

    def to_json(self) -> dict[str, int]:
        return {REFERENCE_KEY: self.question_id}


Param = LiteralParam | Reference


def param_from_json(value: Any) -> Param:
    """Decode one top-level element of ``params``."""
    if isinstance(value, dict) and REFERENCE_KEY in value:
        target = value[REFERENCE_KEY]
        if not is_question_id(target):
            msg = f"Reference target must be a positive int, got {target!r}"
            raise ValueError(msg)
        return Reference(target)
    return LiteralParam(value)


# Messages


@dataclass(frozen=True, slots=True)
class WireCall:
    """Call message: ask the peer to run ``method`` with ``params``."""

    question_id: int
    method: str
    params: tuple[Param, ...] = ()

    def to_json(self) -> dict[str, Any]:
        return {
            "type": "call",
            "questionId": self.question_id,
            "method": self.method,
            "params": [p.to_json() for p in self.params],
        }


@dataclass(frozen=True, slots=True)
class WireReturn:
    """Return message: the call ``answer_id`` succeeded with ``result``."""

    answer_id: int
    result: Any

    def to_json(self) -> dict[str, Any]:
        return {"type": "return", "answerId": self.answer_id, "result": self.result}


@dataclass(frozen=True, slots=True)
class WireException:
    """Exception message: the call ``answer_id`` failed with ``error`` text."""

    answer_id: int
    error: str

    def to_json(self) -> dict[str, Any]:
        return {"type": "exception", "answerId": self.answer_id, "error": self.error}


WireMessage = WireCall | WireReturn | WireException


def _reject_constants(s: str) -> None:
    msg = f"Non-standard JSON constant not allowed: {s}"
    raise ValueError(msg)


def _invalid(reason: str, question_id: int = CONNECTION_ANSWER_ID) -> DecodeError:
    return DecodeError(f"Invalid message: {reason}", question_id)


def parse_wire_message(data: str | bytes) -> WireMessage:  # noqa: C901
    """Parse one frame.

    Raises:
        DecodeError: ``"Invalid JSON"`` when the frame is not JSON, or
            ``"Invalid message: ..."`` when it is JSON of the wrong shape. The
            error's ``question_id`` is set when the frame named a usable
            question id, otherwise it is 0.
    """
    try:
        obj = json.loads(data, parse_constant=_reject_constants)
    except (ValueError, RecursionError) as e:
        raise DecodeError(INVALID_JSON) from e

    if not isinstance(obj, dict):
        raise _invalid("frame must be a JSON object")

    msg_type = obj.get("type")
    match msg_type:
        case "call":
            question_id = obj.get("questionId")
            if not is_question_id(question_id):
                raise _invalid(f"questionId must be a positive int, got {question_id!r}")
            method = obj.get("method")
            if not isinstance(method, str):
                raise _invalid("method must be a string", question_id)
            params = obj.get("params", [])
            if not isinstance(params, list):
                raise _invalid("params must be a list", question_id)
            try:
                decoded = tuple(param_from_json(p) for p in params)
            except ValueError as e:
                raise _invalid(str(e), question_id) from e
            return WireCall(question_id, method, decoded)

        case "return":
            answer_id = obj.get("answerId")
            if not is_question_id(answer_id):
                raise _invalid(f"answerId must be a positive int, got {answer_id!r}")
            return WireReturn(answer_id, obj.get("result"))

        case "exception":
            answer_id = obj.get("answerId")
            if not is_int_not_bool(answer_id) or answer_id < 0:
                raise _invalid(f"answerId must be a non-negative int, got {answer_id!r}")
            error = obj.get("error")
            if not isinstance(error, str):
                error = str(error)
            return WireException(answer_id, error)

        case _:
            raise _invalid(f"unknown message type {msg_type!r}")


def serialize_wire_message(msg: WireMessage) -> str:
    """Serialize one message to a JSON frame.

    Uses allow_nan=False so only standard JSON is ever emitted.

    Raises:
        ValueError, TypeError: If the message carries a value JSON cannot hold.
    """
    return json.dumps(msg.to_json(), allow_nan=False)
