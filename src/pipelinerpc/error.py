"""Error taxonomy for pipelined RPC.

Every failure that can be reported over the wire is an ``RpcError``. The wire
only carries the error text, so the issuing side re-raises all of them as a
single ``RemoteError``.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Kinds of failure known to a session."""

    DECODE = "decode"
    UNKNOWN_QUESTION = "unknown_question"
    UNKNOWN_METHOD = "unknown_method"
    HANDLER = "handler"
    PARAM_RESOLUTION = "param_resolution"
    PROTOCOL_VIOLATION = "protocol_violation"
    REFERENCE_CYCLE = "reference_cycle"
    CONNECTION_CLOSED = "connection_closed"
    REMOTE = "remote"


class RpcError(Exception):
    """Base class for all RPC failures.

    Attributes:
        code: The kind of failure
        message: Human readable text, sent verbatim as the ``error`` field
    """

    code: ErrorCode = ErrorCode.HANDLER

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class DecodeError(RpcError):
    """A frame could not be decoded into a message.

    ``question_id`` is the id the frame named, when it named a usable one,
    otherwise 0.
    """

    code = ErrorCode.DECODE

    def __init__(self, message: str, question_id: int = 0) -> None:
        super().__init__(message)
        self.question_id = question_id


class UnknownQuestion(RpcError):
    """A question id that was never registered on this connection."""

    code = ErrorCode.UNKNOWN_QUESTION

    def __init__(self, question_id: int) -> None:
        super().__init__(f"Reference to unknown call #{question_id}")
        self.question_id = question_id


class UnknownMethod(RpcError):
    code = ErrorCode.UNKNOWN_METHOD

    def __init__(self, method: str) -> None:
        super().__init__(f'Unknown method "{method}"')
        self.method = method


class HandlerError(RpcError):
    """A method handler raised."""

    code = ErrorCode.HANDLER


class ParamResolutionError(RpcError):
    """Resolving a referenced parameter failed upstream."""

    code = ErrorCode.PARAM_RESOLUTION


class ProtocolViolation(RpcError):
    """The peer or local code broke a protocol rule (e.g. double resolve)."""

    code = ErrorCode.PROTOCOL_VIOLATION


class ReferenceCycle(RpcError):
    code = ErrorCode.REFERENCE_CYCLE

    def __init__(self, question_id: int, target_id: int) -> None:
        super().__init__(
            f"Call #{question_id} references call #{target_id}, "
            "which depends on it"
        )
        self.question_id = question_id
        self.target_id = target_id


class ConnectionClosed(RpcError):
    code = ErrorCode.CONNECTION_CLOSED

    def __init__(self, message: str = "Connection closed") -> None:
        super().__init__(message)


class RemoteError(RpcError):
    """A failure reported by the peer in an ``exception`` frame.

    The originating kind is not transmitted, only the text.
    """

    code = ErrorCode.REMOTE
