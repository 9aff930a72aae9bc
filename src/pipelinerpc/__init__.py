"""pipelinerpc - promise-pipelined RPC over a single bidirectional connection.

A caller may issue a call whose params reference the not-yet-available result
of an earlier call; the resolving peer chains the execution itself instead of
forcing the caller to round-trip twice.
"""

from pipelinerpc.config import (
    ClientConfig,
    RpcSessionConfig,
    WebSocketServerConfig,
)
from pipelinerpc.dispatcher import MethodDispatcher
from pipelinerpc.error import (
    ConnectionClosed,
    DecodeError,
    ErrorCode,
    HandlerError,
    ParamResolutionError,
    ProtocolViolation,
    ReferenceCycle,
    RemoteError,
    RpcError,
    UnknownMethod,
    UnknownQuestion,
)
from pipelinerpc.ids import IdAllocator
from pipelinerpc.questions import Question, QuestionState, QuestionTable
from pipelinerpc.resolver import ParameterResolver
from pipelinerpc.session import RpcSession
from pipelinerpc.types import RpcTarget, RpcTransport
from pipelinerpc.wire import (
    LiteralParam,
    Reference,
    WireCall,
    WireException,
    WireReturn,
    parse_wire_message,
    serialize_wire_message,
)
from pipelinerpc.ws_session import (
    WebSocketRpcClient,
    WebSocketRpcServer,
    WebSocketTransport,
    handle_websocket_rpc,
)

__version__ = "0.1.0"

__all__ = [
    # Core types
    "RpcTarget",
    "RpcTransport",
    "IdAllocator",
    # Errors
    "RpcError",
    "ErrorCode",
    "DecodeError",
    "UnknownQuestion",
    "UnknownMethod",
    "HandlerError",
    "ParamResolutionError",
    "ProtocolViolation",
    "ReferenceCycle",
    "ConnectionClosed",
    "RemoteError",
    # Configuration (Pydantic models)
    "ClientConfig",
    "RpcSessionConfig",
    "WebSocketServerConfig",
    # Wire format
    "LiteralParam",
    "Reference",
    "WireCall",
    "WireReturn",
    "WireException",
    "parse_wire_message",
    "serialize_wire_message",
    # Pipelining core
    "Question",
    "QuestionState",
    "QuestionTable",
    "ParameterResolver",
    "MethodDispatcher",
    "RpcSession",
    # WebSocket
    "WebSocketTransport",
    "WebSocketRpcClient",
    "WebSocketRpcServer",
    "handle_websocket_rpc",
]
