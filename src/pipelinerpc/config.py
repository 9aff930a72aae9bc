"""Pydantic configuration models for pipelinerpc.

These are only used at startup; wire messages and question state stay plain
dataclasses and slotted classes.
"""

from __future__ import annotations

from typing import Callable

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_MAX_SETTLED_QUESTIONS = 10_000


class RpcSessionConfig(BaseModel):
    """Configuration options for one connection's session.

    Attributes:
        max_settled_questions: How many settled questions each table keeps so
            later calls can still reference them. ``None`` keeps every one
            until the connection closes.
        on_send_error: Optional callback to rewrite error text before it is
            sent to the peer. Useful for redacting sensitive details.
    """

    model_config = ConfigDict(
        frozen=False,
        arbitrary_types_allowed=True,
    )

    max_settled_questions: int | None = Field(
        default=DEFAULT_MAX_SETTLED_QUESTIONS,
        gt=0,
        description="Settled questions kept per table",
    )
    on_send_error: Callable[[Exception], str | None] | None = None


class WebSocketServerConfig(BaseModel):
    """Configuration for the WebSocket RPC server.

    Attributes:
        host: Host to bind to
        port: Port to bind to; 0 picks a free one
        path: WebSocket endpoint path
        session: Options applied to every connection's session
    """

    model_config = ConfigDict(
        frozen=False,
        arbitrary_types_allowed=True,
    )

    host: str = Field(default="localhost", description="Host to bind to")
    port: int = Field(default=8080, ge=0, le=65535, description="Port to bind to")
    path: str = Field(default="/rpc", description="WebSocket endpoint path")
    session: RpcSessionConfig = Field(default_factory=RpcSessionConfig)

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("Path must start with '/'")
        return v


class ClientConfig(BaseModel):
    """Configuration for the WebSocket RPC client.

    Attributes:
        url: The RPC endpoint URL (ws:// or wss://)
        connect_timeout: Seconds to wait for the connection upgrade
        session: Options for the client's session
    """

    model_config = ConfigDict(
        frozen=False,
        arbitrary_types_allowed=True,
    )

    url: str = Field(..., description="RPC endpoint URL")
    connect_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Connection timeout in seconds",
    )
    session: RpcSessionConfig = Field(default_factory=RpcSessionConfig)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate URL format."""
        if not v:
            raise ValueError("URL cannot be empty")

        valid_schemes = ("ws://", "wss://")
        if not any(v.startswith(scheme) for scheme in valid_schemes):
            raise ValueError(
                f"URL must start with one of: {', '.join(valid_schemes)}"
            )
        return v
