"""Pydantic configuration models for the kernel bridge.

These are only used at startup. Frames on the hot path stay plain
dataclasses (see :mod:`kernelbridge.wire`).
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ClientConfig(BaseModel):
    """Configuration for a :class:`~kernelbridge.client.Client`.

    Attributes:
        url: Base URL of the kernel server (http:// or https://). The control
            socket lives at ``{url}/socket`` and the side channel at ``{url}/``.
        max_message_size: Frames longer than this many characters are POSTed
            through the side channel instead of the socket. ``None`` disables
            the redirect.
        heartbeat: Interval in seconds between WebSocket pings. ``None``
            disables pings.
        connect_timeout: Seconds allowed for the WebSocket handshake.
        read_size: Upper bound on chunk size when reading side-channel bodies.
    """

    model_config = ConfigDict(frozen=True)

    url: str = Field(..., description="Kernel server base URL")
    max_message_size: int | None = Field(
        default=None,
        gt=0,
        description="Largest frame sent over the socket",
    )
    heartbeat: float | None = Field(
        default=30.0,
        gt=0,
        description="WebSocket ping interval in seconds",
    )
    connect_timeout: float = Field(
        default=30.0,
        gt=0,
        description="WebSocket handshake timeout in seconds",
    )
    read_size: int = Field(
        default=8192,
        gt=0,
        description="Read size for side-channel bodies",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate URL format and drop any trailing slash."""
        if not v:
            raise ValueError("URL cannot be empty")

        valid_schemes = ("http://", "https://")
        if not v.startswith(valid_schemes):
            raise ValueError(
                f"URL must start with one of: {', '.join(valid_schemes)}"
            )
        return v.rstrip("/")

    @property
    def socket_url(self) -> str:
        """URL of the control WebSocket."""
        return f"{self.url}/socket"

    @property
    def side_channel_url(self) -> str:
        """URL of the side channel."""
        return f"{self.url}/"
