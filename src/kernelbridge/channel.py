"""Channels multiplex kernel sessions over one client connection."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from kernelbridge.error import StateError
from kernelbridge.types import MetaGenerator
from kernelbridge.wire import CALL, ECHO, PIPE

if TYPE_CHECKING:
    from collections.abc import AsyncIterable

    from kernelbridge.client import Client

logger = logging.getLogger(__name__)

# Values that cannot carry methods and therefore cannot be handlers
_PRIMITIVES = (str, bytes, bytearray, int, float, complex)


class Channel:
    """Represents a communication channel between a frontend client and a
    kernel server.

    Channels are created by the client when the kernel opens a session. The
    kernel code receives the channel and usually assigns a handler to it:

        lambda channel: setattr(channel, "handler", MyHandler())

    Public methods of the handler (or, for a mapping, its callable values)
    can then be called by the kernel by name.
    """

    __slots__ = ('_client', '_key', '_handler', '_opening')

    def __init__(self, client: Client, key: int) -> None:
        # Registered first so inbound requests for this key find the channel
        client._channels[key] = self

        self._client: Client | None = client
        self._key = key
        self._handler: Any | None = None
        self._opening: Any | None = None

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<Channel {self._key} {state}>"

    @property
    def key(self) -> int:
        """The session key this channel is bound to."""
        return self._key

    @property
    def closed(self) -> bool:
        """Whether this channel is closed."""
        return self._client is None

    def close(self) -> None:
        """Closes this channel.

        Under normal circumstances, this method should not be called. It should
        only be called for debugging or testing purposes.

        A closed channel cannot be used for anything. There is no reason to
        keep references to it.

        Raises:
            StateError: If this channel is already closed
        """
        if self._client is None:
            raise StateError("Channel already closed")

        if self._client._channels.get(self._key) is self:
            del self._client._channels[self._key]

        self._client = None

    @property
    def handler(self) -> Any | None:
        """The object that handles calls from the kernel."""
        return self._handler

    @handler.setter
    def handler(self, value: Any) -> None:
        if value is None:
            msg = "Handler cannot be None"
            raise ValueError(msg)

        if isinstance(value, _PRIMITIVES):
            msg = f"Handler must be an object, got {type(value).__name__}"
            raise TypeError(msg)

        self._handler = value

    def _method(self, name: str) -> Any:
        """Resolve a handler method by name.

        Calling the method is up to the caller, and so is awaiting its result.

        Raises:
            ValueError: If no handler is set
            AttributeError: If the name is private or not a callable
        """
        if self._handler is None:
            msg = "Channel does not have handler"
            raise ValueError(msg)

        if name.startswith("_"):
            msg = f"Handler does not have method {name}"
            raise AttributeError(msg)

        if isinstance(self._handler, Mapping):
            method = self._handler.get(name)
        else:
            method = getattr(self._handler, name, None)

        if not callable(method):
            msg = f"Handler does not have method {name}"
            raise AttributeError(msg)

        return method

    async def echo(self, *args: Any) -> list[Any]:
        """Sends arguments to the kernel and receives them back.

        Under normal circumstances, this method should not be called. It should
        only be called for debugging or testing purposes.

        It is particularly useful to verify whether the arguments are robust to
        JSON serialization and deserialization.

        Args:
            *args: The arguments

        Returns:
            The same arguments as a list
        """
        return await self._send(ECHO, list(args))

    async def pipe(self, stream: AsyncIterable[bytes]) -> MetaGenerator:
        """Sends a byte stream to the kernel and receives it back.

        Under normal circumstances, this method should not be called. It should
        only be called for debugging or testing purposes.

        It is particularly useful to verify whether the bytes are robust to GET
        and POST streaming.

        Args:
            stream: An async iterable of bytes

        Returns:
            The same bytes as a meta generator
        """
        return await self._send(PIPE, None, stream)

    async def call(self, name: str, *args: Any) -> Any:
        """Makes a call to the kernel.

        Args:
            name: The name of a kernel handler method
            *args: The arguments of the call

        Returns:
            The return value of the method
        """
        return await self._send(CALL, {"name": name, "args": list(args)})

    async def call_with_stream(self, name: str, stream: AsyncIterable[bytes], *args: Any) -> Any:
        """Makes a call to the kernel with a byte stream as its first argument.

        Args:
            name: The name of a kernel handler method
            stream: The first argument of the call, an async iterable of bytes
            *args: The other arguments of the call

        Returns:
            The return value of the method
        """
        return await self._send(CALL, {"name": name, "args": list(args)}, stream)

    async def _send(
        self,
        body_type: str,
        input: Any,
        stream: AsyncIterable[bytes] | None = None,
    ) -> Any:
        if self._client is None:
            raise StateError("Channel is closed")

        future = await self._client._send(body_type, self._key, input, stream)

        result = await future

        if self._client is None:
            logger.debug("Channel %d closed while waiting for %s", self._key, body_type)
            raise StateError("Channel was closed during the call")

        return result
