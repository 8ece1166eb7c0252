"""HTTP side channel for bulk byte transfer.

Large payloads do not travel over the control socket. Instead:

- the kernel announces a stream in a frame, and the client fetches it with a
  GET carrying the stream identifier;
- the client pushes a stream with a chunked POST whose ``x-bridge-data``
  header carries the frame the stream belongs to. The terminating zero-length
  chunk of the chunked encoding marks the end of the stream.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import TYPE_CHECKING

import aiohttp

from kernelbridge.types import BytesLike, MetaGenerator
from kernelbridge.wire import DATA_HEADER, STREAM_HEADER, Message, serialize_message

if TYPE_CHECKING:
    from kernelbridge.config import ClientConfig

logger = logging.getLogger(__name__)


class SideChannel:
    """GET/POST helpers bound to one client's HTTP session."""

    __slots__ = ('_http', '_url', '_read_size')

    def __init__(self, http: aiohttp.ClientSession, config: ClientConfig) -> None:
        """Initialize the side channel.

        Args:
            http: The session shared with the control socket
            config: The client configuration
        """
        self._http = http
        self._url = config.side_channel_url
        self._read_size = config.read_size

    async def get(self, stream_id: int) -> MetaGenerator:
        """Open a kernel stream.

        Args:
            stream_id: The identifier announced by the kernel

        Returns:
            A meta generator over the response body

        Raises:
            aiohttp.ClientResponseError: If the kernel answers with an error status
        """
        response = await self._http.get(self._url, headers={STREAM_HEADER: str(stream_id)})

        if not response.ok:
            response.release()
            response.raise_for_status()

        return MetaGenerator(self._read(response), response.release)

    async def post(self, message: Message, stream: AsyncIterable[BytesLike]) -> None:
        """Push a local stream to the kernel.

        Args:
            message: The frame the stream belongs to
            stream: An async iterable of bytes

        Raises:
            aiohttp.ClientResponseError: If the kernel answers with an error status
            Exception: Whatever the stream raises while it is drained
        """
        headers = {DATA_HEADER: serialize_message(message)}

        async with self._http.post(self._url, data=self._drain(stream), headers=headers) as response:
            response.raise_for_status()

    async def post_message(self, message: Message) -> None:
        """Send a frame that is too large for the control socket.

        Raises:
            aiohttp.ClientResponseError: If the kernel answers with an error status
        """
        data = serialize_message(message).encode("utf-8")
        headers = {"Content-Type": "application/json"}

        async with self._http.post(self._url, data=data, headers=headers) as response:
            response.raise_for_status()

    async def _read(self, response: aiohttp.ClientResponse) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.content.iter_chunked(self._read_size):
                yield chunk
        finally:
            response.release()

    async def _drain(self, stream: AsyncIterable[BytesLike]) -> AsyncIterator[bytes]:
        count = 0
        try:
            async for chunk in stream:
                if not isinstance(chunk, (bytes, bytearray, memoryview)):
                    msg = f"Stream chunks must be bytes-like, got {type(chunk).__name__}"
                    raise TypeError(msg)
                if not chunk:
                    # An empty chunk would read as the end marker
                    continue
                count += 1
                # Each chunk is handed to the writer before the next pull
                yield bytes(chunk)
        except Exception:
            logger.exception("Stream failed after %d chunks", count)
            raise
