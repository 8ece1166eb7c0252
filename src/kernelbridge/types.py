"""Byte stream types shared by the client and the side channel."""

from __future__ import annotations

import inspect
from collections.abc import AsyncIterable, AsyncIterator, Callable
from typing import Any

BytesLike = bytes | bytearray | memoryview

DEFAULT_LIMIT = 8192


def is_chunk_sequence(value: Any) -> bool:
    """Check if value can be consumed as a stream of byte chunks.

    Strings and bytes are not streams even though some are iterable.
    """
    return isinstance(value, AsyncIterable)


class MetaGenerator:
    """Provides generators to read a kernel stream.

    Iterating a MetaGenerator yields the chunks exactly as they arrived. The
    :meth:`join`, :meth:`by_limit` and :meth:`by_separator` helpers re-chunk
    the same stream instead. A stream can be consumed only once.

    Usage:
        async for line in stream.by_separator():
            print(line.decode())
    """

    __slots__ = ('_iterator', '_release')

    def __init__(
        self,
        stream: AsyncIterable[BytesLike],
        release: Callable[[], Any] | None = None,
    ) -> None:
        self._iterator = aiter(stream)
        self._release = release

    def __aiter__(self) -> AsyncIterator[BytesLike]:
        return self

    async def __anext__(self) -> BytesLike:
        return await anext(self._iterator)

    async def aclose(self) -> None:
        """Stop reading and release whatever backs the stream."""
        close = getattr(self._iterator, "aclose", None)
        try:
            if close is not None:
                await close()
        finally:
            # An unstarted generator skips its own cleanup when closed
            if self._release is not None:
                released = self._release()
                if inspect.isawaitable(released):
                    await released

    async def join(self) -> bytes:
        """Convenience method that joins all chunks into one.

        Returns:
            The joined stream chunks
        """
        limit = 0
        buffer = bytearray()
        size = 0

        async for chunk in self:
            new_size = size + len(chunk)

            if new_size > limit:
                limit = _next_power_of_two(new_size)
                new_buffer = bytearray(limit)
                new_buffer[:size] = memoryview(buffer)[:size]
                buffer = new_buffer

            buffer[size:new_size] = chunk
            size = new_size

        return bytes(memoryview(buffer)[:size])

    async def by_limit(self, limit: int = DEFAULT_LIMIT) -> AsyncIterator[bytes]:
        """Provides chunks with maximum size limit.

        Every chunk has exactly ``limit`` bytes except the last one, which
        may be shorter.

        Args:
            limit: The size limit

        Yields:
            The stream chunks

        Raises:
            TypeError: If the limit is not an integer
            ValueError: If the limit is not positive
        """
        if not isinstance(limit, int) or isinstance(limit, bool):
            msg = "Limit must be an integer"
            raise TypeError(msg)

        if limit <= 0:
            msg = "Limit must be positive"
            raise ValueError(msg)

        buffer = bytearray(limit)

        size = 0

        async for data in self:
            chunk = memoryview(data)
            length = len(chunk)

            begin = 0
            end = limit - size

            if length > end:
                buffer[size:] = chunk[begin:end]
                yield bytes(buffer)
                size = 0

                begin = end
                end += limit

                # Full chunks inside the input skip the scratch buffer.
                while end <= length:
                    yield bytes(chunk[begin:end])

                    begin = end
                    end += limit

                chunk = chunk[begin:]
                length = len(chunk)

            buffer[size:size + length] = chunk
            size += length

        if size > 0:
            yield bytes(memoryview(buffer)[:size])

    async def by_separator(self, separator: str | BytesLike = "\n") -> AsyncIterator[bytes]:
        """Provides chunks according to a separator.

        Each chunk ends with the separator, except possibly the last one.

        Args:
            separator: The split separator. If a string, it is encoded as UTF-8

        Yields:
            The stream chunks

        Raises:
            TypeError: If the separator is not a string or bytes-like
            ValueError: If the separator is empty
        """
        separator = _clean(separator)

        if not separator:
            msg = "Separator cannot be empty"
            raise ValueError(msg)

        width = len(separator)

        limit = 0
        buffer = bytearray()
        size = 0
        offset = 0

        async for chunk in self:
            new_size = size + len(chunk)

            if new_size > limit:
                limit = _next_power_of_two(new_size)
                new_buffer = bytearray(limit)
                new_buffer[:size] = memoryview(buffer)[:size]
                buffer = new_buffer

            buffer[size:new_size] = chunk
            size = new_size

            shift = 0

            while offset <= size - width:
                index = buffer.find(separator, offset, size)

                if index < 0:
                    offset = size - width + 1
                    break

                offset = index + width
                yield bytes(memoryview(buffer)[shift:offset])
                shift = offset

            if shift > 0:
                buffer[:size - shift] = buffer[shift:size]
                size -= shift
                offset -= shift

        if size > 0:
            yield bytes(memoryview(buffer)[:size])


def _next_power_of_two(size: int) -> int:
    return 1 << (size - 1).bit_length()


def _clean(separator: Any) -> bytes:
    if isinstance(separator, str):
        return separator.encode("utf-8")

    if isinstance(separator, (bytes, bytearray, memoryview)):
        return bytes(separator)

    msg = "Separator must be a string or bytes-like"
    raise TypeError(msg)
