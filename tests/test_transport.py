"""Tests for the HTTP side channel."""

import aiohttp
import pytest

from kernelbridge.config import ClientConfig
from kernelbridge.transport import SideChannel
from kernelbridge.wire import Message


async def _chunks(*parts):
    for part in parts:
        yield part


async def _failing(*parts):
    for part in parts:
        yield part
    raise RuntimeError("source failed")


def side_channel(url: str = "http://127.0.0.1:1", http=None) -> SideChannel:
    return SideChannel(http, ClientConfig(url=url, read_size=2))


@pytest.mark.asyncio
class TestDrain:
    """Tests for the POST body generator."""

    async def test_chunks_are_bytes(self):
        drained = [
            chunk
            async for chunk in side_channel()._drain(
                _chunks(b"a", bytearray(b"b"), memoryview(b"c"))
            )
        ]
        assert drained == [b"a", b"b", b"c"]
        assert all(type(chunk) is bytes for chunk in drained)

    async def test_empty_chunks_are_skipped(self):
        drained = [chunk async for chunk in side_channel()._drain(_chunks(b"", b"a", b""))]
        assert drained == [b"a"]

    async def test_non_bytes_chunk(self):
        with pytest.raises(TypeError, match="Stream chunks must be bytes-like, got str"):
            async for _ in side_channel()._drain(_chunks(b"a", "b")):
                pass

    async def test_failure_after_chunks(self):
        """Chunks pulled before a failure are still handed over."""
        drained = []

        with pytest.raises(RuntimeError, match="source failed"):
            async for chunk in side_channel()._drain(_failing(b"a", b"b")):
                drained.append(chunk)

        assert drained == [b"a", b"b"]


@pytest.mark.asyncio
class TestSideChannel:
    """Tests against a fake kernel server."""

    async def test_get(self, kernel):
        kernel.streams[4] = [b"hello ", b"world"]

        async with aiohttp.ClientSession() as http:
            stream = await side_channel(kernel.url, http).get(4)
            assert await stream.join() == b"hello world"

    async def test_get_respects_read_size(self, kernel):
        kernel.streams[4] = [b"abcdef"]

        async with aiohttp.ClientSession() as http:
            stream = await side_channel(kernel.url, http).get(4)
            chunks = [chunk async for chunk in stream]

        assert b"".join(chunks) == b"abcdef"
        assert all(len(chunk) <= 2 for chunk in chunks)

    async def test_get_error_status(self, kernel):
        kernel.get_status = 404

        async with aiohttp.ClientSession() as http:
            with pytest.raises(aiohttp.ClientResponseError) as exc_info:
                await side_channel(kernel.url, http).get(4)

        assert exc_info.value.status == 404

    async def test_post(self, kernel):
        message = Message(2, 1, "call", '{"name": "save", "args": []}')

        async with aiohttp.ClientSession() as http:
            await side_channel(kernel.url, http).post(message, _chunks(b"ab", b"cd"))

        frame, body = await kernel.receive_upload()
        assert frame == message.to_json()
        assert body == b"abcd"

    async def test_post_error_status(self, kernel):
        kernel.post_status = 500
        message = Message(2, 1, "pipe", "null")

        async with aiohttp.ClientSession() as http:
            with pytest.raises(aiohttp.ClientResponseError):
                await side_channel(kernel.url, http).post(message, _chunks(b"ab"))

    async def test_post_message(self, kernel):
        message = Message(2, 1, "result", '"' + "x" * 100 + '"')

        async with aiohttp.ClientSession() as http:
            await side_channel(kernel.url, http).post_message(message)

        assert await kernel.receive() == message.to_json()
        assert kernel.posted_frames == [message.to_json()]
