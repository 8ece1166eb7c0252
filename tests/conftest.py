"""Pytest configuration for all tests."""

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import pytest_asyncio
from aiohttp import WSMsgType, web

from kernelbridge.wire import DATA_HEADER, STREAM_HEADER

TIMEOUT = 5.0


class FakeKernel:
    """In-process kernel server for testing.

    Serves the control socket at /socket and the side channel at /, on an
    ephemeral port. Frames the client sends over the socket, or POSTs as
    oversized frames, land in ``received``. Streams the client POSTs land in
    ``uploads`` with the frame from their header. Streams the client may GET
    are put in ``streams`` beforehand.
    """

    def __init__(self) -> None:
        self.app = web.Application()
        self.app.router.add_get("/socket", self._handle_socket)
        self.app.router.add_get("/", self._handle_get)
        self.app.router.add_post("/", self._handle_post)

        self.runner: web.AppRunner | None = None
        self.port: int | None = None
        self.ws: web.WebSocketResponse | None = None
        self.connected = asyncio.Event()

        self.received: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.uploads: asyncio.Queue[tuple[dict[str, Any], bytes]] = asyncio.Queue()
        self.posted_frames: list[dict[str, Any]] = []
        self.streams: dict[int, list[bytes]] = {}
        self.get_status = 200
        self.post_status = 200

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    async def start(self) -> None:
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "127.0.0.1", 0)
        await site.start()
        self.port = self.runner.addresses[0][1]

    async def stop(self) -> None:
        if self.ws is not None and not self.ws.closed:
            await self.ws.close()
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None

    async def __aenter__(self) -> "FakeKernel":
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.stop()

    async def send(
        self,
        body_type: str,
        payload: Any = None,
        *,
        future: int = 0,
        channel: int = 1,
        stream: int | None = None,
    ) -> None:
        """Send a frame, JSON-encoding the payload."""
        frame: dict[str, Any] = {
            "future": future,
            "channel": channel,
            "type": body_type,
            "payload": json.dumps(payload),
        }
        if stream is not None:
            frame["stream"] = stream
        await self.send_raw(json.dumps(frame))

    async def send_raw(self, data: str | bytes) -> None:
        await asyncio.wait_for(self.connected.wait(), TIMEOUT)
        if isinstance(data, bytes):
            await self.ws.send_bytes(data)
        else:
            await self.ws.send_str(data)

    async def receive(self) -> dict[str, Any]:
        """Next frame from the client."""
        return await asyncio.wait_for(self.received.get(), TIMEOUT)

    async def receive_upload(self) -> tuple[dict[str, Any], bytes]:
        """Next stream POSTed by the client, with its frame."""
        return await asyncio.wait_for(self.uploads.get(), TIMEOUT)

    async def open(self, code: str = "lambda channel: None", channel: int = 1) -> dict[str, Any]:
        """Open a channel and return the client's answer."""
        await self.send("open", code, channel=channel)
        return await self.receive()

    async def _handle_socket(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        self.ws = ws
        self.connected.set()

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                await self.received.put(json.loads(msg.data))

        return ws

    async def _handle_get(self, request: web.Request) -> web.StreamResponse:
        if self.get_status != 200:
            return web.Response(status=self.get_status)

        chunks = self.streams.pop(int(request.headers[STREAM_HEADER]))

        response = web.StreamResponse()
        await response.prepare(request)
        for chunk in chunks:
            await response.write(chunk)
        await response.write_eof()
        return response

    async def _handle_post(self, request: web.Request) -> web.Response:
        body = await request.read()
        data = request.headers.get(DATA_HEADER)

        if data is None:
            frame = json.loads(body)
            self.posted_frames.append(frame)
            await self.received.put(frame)
        else:
            await self.uploads.put((json.loads(data), body))

        return web.Response(status=self.post_status)


@pytest_asyncio.fixture
async def kernel() -> AsyncIterator[FakeKernel]:
    """A running fake kernel server."""
    async with FakeKernel() as server:
        yield server
