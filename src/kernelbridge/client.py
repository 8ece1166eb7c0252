"""Connection engine for the kernel bridge.

A :class:`Client` owns one control WebSocket to the kernel server and the HTTP
side channel next to it. It follows a simple pattern:

1. A single read loop receives every frame from the socket
2. Responses (``result``, ``exception``, ``closed``) settle the future stored
   under the frame's correlation key
3. Requests (``open``, ``close``, ``echo``, ``pipe``, ``call``) are handled in
   their own tasks, so a slow handler never blocks the socket, and each one is
   answered with exactly one response frame

Any frame that does not follow the protocol closes the connection. Closing
cancels every pending future, after which sends fail with ``StateError``.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from collections.abc import AsyncIterable, Coroutine
from typing import Any, Self

import aiohttp

from kernelbridge import wire
from kernelbridge.channel import Channel
from kernelbridge.config import ClientConfig
from kernelbridge.error import KernelError, ProtocolError, StateError
from kernelbridge.evaluator import CodeEvaluator, PythonEvaluator
from kernelbridge.futures import Future, create_future
from kernelbridge.registry import DISCONNECT_REASON, Registry
from kernelbridge.transport import SideChannel
from kernelbridge.types import BytesLike, is_chunk_sequence
from kernelbridge.wire import Message, encode_payload, parse_message, serialize_message

logger = logging.getLogger(__name__)


class ConnectionState(enum.Enum):
    """Lifecycle of a client. Transitions only move forward."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class Client:
    """A frontend client connected to one kernel server.

    The client starts connecting as soon as it is constructed, so it must be
    created while an event loop is running.

    Example:
        ```python
        async with Client("http://localhost:8889") as client:
            await client.disconnection
        ```
    """

    def __init__(
        self,
        config: ClientConfig | str,
        evaluator: CodeEvaluator | None = None,
    ) -> None:
        """Initialize the client and start connecting.

        Args:
            config: The client configuration, or just the kernel server URL
            evaluator: Evaluates the code sent with ``open`` requests
        """
        if isinstance(config, str):
            config = ClientConfig(url=config)

        self.config = config
        self._evaluator = evaluator or PythonEvaluator()

        self._state = ConnectionState.CONNECTING
        self._registry = Registry()
        self._channels: dict[int, Channel] = {}

        self._http: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._side_channel: SideChannel | None = None
        self._read_loop_task: asyncio.Task[None] | None = None

        # Request handlers and side-channel transfers running in background
        self._pending_tasks: set[asyncio.Task[Any]] = set()

        loop = asyncio.get_running_loop()
        self._disconnection: asyncio.Future[None] = loop.create_future()
        self._connection = loop.create_task(self._connect())
        self._connection.add_done_callback(self._on_connection_done)

    async def __aenter__(self) -> Self:
        """Wait for the connection."""
        await self._connection
        return self

    async def __aexit__(self, *args: object) -> None:
        """Disconnect from the server."""
        await self.close()

    def __repr__(self) -> str:
        return f"<Client {self.config.url} {self._state.value}>"

    @property
    def state(self) -> ConnectionState:
        """The connection state."""
        return self._state

    @property
    def is_open(self) -> bool:
        """Whether the client can send messages."""
        return self._state is ConnectionState.OPEN

    @property
    def connection(self) -> asyncio.Task[aiohttp.ClientWebSocketResponse]:
        """Resolves with the socket once connected.

        Raises ``StateError`` if the client could not connect.
        """
        return self._connection

    @property
    def disconnection(self) -> asyncio.Future[None]:
        """Resolves once the client is closed and its resources released."""
        return self._disconnection

    def get_stats(self) -> dict[str, int]:
        """Get statistics about the client.

        Returns:
            Dict with 'futures', 'channels' and 'tasks' counts
        """
        return {
            "futures": len(self._registry),
            "channels": len(self._channels),
            "tasks": len(self._pending_tasks),
        }

    async def close(self) -> None:
        """Close the connection and wait for the teardown to finish."""
        if self._state is ConnectionState.CONNECTING:
            await asyncio.wait([self._connection])

        if self._ws is not None and not self._ws.closed:
            await self._ws.close()

        await self._disconnection

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    async def _connect(self) -> aiohttp.ClientWebSocketResponse:
        self._http = aiohttp.ClientSession()

        try:
            ws = await asyncio.wait_for(
                self._http.ws_connect(self.config.socket_url, heartbeat=self.config.heartbeat),
                timeout=self.config.connect_timeout,
            )
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            logger.debug("Could not connect to %s: %s", self.config.socket_url, e)
            await self._shutdown()
            raise StateError("Client could not connect") from e
        except asyncio.CancelledError:
            await self._shutdown()
            raise

        self._ws = ws
        self._side_channel = SideChannel(self._http, self.config)
        self._state = ConnectionState.OPEN

        logger.info("Connected to %s", self.config.socket_url)

        self._read_loop_task = asyncio.create_task(self._read_loop(ws))

        return ws

    def _on_connection_done(self, task: asyncio.Task[Any]) -> None:
        # Retrieve the failure so nobody gets "exception was never retrieved"
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Connection task failed: %r", task.exception())

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Main message processing loop.

        Only responses are handled inline. Requests get their own task, because
        a handler may be waiting for a response this loop has yet to read.
        """
        try:
            async for msg in ws:
                if msg.type != aiohttp.WSMsgType.TEXT:
                    logger.error("Received unexpected message type %s", msg.type.name)
                    break

                try:
                    self._dispatch(parse_message(msg.data))
                except Exception:
                    logger.exception("Closing connection after invalid frame")
                    break
        finally:
            await self._shutdown()

    async def _shutdown(self) -> None:
        if self._state is ConnectionState.CLOSED:
            return

        self._state = ConnectionState.CLOSED
        self._registry.clear(DISCONNECT_REASON)

        if self._ws is not None:
            await self._ws.close()
        if self._http is not None:
            await self._http.close()

        logger.info("Disconnected from %s", self.config.url)

        if not self._disconnection.done():
            self._disconnection.set_result(None)

    def _require_open(self) -> None:
        if self._state is not ConnectionState.OPEN:
            raise StateError("Client is not connected")

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._pending_tasks.add(task)
        task.add_done_callback(self._pending_tasks.discard)
        return task

    # -------------------------------------------------------------------------
    # Sending messages
    # -------------------------------------------------------------------------

    async def _send(
        self,
        body_type: str,
        channel_key: int,
        input: Any = None,
        stream: AsyncIterable[BytesLike] | None = None,
    ) -> Future:
        """Send a request to the kernel and return the future of its response.

        The returned future settles when the response arrives; this method does
        not wait for it.

        Args:
            body_type: The request type
            channel_key: The session key of the target channel
            input: A JSON-serializable value
            stream: An optional async iterable of bytes, sent through the side
                channel

        Raises:
            StateError: If the client is not connected
            TypeError: If the stream is not an async iterable or the input is
                not JSON-serializable
        """
        if self._state is ConnectionState.CONNECTING:
            await asyncio.wait([self._connection])

        self._require_open()

        if stream is not None and not is_chunk_sequence(stream):
            msg = f"Stream must be an async iterable, got {type(stream).__name__}"
            raise TypeError(msg)

        payload = encode_payload(input)

        future = create_future()
        key = self._registry.store(future)

        message = Message(key, channel_key, body_type, payload)

        if stream is None:
            try:
                await self._transmit(message)
            except BaseException:
                self._discard(key, future)
                raise
        else:
            self._spawn(self._push(key, future, message, stream))

        return future

    def _discard(self, key: int, future: Future) -> None:
        # The key may already serve another request once a response freed it
        if self._registry.get(key) is future:
            self._registry.retrieve(key)

    async def _transmit(self, message: Message) -> None:
        self._require_open()

        data = serialize_message(message)
        limit = self.config.max_message_size

        if limit is not None and len(data) > limit:
            await self._side_channel.post_message(message)
        else:
            await self._ws.send_str(data)

    async def _post(self, message: Message, stream: AsyncIterable[BytesLike]) -> None:
        self._require_open()

        await self._side_channel.post(message, stream)

    async def _push(
        self,
        key: int,
        future: Future,
        message: Message,
        stream: AsyncIterable[BytesLike],
    ) -> None:
        try:
            await self._post(message, stream)
        except Exception as e:
            # A rejected upload never gets a response from the kernel
            self._discard(key, future)
            future.set_exception(e)

    # -------------------------------------------------------------------------
    # Message handling
    # -------------------------------------------------------------------------

    def _dispatch(self, message: Message) -> None:
        """Route one inbound frame.

        Payloads are decoded here, before anything else happens, so a frame
        with invalid payload JSON closes the connection like any other
        malformed frame.

        Raises:
            KeyError: If a response does not match a pending request
            ValueError: If the payload is not valid JSON
        """
        value = message.decode()

        if not message.is_response:
            self._spawn(self._serve(message, value))
            return

        future = self._registry.retrieve(message.future)

        match message.type:
            case wire.RESULT:
                if message.stream is None:
                    future.set_result(value)
                else:
                    self._spawn(self._resolve_stream(future, message.stream))

            case wire.EXCEPTION:
                future.set_exception(KernelError(value))

            case wire.CLOSED:
                future.set_exception(StateError("Kernel channel is closed"))

    async def _resolve_stream(self, future: Future, stream_id: int) -> None:
        try:
            stream = await self._side_channel.get(stream_id)
        except Exception as e:
            future.set_exception(e)
        else:
            future.set_result(stream)

    async def _serve(self, message: Message, input: Any) -> None:
        try:
            body_type, output = await self._handle(message, input)
        except Exception as e:
            logger.exception("Could not handle %s request", message.type)
            body_type, output = wire.EXCEPTION, _describe(e)

        try:
            await self._reply(message, body_type, output)
        except StateError:
            logger.warning("Could not answer %s request: client disconnected", message.type)
        except Exception:
            logger.exception("Could not answer %s request", message.type)

    async def _handle(self, message: Message, input: Any) -> tuple[str, Any]:
        match message.type:
            case wire.OPEN:
                return wire.RESULT, await self._open(message.channel, input)

            case wire.CLOSE:
                channel = self._channels.get(message.channel)
                if channel is not None:
                    channel.close()
                return wire.RESULT, None

        channel = self._channels.get(message.channel)

        if channel is None:
            logger.warning(
                "Received %s request for closed channel %d", message.type, message.channel
            )
            return wire.CLOSED, None

        match message.type:
            case wire.ECHO:
                return wire.RESULT, input

            case wire.PIPE:
                if message.stream is None:
                    raise ProtocolError("Pipe request does not have stream")
                return wire.RESULT, await self._side_channel.get(message.stream)

            case wire.CALL:
                name, args = _unpack_call(input)
                method = channel._method(name)

                if message.stream is None:
                    return wire.RESULT, await _invoke(method, args)

                stream = await self._side_channel.get(message.stream)
                try:
                    return wire.RESULT, await _invoke(method, [stream, *args])
                except BaseException:
                    await stream.aclose()
                    raise

            case _:
                msg = f"Unexpected body type {message.type}"
                raise ProtocolError(msg)

    async def _open(self, key: int, code: Any) -> Any:
        """Open a channel, or replay the outcome of opening it."""
        channel = self._channels.get(key)

        if channel is None:
            if not isinstance(code, str):
                msg = f"Code must be a string, got {type(code).__name__}"
                raise TypeError(msg)

            construct = self._evaluator.evaluate(code)

            if not callable(construct):
                msg = f"Code must represent a function, got {type(construct).__name__}"
                raise TypeError(msg)

            channel = Channel(self, key)
            channel._opening = asyncio.create_task(self._construct(channel, construct))

        # Shielded so a cancelled request cannot cancel the cached outcome
        return await asyncio.shield(channel._opening)

    async def _construct(self, channel: Channel, construct: Any) -> Any:
        try:
            return await _invoke(construct, [channel])
        except BaseException:
            if not channel.closed:
                channel.close()
            raise

    async def _reply(self, message: Message, body_type: str, output: Any) -> None:
        if is_chunk_sequence(output):
            try:
                await self._post(message.reply(body_type, encode_payload(None)), output)
            except StateError:
                raise
            except Exception as e:
                # Covers the source failing mid-transfer and error statuses
                logger.exception("Could not stream %s output", message.type)
                body_type, payload = wire.EXCEPTION, encode_payload(_describe(e))
            else:
                return
        else:
            try:
                payload = encode_payload(output)
            except (TypeError, ValueError) as e:
                logger.exception("Could not encode %s output", message.type)
                body_type, payload = wire.EXCEPTION, encode_payload(_describe(e))

        await self._transmit(message.reply(body_type, payload))


def _unpack_call(input: Any) -> tuple[str, list[Any]]:
    if not isinstance(input, dict):
        msg = f"Call input must be an object, got {type(input).__name__}"
        raise TypeError(msg)

    name = input.get("name")
    args = input.get("args")

    if not isinstance(name, str):
        msg = f"Call name must be a string, got {type(name).__name__}"
        raise TypeError(msg)
    if not isinstance(args, list):
        msg = f"Call args must be a list, got {type(args).__name__}"
        raise TypeError(msg)

    return name, args


async def _invoke(method: Any, args: list[Any]) -> Any:
    output = method(*args)
    if inspect.isawaitable(output):
        output = await output
    return output


def _describe(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"
