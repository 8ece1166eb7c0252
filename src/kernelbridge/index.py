"""Per-URL client cache with reconnection.

The client itself never reconnects. Code that wants a live connection asks
the index for one; a client that has disconnected, or never connected, is
replaced by a new one, and the kernel replays ``open`` to restore its
channels.
"""

from __future__ import annotations

import asyncio
import logging

from kernelbridge.client import Client
from kernelbridge.config import ClientConfig
from kernelbridge.error import StateError

logger = logging.getLogger(__name__)


class Index:
    """Keeps at most one client per kernel server URL."""

    __slots__ = ('_clients',)

    def __init__(self) -> None:
        self._clients: dict[str, asyncio.Task[Client]] = {}

    def start(self, url: str, max_message_size: int | None = None) -> asyncio.Task[Client]:
        """Get a connected client for ``url``, creating one if needed.

        Calls for the same URL are chained, so two concurrent starts never
        build two clients.
        """
        task = asyncio.create_task(self._start(url, max_message_size, self._clients.get(url)))
        self._clients[url] = task
        return task

    def stop(self, url: str) -> asyncio.Task[None]:
        """Close the client for ``url``, if any, and forget it."""
        task = asyncio.create_task(self._stop(self._clients.get(url)))
        self._clients.pop(url, None)
        return task

    async def _start(
        self,
        url: str,
        max_message_size: int | None,
        prev: asyncio.Task[Client] | None,
    ) -> Client:
        if prev is not None:
            client = await prev

            try:
                await client.connection
            except StateError:
                logger.warning("Client not connected: trying to connect...")
            else:
                if client.is_open:
                    return client

                logger.warning("Client has disconnected: trying to reconnect...")

        return Client(ClientConfig(url=url, max_message_size=max_message_size))

    async def _stop(self, prev: asyncio.Task[Client] | None) -> None:
        if prev is None:
            return

        client = await prev

        try:
            await client.connection
        except StateError:
            logger.warning("Client never connected")
            return

        if client.is_open:
            await client.close()
        else:
            logger.warning("Client already disconnected")


default_index = Index()

start = default_index.start
stop = default_index.stop
