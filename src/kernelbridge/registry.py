"""Correlation key registry for in-flight requests."""

from __future__ import annotations

import logging

from kernelbridge.futures import Future

logger = logging.getLogger(__name__)

DISCONNECT_REASON = "Client disconnected"


class Registry:
    """Maps small integer keys to pending futures.

    Freed keys are reused most-recent-first before the counter grows, so the
    key space stays bounded by peak concurrency rather than by call count.
    """

    __slots__ = ('_counter', '_keys', '_futures')

    def __init__(self) -> None:
        self._counter = 0
        self._keys: list[int] = []
        self._futures: dict[int, Future] = {}

    def __len__(self) -> int:
        return len(self._futures)

    def __contains__(self, key: object) -> bool:
        return key in self._futures

    def store(self, future: Future) -> int:
        """Store a future and return the key it was assigned."""
        if self._keys:
            key = self._keys.pop()
        else:
            key = self._counter
            self._counter += 1
        self._futures[key] = future
        return key

    def get(self, key: int) -> Future | None:
        """Return the future stored under ``key`` without removing it."""
        return self._futures.get(key)

    def retrieve(self, key: int) -> Future:
        """Remove and return the future stored under ``key``.

        Raises:
            KeyError: If the key was never issued or was already retrieved
        """
        return self._pop(key)

    def clear(self, reason: str = DISCONNECT_REASON) -> None:
        """Cancel every pending future with ``reason`` and drain the registry."""
        keys = list(self._futures)
        if keys:
            logger.debug("Cancelling %d pending futures: %s", len(keys), reason)
        for key in keys:
            future = self._pop(key)
            future.cancel(reason)

    def _pop(self, key: int) -> Future:
        future = self._futures.pop(key, None)
        if future is None:
            msg = f"Future key {key} does not exist"
            raise KeyError(msg)
        self._keys.append(key)
        return future
