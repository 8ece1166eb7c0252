"""Tests for the correlation key registry."""

import asyncio

import pytest

from kernelbridge.futures import create_future
from kernelbridge.registry import DISCONNECT_REASON, Registry


@pytest.mark.asyncio
class TestRegistry:
    """Tests for storing and retrieving pending futures."""

    async def test_keys_start_at_zero(self):
        registry = Registry()
        assert [registry.store(create_future()) for _ in range(3)] == [0, 1, 2]
        assert len(registry) == 3

    async def test_retrieve_returns_stored_future(self):
        registry = Registry()
        future = create_future()
        key = registry.store(future)

        assert key in registry
        assert registry.retrieve(key) is future
        assert key not in registry
        assert len(registry) == 0

    async def test_freed_keys_are_reused_most_recent_first(self):
        registry = Registry()
        for _ in range(3):
            registry.store(create_future())

        registry.retrieve(1)
        registry.retrieve(0)

        assert registry.store(create_future()) == 0
        assert registry.store(create_future()) == 1
        assert registry.store(create_future()) == 3

    async def test_retrieve_unknown_key(self):
        registry = Registry()
        with pytest.raises(KeyError, match="Future key 7 does not exist"):
            registry.retrieve(7)

    async def test_retrieve_twice(self):
        """A key can be retrieved once per store."""
        registry = Registry()
        key = registry.store(create_future())
        registry.retrieve(key)

        with pytest.raises(KeyError):
            registry.retrieve(key)

    async def test_clear_cancels_pending_futures(self):
        registry = Registry()
        futures = [create_future() for _ in range(3)]
        for future in futures:
            registry.store(future)

        registry.clear("Kernel went away")

        assert len(registry) == 0
        for future in futures:
            with pytest.raises(asyncio.CancelledError, match="Kernel went away"):
                await future

    async def test_clear_default_reason(self):
        registry = Registry()
        future = create_future()
        registry.store(future)

        registry.clear()

        with pytest.raises(asyncio.CancelledError, match=DISCONNECT_REASON):
            await future

    async def test_clear_keeps_keys_reusable(self):
        registry = Registry()
        registry.store(create_future())
        registry.store(create_future())

        registry.clear()

        assert registry.store(create_future()) in (0, 1)

    async def test_get_does_not_remove(self):
        registry = Registry()
        future = create_future()
        key = registry.store(future)

        assert registry.get(key) is future
        assert key in registry
        assert registry.get(key + 1) is None
