"""Settle-once futures used to correlate requests with responses."""

from __future__ import annotations

import asyncio
from typing import Any


class Future(asyncio.Future):
    """An :class:`asyncio.Future` whose first settlement wins.

    Late or duplicate responses from the network must not blow up the read
    loop, so settling a future that is already done is ignored instead of
    raising :class:`asyncio.InvalidStateError`.
    """

    def set_result(self, result: Any) -> None:
        if not self.done():
            super().set_result(result)

    def set_exception(self, exception: BaseException | type[BaseException]) -> None:
        if not self.done():
            super().set_exception(exception)

    def cancel(self, msg: Any | None = None) -> bool:
        """Cancel the future, raising ``CancelledError(msg)`` in awaiters."""
        return super().cancel(msg)


def create_future(loop: asyncio.AbstractEventLoop | None = None) -> Future:
    """Create a pending future bound to ``loop`` or the running loop."""
    if loop is None:
        loop = asyncio.get_running_loop()
    return Future(loop=loop)
