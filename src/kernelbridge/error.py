"""Error types raised by the kernel bridge.

Cancellation is not modelled here: futures abandoned on disconnect raise
``asyncio.CancelledError`` carrying the disconnect reason as its message.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for errors raised by this package."""


class StateError(BridgeError):
    """An operation was attempted against a closed channel or client.

    For example, a message could not be sent because the client is not
    connected.
    """


class KernelError(BridgeError):
    """An operation could not be performed in the kernel.

    Contains a simple message or the string representation of a kernel
    exception.
    """


class ProtocolError(BridgeError):
    """A frame did not follow the wire protocol."""
