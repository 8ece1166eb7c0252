"""Kernel bridge - frontend side of a kernel/frontend RPC bridge

This package connects a frontend to a kernel server over a WebSocket, runs
kernel-supplied code to open channels, exposes channel handlers to kernel
calls, and streams bulk bytes through an HTTP side channel.
"""

from kernelbridge.channel import Channel
from kernelbridge.client import Client, ConnectionState
from kernelbridge.config import ClientConfig
from kernelbridge.error import BridgeError, KernelError, ProtocolError, StateError
from kernelbridge.evaluator import CodeEvaluator, PythonEvaluator
from kernelbridge.futures import Future, create_future
from kernelbridge.index import Index, start, stop
from kernelbridge.registry import Registry
from kernelbridge.types import MetaGenerator

__version__ = "0.1.0"

__all__ = [
    # Connection
    "Client",
    "ConnectionState",
    "Channel",
    "Index",
    "start",
    "stop",
    # Configuration (Pydantic models)
    "ClientConfig",
    # Code evaluation
    "CodeEvaluator",
    "PythonEvaluator",
    # Correlation
    "Future",
    "create_future",
    "Registry",
    # Streams
    "MetaGenerator",
    # Errors
    "BridgeError",
    "StateError",
    "KernelError",
    "ProtocolError",
]
