"""Wire format for the kernel bridge.

Every control frame is a JSON object sent as WebSocket text:

    {"future": 3, "channel": 1, "type": "call", "payload": "{\\"name\\": ...}"}

``payload`` is itself JSON text, so application values are encoded twice.
``stream`` is present only when the frame refers to a side-channel transfer.

Side-channel transfers are plain HTTP requests against the client URL. The
stream identifier travels in the ``x-bridge-stream`` header of a GET, and the
frame that accompanies a POSTed stream travels in the ``x-bridge-data`` header.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Final

from kernelbridge.error import ProtocolError

STREAM_HEADER: Final[str] = "x-bridge-stream"
DATA_HEADER: Final[str] = "x-bridge-data"

REQUIRED_FIELDS: Final[tuple[str, ...]] = ("future", "channel", "type", "payload")

# Body types
OPEN: Final[str] = "open"
CLOSE: Final[str] = "close"
ECHO: Final[str] = "echo"
CALL: Final[str] = "call"
PIPE: Final[str] = "pipe"
RESULT: Final[str] = "result"
EXCEPTION: Final[str] = "exception"
CLOSED: Final[str] = "closed"

RESPONSE_TYPES: Final[frozenset[str]] = frozenset({RESULT, EXCEPTION, CLOSED})


def is_int_not_bool(x: object) -> bool:
    """Check if x is an int but not a bool.

    In Python, bool is a subclass of int, so isinstance(True, int) returns True.
    A boolean must never alias correlation key 0 or 1.
    """
    return isinstance(x, int) and not isinstance(x, bool)


@dataclass(frozen=True, slots=True)
class Message:
    """A control frame."""

    future: int
    channel: int
    type: str
    payload: str
    stream: int | None = None

    @property
    def is_response(self) -> bool:
        """Whether this frame answers a request this side made."""
        return self.type in RESPONSE_TYPES

    def decode(self) -> Any:
        """Decode the JSON payload."""
        return json.loads(self.payload)

    def reply(self, body_type: str, payload: str, stream: int | None = None) -> Message:
        """Build the frame answering this one."""
        return Message(self.future, self.channel, body_type, payload, stream)

    def to_json(self) -> dict[str, Any]:
        """Convert to a JSON object."""
        body: dict[str, Any] = {
            "future": self.future,
            "channel": self.channel,
            "type": self.type,
            "payload": self.payload,
        }
        if self.stream is not None:
            body["stream"] = self.stream
        return body

    @staticmethod
    def from_json(body: Any) -> Message:
        """Parse from a JSON object.

        Raises:
            ProtocolError: If a field is missing or has the wrong type
        """
        if not isinstance(body, dict):
            msg = f"Body must be an object, got {type(body).__name__}"
            raise ProtocolError(msg)

        for name in REQUIRED_FIELDS:
            if name not in body:
                msg = f"Body does not have {name}"
                raise ProtocolError(msg)

        future = body["future"]
        channel = body["channel"]
        body_type = body["type"]
        payload = body["payload"]
        stream = body.get("stream")

        # Strict type validation for boundary objects
        if not is_int_not_bool(future):
            msg = f"Future key must be integer, got {type(future).__name__}"
            raise ProtocolError(msg)
        if not is_int_not_bool(channel):
            msg = f"Channel key must be integer, got {type(channel).__name__}"
            raise ProtocolError(msg)
        if not isinstance(body_type, str):
            msg = f"Body type must be string, got {type(body_type).__name__}"
            raise ProtocolError(msg)
        if not isinstance(payload, str):
            msg = f"Payload must be string, got {type(payload).__name__}"
            raise ProtocolError(msg)
        if stream is not None and not is_int_not_bool(stream):
            msg = f"Stream must be integer or null, got {type(stream).__name__}"
            raise ProtocolError(msg)

        return Message(future, channel, body_type, payload, stream)


def parse_message(data: str) -> Message:
    """Parse a text frame into a Message.

    Raises:
        ProtocolError: If the frame is not valid JSON or not a valid body
    """
    try:
        body = json.loads(data)
    except json.JSONDecodeError as e:
        msg = f"Invalid JSON: {e}"
        raise ProtocolError(msg) from e
    return Message.from_json(body)


def serialize_message(message: Message) -> str:
    """Serialize a Message to a text frame."""
    return json.dumps(message.to_json())


def encode_payload(value: Any) -> str:
    """Encode an application value as payload text.

    Raises:
        TypeError: If the value is not JSON-serializable
        ValueError: If the value contains circular references or NaN-like floats
    """
    return json.dumps(value, allow_nan=False)
