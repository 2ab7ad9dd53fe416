"""Wire protocol of the remote unlock bridge.

Newline-delimited JSON frames over TCP (optionally TLS):

    server  {"type": "hello", "version": 1, "challenge": "<b64 32 bytes>"}
    client  {"type": "auth", "fingerprint": "SHA256:...", "signature": "<b64>"}
    server  {"type": "auth_result", "status": "ok", "scope": "unlock"}
    client  {"type": "unlock", "volume": "/dev/sda2", "passphrase": "..."}
    server  {"type": "result", "status": "ok"}
            {"type": "result", "status": "failed", "attempts_remaining": 2}
    client  {"type": "status"}                          (emergency scope)
    server  {"type": "status", "volumes": [{"device_id": ..., "state": ...}]}

The signature covers SIGN_CONTEXT + challenge so a signature for this
protocol cannot be replayed elsewhere. Failure responses are deliberately
generic and never say which step failed.
"""

import asyncio
import base64
import json
from typing import Any, Optional

from luksvault.core.errors import ProtocolError

PROTOCOL_VERSION = 1
SIGN_CONTEXT = b"luksvault-remote-unlock:v1:"
CHALLENGE_SIZE = 32
MAX_FRAME_BYTES = 64 * 1024

UNLOCK_FIELDS = frozenset({"type", "volume", "passphrase"})


def signed_message(challenge: bytes) -> bytes:
    return SIGN_CONTEXT + challenge


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(text: Any) -> bytes:
    if not isinstance(text, str):
        raise ProtocolError("Expected base64 string")
    try:
        return base64.b64decode(text, validate=True)
    except ValueError:
        raise ProtocolError("Invalid base64 data")


def encode_frame(message: dict[str, Any]) -> bytes:
    return json.dumps(message, separators=(",", ":")).encode() + b"\n"


async def write_frame(writer: asyncio.StreamWriter, message: dict[str, Any]) -> None:
    writer.write(encode_frame(message))
    await writer.drain()


async def read_frame(reader: asyncio.StreamReader, timeout: float | None = None) -> Optional[dict[str, Any]]:
    """Read one frame. Returns None on a clean end of stream.

    Raises:
        asyncio.TimeoutError: No frame within ``timeout``
        ProtocolError: Oversized, non-JSON or non-object frame
    """
    try:
        line = await asyncio.wait_for(reader.readline(), timeout=timeout)
    except ValueError:
        # StreamReader limit exceeded
        raise ProtocolError(f"Frame exceeds {MAX_FRAME_BYTES} bytes")
    if not line:
        return None
    if not line.endswith(b"\n"):
        return None
    try:
        message = json.loads(line)
    except ValueError:
        raise ProtocolError("Frame is not valid JSON")
    if not isinstance(message, dict) or not isinstance(message.get("type"), str):
        raise ProtocolError("Frame must be an object with a type")
    return message
