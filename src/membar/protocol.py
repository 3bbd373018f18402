"""
Wire protocol between the statistics channel and the service.

Tiny framed JSON protocol: every message is a 4-byte big-endian length
followed by a UTF-8 JSON object.

    client -> {"hello": "membar.helper", "version": 1}
    server -> {"hello": "membar.helper", "version": 1, "accepted": true}
    client -> {"id": 7, "method": "GetSummary"}
    server -> {"id": 7, "ok": true, "result": {...}}
           or {"id": 7, "ok": false, "error": {"kind": "Unavailable", "message": "..."}}
"""

from __future__ import annotations

import asyncio
import json
import os
import struct
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from membar.errors import ProtocolError
from membar.models import DetailedMemorySnapshot, MemorySnapshot

ENDPOINT_NAME = "membar.helper"
PROTOCOL_VERSION = 1
MAX_FRAME_BYTES = 1024 * 1024

_HEADER = struct.Struct("!I")


class RequestKind(Enum):
    SUMMARY = "GetSummary"
    DETAILED = "GetDetailed"


class ErrorKind(Enum):
    UNAVAILABLE = "Unavailable"
    BAD_REQUEST = "BadRequest"
    INTERNAL = "Internal"


def default_endpoint() -> Path:
    """Per-user socket path for the well-known service name."""
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR") or tempfile.gettempdir()
    getuid = getattr(os, "getuid", None)
    suffix = f"-{getuid()}" if getuid is not None else ""
    return Path(runtime_dir) / f"{ENDPOINT_NAME}{suffix}.sock"


def encode_frame(obj: dict[str, Any]) -> bytes:
    """Serialize one message into a length-prefixed frame."""
    data = json.dumps(obj, separators=(",", ":")).encode("utf-8")
    if len(data) > MAX_FRAME_BYTES:
        raise ProtocolError(f"frame of {len(data)} bytes exceeds limit")
    return _HEADER.pack(len(data)) + data


async def write_message(writer: asyncio.StreamWriter, obj: dict[str, Any]) -> None:
    """Write one framed message and wait for the buffer to drain."""
    writer.write(encode_frame(obj))
    await writer.drain()


async def read_message(reader: asyncio.StreamReader) -> dict[str, Any] | None:
    """
    Read one message.

    Returns None when the peer closed the stream.

    Raises:
        ProtocolError: oversized frame or a body that is not a JSON object.
    """
    try:
        header = await reader.readexactly(_HEADER.size)
        (size,) = _HEADER.unpack(header)
        if size > MAX_FRAME_BYTES:
            raise ProtocolError(f"frame of {size} bytes exceeds limit")
        body = await reader.readexactly(size)
    except asyncio.IncompleteReadError:
        return None

    try:
        message = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolError(f"undecodable frame: {exc}") from exc
    if not isinstance(message, dict):
        raise ProtocolError("frame is not a JSON object")
    return message


def hello() -> dict[str, Any]:
    """Handshake greeting."""
    return {"hello": ENDPOINT_NAME, "version": PROTOCOL_VERSION}


def hello_reply(message: dict[str, Any]) -> dict[str, Any]:
    """Answer a client greeting, accepting only our name and version."""
    reply = hello()
    if message.get("hello") != ENDPOINT_NAME:
        reply.update(accepted=False, reason="unknown service name")
    elif message.get("version") != PROTOCOL_VERSION:
        reply.update(accepted=False, reason=f"unsupported version {message.get('version')!r}")
    else:
        reply["accepted"] = True
    return reply


def request(request_id: int, kind: RequestKind) -> dict[str, Any]:
    """Request message for `kind`."""
    return {"id": request_id, "method": kind.value}


def ok_reply(request_id: Any, snapshot: MemorySnapshot) -> dict[str, Any]:
    """Successful reply carrying a snapshot."""
    return {"id": request_id, "ok": True, "result": snapshot.to_dict()}


def error_reply(request_id: Any, kind: ErrorKind, message: str) -> dict[str, Any]:
    """Failed reply carrying an error kind and message."""
    return {"id": request_id, "ok": False, "error": {"kind": kind.value, "message": message}}


def decode_result(kind: RequestKind, result: dict[str, Any]) -> MemorySnapshot:
    """Decode the result of a successful reply."""
    try:
        if kind is RequestKind.DETAILED:
            return DetailedMemorySnapshot.from_dict(result)
        return MemorySnapshot.from_dict(result)
    except (KeyError, TypeError, ValueError) as exc:
        raise ProtocolError(f"malformed {kind.value} result: {exc}") from exc
