from __future__ import annotations

import json
import socket
import struct
from typing import Any, Dict

from ..config import MAX_FRAME_BYTES
from ..errors import ConnectionClosed

# Simple length-prefixed frames over TCP: 4-byte big-endian length, then body.


class FrameTooLarge(ConnectionClosed):
    pass


def send_frame(sock: socket.socket, data: bytes) -> None:
    header = struct.pack("!I", len(data))
    sock.sendall(header + data)


def recv_exact(sock: socket.socket, num_bytes: int) -> bytes:
    chunks = []
    remaining = num_bytes
    while remaining > 0:
        chunk = sock.recv(remaining)
        if not chunk:
            raise ConnectionClosed("socket closed")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def recv_frame(sock: socket.socket) -> bytes:
    header = recv_exact(sock, 4)
    (length,) = struct.unpack("!I", header)
    if length > MAX_FRAME_BYTES:
        raise FrameTooLarge(f"frame of {length} bytes exceeds {MAX_FRAME_BYTES}")
    return recv_exact(sock, length)


# Control frames (handshake, discovery) are plain JSON objects.


def send_json(sock: socket.socket, payload: Dict[str, Any]) -> None:
    send_frame(sock, json.dumps(payload, separators=(",", ":")).encode("utf-8"))


def recv_json(sock: socket.socket) -> Dict[str, Any]:
    body = recv_frame(sock)
    try:
        payload = json.loads(body.decode("utf-8"))
    except ValueError as exc:
        raise ConnectionClosed(f"malformed control frame: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConnectionClosed("control frame is not an object")
    return payload
