from __future__ import annotations

import logging
import re
import secrets
import socket
import threading
from typing import Dict, Optional, Set, Tuple

from ..config import CODE_ALPHABET, CODE_LENGTH, DEFAULT_BIND, DEFAULT_DIRECTORY_PORT
from ..errors import ConnectionClosed, TransportUnavailable
from .framing import recv_json, send_json

logger = logging.getLogger(__name__)

Address = Tuple[str, int]

_CODE_RE = re.compile(rf"^[{re.escape(CODE_ALPHABET)}]{{{CODE_LENGTH}}}$")


def generate_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def normalize_code(text: str) -> str:
    code = text.strip().upper()
    if not _CODE_RE.match(code):
        raise ValueError(f"session code must be {CODE_LENGTH} letters or digits, got {text!r}")
    return code


class Directory:
    """Maps discoverable identifiers to endpoint addresses."""

    def register(self, peer_id: str, address: Address) -> None:
        raise NotImplementedError

    def unregister(self, peer_id: str) -> None:
        raise NotImplementedError

    def lookup(self, peer_id: str) -> Optional[Address]:
        raise NotImplementedError


class LocalDirectory(Directory):
    """Directory shared by endpoints living in one process."""

    def __init__(self) -> None:
        self._entries: Dict[str, Address] = {}
        self._lock = threading.Lock()

    def register(self, peer_id: str, address: Address) -> None:
        with self._lock:
            if peer_id in self._entries:
                raise TransportUnavailable(f"identifier {peer_id!r} is already taken")
            self._entries[peer_id] = address

    def unregister(self, peer_id: str) -> None:
        with self._lock:
            self._entries.pop(peer_id, None)

    def lookup(self, peer_id: str) -> Optional[Address]:
        with self._lock:
            return self._entries.get(peer_id)


# Directory wire requests (one JSON frame each, answered by one frame):
# - { op: 'register', id: str, host: str, port: int } -> { ok: true } | { ok: false, error: str }
# - { op: 'unregister', id: str }                     -> { ok: true }
# - { op: 'lookup', id: str }                         -> { ok: true, host, port } | { ok: false, error }
# Registrations are dropped when the connection that made them closes.


class DirectoryServer:
    def __init__(self, bind: str = DEFAULT_BIND, port: int = DEFAULT_DIRECTORY_PORT) -> None:
        self.directory = LocalDirectory()
        self._srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._srv.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            self._srv.bind((bind, port))
            self._srv.listen(64)
        except OSError as exc:
            self._srv.close()
            raise TransportUnavailable(f"cannot listen on {bind}:{port}: {exc}") from exc
        self.address: Address = self._srv.getsockname()[:2]
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "DirectoryServer":
        self._thread = threading.Thread(target=self.serve_forever, name="directory", daemon=True)
        self._thread.start()
        return self

    def serve_forever(self) -> None:
        logger.info("Directory listening on %s:%s", *self.address)
        while not self._stopped.is_set():
            try:
                sock, addr = self._srv.accept()
            except OSError:
                break
            threading.Thread(target=self._serve_client, args=(sock, addr), daemon=True).start()

    def stop(self) -> None:
        self._stopped.set()
        self._srv.close()

    def _serve_client(self, sock: socket.socket, addr: Address) -> None:
        owned: Set[str] = set()
        try:
            while True:
                request = recv_json(sock)
                send_json(sock, self._handle(request, owned))
        except (ConnectionClosed, OSError):
            pass
        finally:
            for peer_id in owned:
                self.directory.unregister(peer_id)
                logger.info("Released %s (owner %s:%s went away)", peer_id, addr[0], addr[1])
            sock.close()

    def _handle(self, request: dict, owned: Set[str]) -> dict:
        op = request.get("op")
        peer_id = request.get("id")
        if not isinstance(peer_id, str) or not peer_id:
            return {"ok": False, "error": "missing id"}
        if op == "register":
            host, port = request.get("host"), request.get("port")
            if not isinstance(host, str) or not isinstance(port, int):
                return {"ok": False, "error": "bad address"}
            try:
                self.directory.register(peer_id, (host, port))
            except TransportUnavailable as exc:
                return {"ok": False, "error": str(exc)}
            owned.add(peer_id)
            logger.info("Registered %s at %s:%s", peer_id, host, port)
            return {"ok": True}
        if op == "unregister":
            if peer_id in owned:
                owned.discard(peer_id)
                self.directory.unregister(peer_id)
            return {"ok": True}
        if op == "lookup":
            address = self.directory.lookup(peer_id)
            if address is None:
                return {"ok": False, "error": "unknown id"}
            return {"ok": True, "host": address[0], "port": address[1]}
        return {"ok": False, "error": f"unknown op {op!r}"}


class RemoteDirectory(Directory):
    """Client for a DirectoryServer.

    Keeps one connection open; registrations made through it live as long
    as it does.
    """

    def __init__(self, address: Address, timeout: float = 5.0) -> None:
        self.address = address
        self.timeout = timeout
        self._sock: Optional[socket.socket] = None
        self._lock = threading.Lock()

    def _request(self, payload: dict) -> dict:
        with self._lock:
            try:
                if self._sock is None:
                    self._sock = socket.create_connection(self.address, timeout=self.timeout)
                send_json(self._sock, payload)
                return recv_json(self._sock)
            except OSError as exc:
                self._drop()
                raise TransportUnavailable(
                    f"directory {self.address[0]}:{self.address[1]} unreachable: {exc}"
                ) from exc

    def _drop(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def register(self, peer_id: str, address: Address) -> None:
        reply = self._request({"op": "register", "id": peer_id, "host": address[0], "port": address[1]})
        if not reply.get("ok"):
            raise TransportUnavailable(reply.get("error") or f"could not register {peer_id!r}")

    def unregister(self, peer_id: str) -> None:
        self._request({"op": "unregister", "id": peer_id})

    def lookup(self, peer_id: str) -> Optional[Address]:
        reply = self._request({"op": "lookup", "id": peer_id})
        if not reply.get("ok"):
            return None
        return reply["host"], int(reply["port"])

    def close(self) -> None:
        with self._lock:
            self._drop()
