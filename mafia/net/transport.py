from __future__ import annotations

import logging
import queue
import secrets
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from ..config import CONNECT_TIMEOUT, DEFAULT_BIND, PROTO_VERSION
from ..errors import ConnectionClosed, ConnectionTimeout, PeerUnavailable, TransportUnavailable
from .directory import Directory, generate_code
from .framing import FrameTooLarge, recv_frame, recv_json, send_frame, send_json

logger = logging.getLogger(__name__)

# Event kinds queued by an endpoint
OPEN = "open"
DATA = "data"
CLOSE = "close"
ERROR = "error"


def _hello(peer_id: str) -> Dict[str, Any]:
    return {"type": "hello", "peer": peer_id, "proto": PROTO_VERSION}


def _check_hello(hello: Dict[str, Any]) -> str:
    peer = hello.get("peer")
    if hello.get("type") != "hello" or hello.get("proto") != PROTO_VERSION:
        raise ConnectionClosed("protocol mismatch")
    if not isinstance(peer, str) or not peer:
        raise ConnectionClosed("handshake without peer id")
    return peer


@dataclass(frozen=True)
class TransportEvent:
    kind: str
    connection: "TcpConnection"
    payload: Optional[bytes] = None
    error: Optional[BaseException] = None


class TcpConnection:
    """One open link to a remote endpoint.

    A reader thread turns incoming frames into events on the owning
    endpoint's queue; nothing else happens off the owner's thread.
    """

    def __init__(self, endpoint: "TcpEndpoint", sock: socket.socket, peer_id: str) -> None:
        self.endpoint = endpoint
        self.peer_id = peer_id
        self._sock = sock
        self._closed = threading.Event()
        self._close_reported = False
        self._lock = threading.Lock()
        self.recv_thread: Optional[threading.Thread] = None

    @property
    def open(self) -> bool:
        return not self._closed.is_set()

    def start(self) -> None:
        self.recv_thread = threading.Thread(
            target=self._recv_loop, name=f"recv-{self.peer_id}", daemon=True
        )
        self.recv_thread.start()

    def _recv_loop(self) -> None:
        try:
            while not self._closed.is_set():
                data = recv_frame(self._sock)
                self.endpoint._emit(TransportEvent(DATA, self, payload=data))
        except FrameTooLarge as exc:
            logger.warning("Dropping link to %s: %s", self.peer_id, exc)
            self.endpoint._emit(TransportEvent(ERROR, self, error=exc))
        except ConnectionClosed:
            pass
        except OSError as exc:
            if not self._closed.is_set():
                self.endpoint._emit(TransportEvent(ERROR, self, error=exc))
        finally:
            self._shutdown()
            self._report_close()

    def send(self, payload: bytes) -> None:
        if self._closed.is_set():
            raise ConnectionClosed(f"link to {self.peer_id} is closed")
        try:
            send_frame(self._sock, payload)
        except OSError as exc:
            self._shutdown()
            raise ConnectionClosed(f"send to {self.peer_id} failed: {exc}") from exc

    def close(self) -> None:
        self._shutdown()

    def _shutdown(self) -> None:
        with self._lock:
            if self._closed.is_set():
                return
            self._closed.set()
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()

    def _report_close(self) -> None:
        with self._lock:
            if self._close_reported:
                return
            self._close_reported = True
        self.endpoint._forget(self)
        self.endpoint._emit(TransportEvent(CLOSE, self))

    def __repr__(self) -> str:
        state = "open" if self.open else "closed"
        return f"<TcpConnection {self.endpoint.id}->{self.peer_id} {state}>"


class TcpEndpoint:
    """A locally addressable endpoint.

    Listening endpoints register ``id -> (host, port)`` in the directory so
    that peers can reach them by short code.
    """

    def __init__(self, directory: Directory, peer_id: str) -> None:
        self.directory = directory
        self.id = peer_id
        self.address: Optional[Tuple[str, int]] = None
        self.events: "queue.Queue[TransportEvent]" = queue.Queue()
        self.connections: Dict[str, TcpConnection] = {}
        self._srv: Optional[socket.socket] = None
        self._registered = False
        self._destroyed = threading.Event()
        self._lock = threading.Lock()

    @classmethod
    def open(
        cls,
        directory: Directory,
        discoverable_id: Optional[str] = None,
        bind: str = DEFAULT_BIND,
        port: int = 0,
        advertise: Optional[str] = None,
        listen: bool = True,
    ) -> "TcpEndpoint":
        if not listen:
            return cls(directory, discoverable_id or secrets.token_hex(8))

        srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            srv.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            srv.bind((bind, port))
            srv.listen(16)
            host = advertise or (bind if bind not in ("", "0.0.0.0") else socket.gethostbyname(socket.gethostname()))
        except OSError as exc:
            srv.close()
            raise TransportUnavailable(f"cannot listen on {bind}:{port}: {exc}") from exc
        address = (host, srv.getsockname()[1])

        attempts = 1 if discoverable_id else 5
        last_error: Optional[TransportUnavailable] = None
        for _ in range(attempts):
            peer_id = discoverable_id or generate_code()
            try:
                directory.register(peer_id, address)
            except TransportUnavailable as exc:
                last_error = exc
                continue
            endpoint = cls(directory, peer_id)
            endpoint._srv = srv
            endpoint._registered = True
            endpoint.address = address
            threading.Thread(target=endpoint._accept_loop, name=f"accept-{peer_id}", daemon=True).start()
            logger.info("Endpoint %s listening on %s:%s", peer_id, *address)
            return endpoint

        srv.close()
        raise TransportUnavailable(f"could not register after {attempts} attempt(s): {last_error}")

    # ---- events -------------------------------------------------------

    def _emit(self, event: TransportEvent) -> None:
        self.events.put(event)

    def poll(self, timeout: float = 0.0) -> Optional[TransportEvent]:
        try:
            if timeout <= 0:
                return self.events.get_nowait()
            return self.events.get(timeout=timeout)
        except queue.Empty:
            return None

    def _forget(self, conn: TcpConnection) -> None:
        with self._lock:
            if self.connections.get(conn.peer_id) is conn:
                del self.connections[conn.peer_id]

    def _adopt(self, conn: TcpConnection) -> None:
        with self._lock:
            previous = self.connections.get(conn.peer_id)
            self.connections[conn.peer_id] = conn
        if previous is not None:
            previous.close()

    # ---- inbound ------------------------------------------------------

    def _accept_loop(self) -> None:
        while not self._destroyed.is_set():
            try:
                sock, addr = self._srv.accept()
            except OSError:
                break
            threading.Thread(target=self._handshake_inbound, args=(sock, addr), daemon=True).start()

    def _handshake_inbound(self, sock: socket.socket, addr: Tuple[str, int]) -> None:
        try:
            sock.settimeout(CONNECT_TIMEOUT)
            send_json(sock, _hello(self.id))
            peer_id = _check_hello(recv_json(sock))
            sock.settimeout(None)
        except (OSError, ConnectionClosed) as exc:
            logger.warning("Handshake with %s:%s failed: %s", addr[0], addr[1], exc)
            sock.close()
            return
        if self._destroyed.is_set():
            sock.close()
            return
        conn = TcpConnection(self, sock, peer_id)
        self._adopt(conn)
        logger.debug("Inbound link from %s (%s:%s)", peer_id, addr[0], addr[1])
        self._emit(TransportEvent(OPEN, conn))
        conn.start()

    # ---- outbound -----------------------------------------------------

    def connect(self, remote_id: str, timeout: float = CONNECT_TIMEOUT) -> TcpConnection:
        if self._destroyed.is_set():
            raise TransportUnavailable("endpoint destroyed")
        address = self.directory.lookup(remote_id)
        if address is None:
            raise PeerUnavailable(f"no session registered under {remote_id!r}")

        deadline = time.monotonic() + timeout
        try:
            sock = socket.create_connection(address, timeout=timeout)
        except socket.timeout as exc:
            raise ConnectionTimeout(f"no answer from {remote_id} within {timeout:g}s") from exc
        except OSError as exc:
            raise PeerUnavailable(f"cannot reach {remote_id} at {address[0]}:{address[1]}: {exc}") from exc

        try:
            sock.settimeout(max(deadline - time.monotonic(), 0.001))
            peer_id = _check_hello(recv_json(sock))
            if peer_id != remote_id:
                raise ConnectionClosed(f"expected {remote_id}, reached {peer_id}")
            send_json(sock, _hello(self.id))
            sock.settimeout(None)
        except socket.timeout as exc:
            sock.close()
            raise ConnectionTimeout(f"{remote_id} did not open within {timeout:g}s") from exc
        except (OSError, ConnectionClosed) as exc:
            sock.close()
            raise PeerUnavailable(f"handshake with {remote_id} failed: {exc}") from exc

        conn = TcpConnection(self, sock, peer_id)
        self._adopt(conn)
        conn.start()
        logger.debug("Outbound link %s -> %s open", self.id, peer_id)
        return conn

    # ---- teardown -----------------------------------------------------

    def destroy(self) -> None:
        if self._destroyed.is_set():
            return
        self._destroyed.set()
        if self._srv is not None:
            self._srv.close()
        with self._lock:
            conns = list(self.connections.values())
        for conn in conns:
            conn.close()
        if self._registered:
            self._registered = False
            try:
                self.directory.unregister(self.id)
            except TransportUnavailable as exc:
                logger.warning("Could not unregister %s: %s", self.id, exc)
        logger.info("Endpoint %s destroyed", self.id)

    @property
    def destroyed(self) -> bool:
        return self._destroyed.is_set()
