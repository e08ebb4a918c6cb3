import re
import socket
import struct
import time

import pytest

from mafia.config import MAX_FRAME_BYTES, PROTO_VERSION
from mafia.errors import ConnectionClosed, ConnectionTimeout, PeerUnavailable, TransportUnavailable
from mafia.net.directory import LocalDirectory
from mafia.net.framing import recv_json, send_json
from mafia.net.transport import CLOSE, DATA, ERROR, OPEN, TcpEndpoint


def wait_event(endpoint, kind, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        event = endpoint.poll(timeout=0.05)
        if event is not None and event.kind == kind:
            return event
    raise AssertionError(f"no {kind} event within {timeout}s")


@pytest.fixture
def directory():
    return LocalDirectory()


@pytest.fixture
def endpoints():
    opened = []
    yield opened
    for endpoint in opened:
        endpoint.destroy()


@pytest.fixture
def pair(directory, endpoints):
    host = TcpEndpoint.open(directory, "ABC123")
    client = TcpEndpoint.open(directory, listen=False)
    endpoints.extend([host, client])
    conn = client.connect("ABC123", timeout=3.0)
    opened = wait_event(host, OPEN)
    return host, client, conn, opened.connection


def test_host_registers_under_its_code(directory, endpoints):
    host = TcpEndpoint.open(directory, "ABC123")
    endpoints.append(host)
    assert host.id == "ABC123"
    assert directory.lookup("ABC123") == host.address


def test_generated_code_is_short_and_alphanumeric(directory, endpoints):
    host = TcpEndpoint.open(directory)
    endpoints.append(host)
    assert re.match(r"^[A-Z0-9]{6}$", host.id)


def test_code_collision(directory, endpoints):
    endpoints.append(TcpEndpoint.open(directory, "ABC123"))
    with pytest.raises(TransportUnavailable):
        TcpEndpoint.open(directory, "ABC123")


def test_bind_failure_is_transport_unavailable(directory):
    with pytest.raises(TransportUnavailable):
        TcpEndpoint.open(directory, "XYZ789", bind="256.0.0.1")
    assert directory.lookup("XYZ789") is None


def test_unresolvable_own_hostname_is_transport_unavailable(directory, monkeypatch):
    def unresolvable(name):
        raise socket.gaierror("no address for hostname")

    monkeypatch.setattr(socket, "gethostbyname", unresolvable)
    with pytest.raises(TransportUnavailable):
        TcpEndpoint.open(directory, "ABC123", bind="0.0.0.0")
    assert directory.lookup("ABC123") is None


def test_generated_codes_give_up_after_repeated_collisions():
    class FullDirectory(LocalDirectory):
        attempts = 0

        def register(self, peer_id, address):
            FullDirectory.attempts += 1
            raise TransportUnavailable(f"identifier {peer_id!r} is already taken")

    with pytest.raises(TransportUnavailable):
        TcpEndpoint.open(FullDirectory())
    assert FullDirectory.attempts == 5


def test_open_event_carries_client_id(pair):
    host, client, conn, inbound = pair
    assert inbound.peer_id == client.id
    assert conn.peer_id == "ABC123"
    assert conn.open and inbound.open


def test_frames_flow_both_ways_in_order(pair):
    host, client, conn, inbound = pair
    for n in range(5):
        conn.send(f"up-{n}".encode())
    received = [wait_event(host, DATA).payload for _ in range(5)]
    assert received == [f"up-{n}".encode() for n in range(5)]

    inbound.send(b"down")
    assert wait_event(client, DATA).payload == b"down"


def test_close_reaches_the_other_side(pair):
    host, client, conn, inbound = pair
    conn.close()
    event = wait_event(host, CLOSE)
    assert event.connection is inbound
    assert not inbound.open
    assert client.id not in host.connections
    with pytest.raises(ConnectionClosed):
        conn.send(b"late")


def test_unknown_code_is_peer_unavailable(directory, endpoints):
    client = TcpEndpoint.open(directory, listen=False)
    endpoints.append(client)
    with pytest.raises(PeerUnavailable):
        client.connect("NOPE00", timeout=1.0)


def test_stale_address_is_peer_unavailable(directory, endpoints):
    probe = socket.socket()
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    directory.register("GONE00", ("127.0.0.1", port))
    client = TcpEndpoint.open(directory, listen=False)
    endpoints.append(client)
    with pytest.raises(PeerUnavailable):
        client.connect("GONE00", timeout=1.0)


def test_silent_listener_times_out(directory, endpoints):
    silent = socket.socket()
    silent.bind(("127.0.0.1", 0))
    silent.listen(1)
    directory.register("SLOW01", silent.getsockname())
    client = TcpEndpoint.open(directory, listen=False)
    endpoints.append(client)
    try:
        started = time.monotonic()
        with pytest.raises(ConnectionTimeout):
            client.connect("SLOW01", timeout=0.3)
        assert time.monotonic() - started < 2.0
        assert client.connections == {}
    finally:
        silent.close()


def test_oversized_frame_drops_the_link(directory, endpoints):
    host = TcpEndpoint.open(directory, "ABC123")
    endpoints.append(host)
    raw = socket.create_connection(host.address, timeout=3.0)
    try:
        assert recv_json(raw)["peer"] == "ABC123"
        send_json(raw, {"type": "hello", "peer": "raw-client", "proto": PROTO_VERSION})
        wait_event(host, OPEN)
        raw.sendall(struct.pack("!I", MAX_FRAME_BYTES + 1))
        assert wait_event(host, ERROR).connection.peer_id == "raw-client"
        wait_event(host, CLOSE)
    finally:
        raw.close()


def test_bad_handshake_never_opens(directory, endpoints):
    host = TcpEndpoint.open(directory, "ABC123")
    endpoints.append(host)
    raw = socket.create_connection(host.address, timeout=3.0)
    try:
        recv_json(raw)
        send_json(raw, {"type": "hello", "peer": "old", "proto": PROTO_VERSION + 1})
        time.sleep(0.2)
        assert host.poll(timeout=0.2) is None
    finally:
        raw.close()


def test_destroy_is_idempotent_and_unregisters(pair, directory):
    host, client, conn, inbound = pair
    host.destroy()
    host.destroy()
    assert host.destroyed
    assert directory.lookup("ABC123") is None
    wait_event(client, CLOSE)
    with pytest.raises(TransportUnavailable):
        host.connect("ABC123")
