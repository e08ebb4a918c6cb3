from __future__ import annotations

import itertools
import random
from collections import deque
from typing import Callable, Dict, List, Optional

import pytest

from mafia.errors import ConnectionClosed, ConnectionTimeout, PeerUnavailable, TransportUnavailable
from mafia.net.transport import CLOSE, DATA, OPEN, TransportEvent
from mafia.session.coordinator import SessionCoordinator
from mafia.session.replica import ClientReplica


class FakeConnection:
    def __init__(self, endpoint: "FakeEndpoint", peer_id: str) -> None:
        self.endpoint = endpoint
        self.peer_id = peer_id
        self.remote: Optional["FakeConnection"] = None
        self.open = True
        self.sent: List[bytes] = []

    def send(self, payload: bytes) -> None:
        if not self.open:
            raise ConnectionClosed(f"link to {self.peer_id} is closed")
        self.sent.append(payload)
        self.remote.endpoint.events.append(TransportEvent(DATA, self.remote, payload=payload))

    def close(self) -> None:
        if not self.open:
            return
        for side in (self, self.remote):
            side.open = False
            side.endpoint.forget(side)
            side.endpoint.events.append(TransportEvent(CLOSE, side))


class FakeEndpoint:
    """Same surface as TcpEndpoint; events are delivered in order, instantly."""

    def __init__(self, network: "FakeNetwork", peer_id: str) -> None:
        self.network = network
        self.id = peer_id
        self.events: deque = deque()
        self.connections: Dict[str, FakeConnection] = {}
        self.destroyed = False
        self.unresponsive = False

    def poll(self, timeout: float = 0.0) -> Optional[TransportEvent]:
        return self.events.popleft() if self.events else None

    def connect(self, remote_id: str, timeout: float = 10.0) -> FakeConnection:
        remote = self.network.endpoints.get(remote_id)
        if remote is None:
            raise PeerUnavailable(f"no session registered under {remote_id!r}")
        if remote.unresponsive:
            raise ConnectionTimeout(f"{remote_id} did not open within {timeout:g}s")
        local = FakeConnection(self, remote_id)
        far = FakeConnection(remote, self.id)
        local.remote, far.remote = far, local
        self.connections[remote_id] = local
        remote.connections[self.id] = far
        remote.events.append(TransportEvent(OPEN, far))
        return local

    def forget(self, conn: FakeConnection) -> None:
        if self.connections.get(conn.peer_id) is conn:
            del self.connections[conn.peer_id]

    def destroy(self) -> None:
        if self.destroyed:
            return
        self.destroyed = True
        for conn in list(self.connections.values()):
            conn.close()
        if self.network.endpoints.get(self.id) is self:
            del self.network.endpoints[self.id]


class FakeNetwork:
    def __init__(self) -> None:
        self.endpoints: Dict[str, FakeEndpoint] = {}
        self.opened: List[FakeEndpoint] = []
        self._ids = itertools.count(1)

    def open(self, discoverable_id: Optional[str] = None) -> FakeEndpoint:
        peer_id = discoverable_id or f"peer-{next(self._ids)}"
        if peer_id in self.endpoints:
            raise TransportUnavailable(f"identifier {peer_id!r} is already taken")
        endpoint = FakeEndpoint(self, peer_id)
        self.endpoints[peer_id] = endpoint
        self.opened.append(endpoint)
        return endpoint


def settle(host: SessionCoordinator, *replicas: ClientReplica) -> None:
    for _ in range(1000):
        moved = host.pump() + sum(r.pump() for r in replicas)
        if not moved:
            return
    raise AssertionError("network did not settle")


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def host(network: FakeNetwork) -> SessionCoordinator:
    coordinator = SessionCoordinator(network.open, rng=random.Random(1234))
    coordinator.host("ABC123")
    return coordinator


@pytest.fixture
def join(network: FakeNetwork, host: SessionCoordinator) -> Callable[..., List[ClientReplica]]:
    """Join ``count`` new replicas to the host and let the network settle."""
    replicas: List[ClientReplica] = []

    def _join(count: int = 1, prefix: str = "player") -> List[ClientReplica]:
        added = []
        for _ in range(count):
            replica = ClientReplica(network.open)
            replica.join(host.code, f"{prefix}-{len(replicas) + 1}")
            replicas.append(replica)
            added.append(replica)
        settle(host, *replicas)
        return added

    _join.replicas = replicas
    return _join
