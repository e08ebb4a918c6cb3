from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

from pydantic import ValidationError

from ..config import CONNECT_TIMEOUT
from ..errors import ConnectFailed, ConnectionClosed, IllegalTransition, MessageValidationFailure
from ..net.protocol import (
    GameState,
    HostLeftMessage,
    JoinMessage,
    LeaveMessage,
    PlayerData,
    PlayerListItem,
    StateUpdateMessage,
    decode,
    encode,
)
from ..net.transport import CLOSE, DATA, ERROR, TransportEvent
from ..store import Store

logger = logging.getLogger(__name__)

HOST_LEFT = "hostLeft"
CONNECTION_LOST = "connectionLost"
LEFT = "left"


@dataclass(frozen=True)
class ReplicaView:
    player: Optional[PlayerData] = None
    players: Tuple[PlayerListItem, ...] = ()
    game: Optional[GameState] = None

    @property
    def synced(self) -> bool:
        return self.player is not None


EMPTY_VIEW = ReplicaView()


class ClientReplica:
    """Participant-side copy of the session, fed only by host snapshots."""

    def __init__(self, open_endpoint: Callable[[Optional[str]], Any]) -> None:
        self._open_endpoint = open_endpoint
        self.store: Store[ReplicaView] = Store(EMPTY_VIEW)
        self.endpoint: Any = None
        self.connection: Any = None
        self.terminated: Optional[str] = None
        self._terminated_listeners: List[Callable[[str], None]] = []

    @property
    def view(self) -> ReplicaView:
        return self.store.get()

    @property
    def id(self) -> Optional[str]:
        return self.endpoint.id if self.endpoint is not None else None

    @property
    def connected(self) -> bool:
        return self.connection is not None and self.connection.open

    def subscribe(self, listener: Callable[[ReplicaView], None]) -> Callable[[], None]:
        return self.store.subscribe(listener)

    def on_terminated(self, callback: Callable[[str], None]) -> None:
        self._terminated_listeners.append(callback)

    def join(self, code: str, name: str, timeout: float = CONNECT_TIMEOUT) -> str:
        if self.endpoint is not None:
            raise IllegalTransition("already in a session")
        endpoint = self._open_endpoint(None)
        try:
            request = encode(JoinMessage(id=endpoint.id, name=name))
            connection = endpoint.connect(code, timeout=timeout)
            connection.send(request)
        except (ConnectFailed, ConnectionClosed, ValidationError):
            endpoint.destroy()
            raise
        self.endpoint = endpoint
        self.connection = connection
        self.terminated = None
        logger.info("Joined session %s as %s (%s)", code, name, endpoint.id)
        return endpoint.id

    def leave(self) -> None:
        if self.endpoint is None:
            return
        if self.connected:
            try:
                self.connection.send(encode(LeaveMessage(id=self.endpoint.id)))
            except ConnectionClosed as exc:
                logger.warning("Leave notice not sent: %s", exc)
        self._invalidate(LEFT)

    def pump(self, timeout: float = 0.0) -> int:
        handled = 0
        while self.endpoint is not None:
            event = self.endpoint.poll(timeout if handled == 0 else 0.0)
            if event is None:
                break
            self._dispatch(event)
            handled += 1
        return handled

    def _dispatch(self, event: TransportEvent) -> None:
        if event.connection is not self.connection:
            return
        if event.kind == DATA:
            self._on_data(event.payload)
        elif event.kind == CLOSE:
            logger.warning("Lost the link to the host")
            self._invalidate(CONNECTION_LOST)
        elif event.kind == ERROR:
            logger.warning("Link error: %s", event.error)

    def _on_data(self, payload: Optional[bytes]) -> None:
        try:
            message = decode(payload or b"")
        except MessageValidationFailure as exc:
            logger.warning("Dropping message from host: %s", exc)
            return
        if isinstance(message, StateUpdateMessage):
            self._apply(message)
        elif isinstance(message, HostLeftMessage):
            logger.info("Host ended the session")
            self._invalidate(HOST_LEFT)
        else:
            logger.warning("Ignoring %r: only the host accepts it", message.type)

    def _apply(self, message: StateUpdateMessage) -> None:
        if message.player_data.id != self.id:
            logger.warning("Dropping snapshot addressed to %s", message.player_data.id)
            return
        self.store.replace(
            ReplicaView(player=message.player_data, players=message.players_list, game=message.game_state)
        )

    def _invalidate(self, reason: str) -> None:
        endpoint = self.endpoint
        if endpoint is None:
            return
        self.endpoint = None
        self.connection = None
        self.terminated = reason
        endpoint.destroy()
        self.store.replace(EMPTY_VIEW)
        for callback in list(self._terminated_listeners):
            callback(reason)
