from __future__ import annotations

import logging
import random
from contextlib import contextmanager
from typing import Any, Callable, Iterator, List, Optional

from ..config import CAPACITY, MIN_CAPACITY
from ..errors import ConnectionClosed, IllegalTransition, MessageValidationFailure
from ..game.phases import ENDED, WAITING, SessionContext, next_phase
from ..game.roles import assign_roles
from ..net.protocol import (
    GameState,
    HostLeftMessage,
    JoinMessage,
    LeaveMessage,
    StateUpdateMessage,
    decode,
    encode,
)
from ..net.transport import CLOSE, DATA, ERROR, OPEN, TransportEvent
from ..store import Store
from .roster import ACTIVE, Participant, Roster, RosterManager

logger = logging.getLogger(__name__)

OpenEndpoint = Callable[[Optional[str]], Any]


class SessionCoordinator:
    """Authoritative host of one session.

    Owns the roster and the game state. Every change to either is followed
    by a personalised ``stateUpdate`` to each joined participant: the full
    public roster and game state, plus that participant's own private record.
    """

    def __init__(
        self,
        open_endpoint: OpenEndpoint,
        capacity: int = CAPACITY,
        rng: Optional[random.Random] = None,
    ) -> None:
        if capacity < MIN_CAPACITY:
            raise ValueError(f"capacity must be at least {MIN_CAPACITY}, got {capacity}")
        self._open_endpoint = open_endpoint
        self.capacity = capacity
        self.rng = rng or random.Random()
        self.endpoint: Any = None
        self.roster_manager = RosterManager(capacity)
        self.game: Store[GameState] = Store(GameState())
        self._listeners: List[Callable[["SessionCoordinator"], None]] = []
        self._held = 0
        self._dirty = False
        self.roster_manager.subscribe(self._on_change)
        self.game.subscribe(self._on_change)

    # ---- queries ------------------------------------------------------

    @property
    def active(self) -> bool:
        return self.endpoint is not None

    @property
    def code(self) -> Optional[str]:
        return self.endpoint.id if self.endpoint is not None else None

    @property
    def roster(self) -> Roster:
        return self.roster_manager.roster

    @property
    def game_state(self) -> GameState:
        return self.game.get()

    def snapshot_for(self, participant_id: str) -> StateUpdateMessage:
        participant = self.roster.get(participant_id)
        if participant is None:
            raise KeyError(participant_id)
        return self._snapshot(participant, self.roster)

    def subscribe(self, listener: Callable[["SessionCoordinator"], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ---- lifecycle ----------------------------------------------------

    def host(self, code: Optional[str] = None) -> str:
        if self.endpoint is not None:
            raise IllegalTransition(f"already hosting {self.endpoint.id}")
        self.endpoint = self._open_endpoint(code)
        logger.info("Hosting session %s (capacity %d)", self.endpoint.id, self.capacity)
        return self.endpoint.id

    def leave(self) -> None:
        """Tell every participant the host is gone, then tear everything down."""
        endpoint = self.endpoint
        if endpoint is None:
            return
        payload = encode(HostLeftMessage())
        for conn in list(endpoint.connections.values()):
            if not conn.open:
                continue
            try:
                conn.send(payload)
            except ConnectionClosed as exc:
                logger.warning("Could not notify %s of host leaving: %s", conn.peer_id, exc)
        self.endpoint = None
        endpoint.destroy()
        with self._batched():
            self.roster_manager.clear()
            self.game.replace(GameState())
        logger.info("Session %s closed", endpoint.id)

    def pump(self, timeout: float = 0.0) -> int:
        """Handle queued transport events; wait up to ``timeout`` for the first."""
        handled = 0
        while self.endpoint is not None:
            event = self.endpoint.poll(timeout if handled == 0 else 0.0)
            if event is None:
                break
            self._dispatch(event)
            handled += 1
        return handled

    # ---- inbound ------------------------------------------------------

    def _dispatch(self, event: TransportEvent) -> None:
        conn = event.connection
        if event.kind == OPEN:
            logger.debug("Link open from %s", conn.peer_id)
        elif event.kind == DATA:
            self._on_data(conn, event.payload)
        elif event.kind == CLOSE:
            self._on_closed(conn)
        elif event.kind == ERROR:
            logger.warning("Link error from %s: %s", conn.peer_id, event.error)

    def _on_data(self, conn: Any, payload: Optional[bytes]) -> None:
        try:
            message = decode(payload or b"")
        except MessageValidationFailure as exc:
            logger.warning("Dropping message from %s: %s", conn.peer_id, exc)
            return
        try:
            if isinstance(message, JoinMessage):
                self._on_join(conn, message)
            elif isinstance(message, LeaveMessage):
                self._on_leave(conn, message)
            else:
                raise IllegalTransition(f"{message.type!r} is sent by the host only")
        except IllegalTransition as exc:
            logger.warning("Rejected %s from %s: %s", message.type, conn.peer_id, exc)

    def _on_join(self, conn: Any, message: JoinMessage) -> None:
        if message.id != conn.peer_id:
            raise IllegalTransition(f"join for {message.id} arrived on the link of {conn.peer_id}")
        self.roster_manager.admit(message.id, message.name, connection=conn)

    def _on_leave(self, conn: Any, message: LeaveMessage) -> None:
        if message.id != conn.peer_id:
            raise IllegalTransition(f"leave for {message.id} arrived on the link of {conn.peer_id}")
        self.roster_manager.remove(message.id)
        conn.close()

    def _on_closed(self, conn: Any) -> None:
        participant = self.roster.get(conn.peer_id)
        if participant is not None and participant.connection is conn:
            self.roster_manager.remove(conn.peer_id)
        else:
            logger.debug("Link from %s closed before joining", conn.peer_id)

    # ---- host operations ----------------------------------------------

    def move_to_active(self, participant_id: str) -> Participant:
        self._require_hosting()
        return self.roster_manager.move_to_active(participant_id)

    def move_to_waiting(self, participant_id: str) -> Participant:
        self._require_hosting()
        return self.roster_manager.move_to_waiting(participant_id)

    def start_game(self) -> GameState:
        self._require_hosting()
        game = self.game.get()
        if game.phase != WAITING:
            raise IllegalTransition("the game has already started")
        started = next_phase(game, self._context())
        seated = assign_roles(self.roster.active, self.rng)
        with self._batched():
            self.roster_manager.seat(seated)
            self.game.replace(started)
        logger.info("Game started with %d players", len(seated))
        return started

    def advance_phase(self) -> GameState:
        self._require_hosting()
        game = self.game.get()
        if game.phase == WAITING:
            return self.start_game()
        following = next_phase(game, self._context())
        self.game.replace(following)
        if following.phase == ENDED:
            logger.info("Game over on day %d: %s win", following.day, following.winner)
        else:
            logger.info("Phase %s -> %s (day %d)", game.phase, following.phase, following.day)
        return following

    def eliminate(self, participant_id: str) -> Participant:
        self._require_hosting()
        if self.game.get().phase in (WAITING, ENDED):
            raise IllegalTransition("no game in progress")
        participant = self.roster.get(participant_id)
        if participant is None or participant.status != ACTIVE:
            raise IllegalTransition(f"{participant_id} is not seated in this game")
        if not participant.alive:
            raise IllegalTransition(f"{participant.name} is already eliminated")
        return self.roster_manager.update(participant_id, alive=False)

    # ---- state push ---------------------------------------------------

    def _require_hosting(self) -> None:
        if self.endpoint is None:
            raise IllegalTransition("not hosting a session")

    def _context(self) -> SessionContext:
        roster = self.roster
        return SessionContext(
            active_count=len(roster.active),
            capacity=self.capacity,
            players=tuple((p.role, p.alive) for p in roster.active),
        )

    @contextmanager
    def _batched(self) -> Iterator[None]:
        self._held += 1
        try:
            yield
        finally:
            self._held -= 1
            if self._held == 0 and self._dirty:
                self._dirty = False
                self._publish()

    def _on_change(self, _state: Any) -> None:
        if self._held:
            self._dirty = True
            return
        self._publish()

    def _snapshot(self, participant: Participant, roster: Roster) -> StateUpdateMessage:
        return StateUpdateMessage(
            player_data=participant.private_view(),
            players_list=roster.public_list(),
            game_state=self.game.get(),
        )

    def _publish(self) -> None:
        if self.endpoint is not None:
            roster = self.roster
            for participant in roster:
                conn = participant.connection
                if conn is None or not conn.open:
                    continue
                try:
                    conn.send(encode(self._snapshot(participant, roster)))
                except ConnectionClosed as exc:
                    logger.warning("Snapshot to %s not sent: %s", participant.id, exc)
        for listener in list(self._listeners):
            listener(self)
