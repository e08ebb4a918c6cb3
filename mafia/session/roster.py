from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Optional, Tuple

from ..config import CAPACITY
from ..errors import IllegalTransition
from ..net.protocol import PlayerData, PlayerListItem
from ..store import Store

logger = logging.getLogger(__name__)

ACTIVE = "active"
WAITING = "waiting"


@dataclass(frozen=True)
class Participant:
    id: str
    name: str
    status: str = WAITING
    index: Optional[int] = None
    role: Optional[str] = None
    asset: Optional[str] = None
    alive: Optional[bool] = None
    # Host-side link to the participant's process; never compared or sent.
    connection: Any = field(default=None, compare=False, repr=False)

    def public_view(self) -> PlayerListItem:
        return PlayerListItem(id=self.id, name=self.name, index=self.index, status=self.status, alive=self.alive)

    def private_view(self) -> PlayerData:
        return PlayerData(
            id=self.id,
            name=self.name,
            index=self.index,
            status=self.status,
            alive=self.alive,
            role=self.role,
            character_image=self.asset,
        )


@dataclass(frozen=True)
class Roster:
    active: Tuple[Participant, ...] = ()
    waiting: Tuple[Participant, ...] = ()
    locked: bool = False

    def __iter__(self):
        yield from self.active
        yield from self.waiting

    def __len__(self) -> int:
        return len(self.active) + len(self.waiting)

    def __contains__(self, participant_id) -> bool:
        return self.get(participant_id) is not None

    def get(self, participant_id: str) -> Optional[Participant]:
        for p in self:
            if p.id == participant_id:
                return p
        return None

    def public_list(self) -> Tuple[PlayerListItem, ...]:
        return tuple(p.public_view() for p in self)


def _without(items: Tuple[Participant, ...], participant_id: str) -> Tuple[Participant, ...]:
    return tuple(p for p in items if p.id != participant_id)


class RosterManager:
    """Host-side bookkeeping of the active and waiting lists.

    Every change replaces the Roster value held in ``store``; subscribers
    are notified after each admission, removal, promotion or demotion.
    """

    def __init__(self, capacity: int = CAPACITY) -> None:
        self.capacity = capacity
        self.store: Store[Roster] = Store(Roster())

    @property
    def roster(self) -> Roster:
        return self.store.get()

    def subscribe(self, listener: Callable[[Roster], None]) -> Callable[[], None]:
        return self.store.subscribe(listener)

    def admit(self, participant_id: str, name: str, connection: Any = None) -> Participant:
        roster = self.roster
        if participant_id in roster:
            raise IllegalTransition(f"participant {participant_id} already joined")
        if not roster.locked and len(roster.active) < self.capacity:
            participant = Participant(participant_id, name, status=ACTIVE, connection=connection)
            self.store.replace(replace(roster, active=roster.active + (participant,)))
        else:
            participant = Participant(participant_id, name, status=WAITING, connection=connection)
            self.store.replace(replace(roster, waiting=roster.waiting + (participant,)))
        logger.info("Admitted %s (%s) as %s", name, participant_id, participant.status)
        return participant

    def remove(self, participant_id: str) -> Optional[Participant]:
        roster = self.roster
        participant = roster.get(participant_id)
        if participant is None:
            return None
        self.store.replace(
            replace(
                roster,
                active=_without(roster.active, participant_id),
                waiting=_without(roster.waiting, participant_id),
            )
        )
        logger.info("Removed %s (%s)", participant.name, participant_id)
        return participant

    def move_to_active(self, participant_id: str) -> Participant:
        roster = self.roster
        self._require_unlocked(roster)
        participant = next((p for p in roster.waiting if p.id == participant_id), None)
        if participant is None:
            raise IllegalTransition(f"{participant_id} is not on the waiting list")
        if len(roster.active) >= self.capacity:
            raise IllegalTransition(f"active list is full ({self.capacity})")
        promoted = replace(participant, status=ACTIVE)
        self.store.replace(
            replace(
                roster,
                active=roster.active + (promoted,),
                waiting=_without(roster.waiting, participant_id),
            )
        )
        return promoted

    def move_to_waiting(self, participant_id: str) -> Participant:
        roster = self.roster
        self._require_unlocked(roster)
        participant = next((p for p in roster.active if p.id == participant_id), None)
        if participant is None:
            raise IllegalTransition(f"{participant_id} is not on the active list")
        demoted = replace(participant, status=WAITING)
        self.store.replace(
            replace(
                roster,
                active=_without(roster.active, participant_id),
                waiting=roster.waiting + (demoted,),
            )
        )
        return demoted

    def seat(self, seated: Iterable[Participant]) -> Roster:
        """Replace the active list with its seated version and lock the roster."""
        roster = self.roster
        self._require_unlocked(roster)
        seated = tuple(sorted(seated, key=lambda p: p.index or 0))
        if sorted(p.id for p in seated) != sorted(p.id for p in roster.active):
            raise IllegalTransition("seating does not match the active list")
        return self.store.replace(replace(roster, active=seated, locked=True))

    def update(self, participant_id: str, **changes: Any) -> Participant:
        roster = self.roster
        participant = roster.get(participant_id)
        if participant is None:
            raise IllegalTransition(f"unknown participant {participant_id}")
        updated = replace(participant, **changes)

        def swap(items: Tuple[Participant, ...]) -> Tuple[Participant, ...]:
            return tuple(updated if p.id == participant_id else p for p in items)

        self.store.replace(replace(roster, active=swap(roster.active), waiting=swap(roster.waiting)))
        return updated

    def clear(self) -> None:
        self.store.replace(Roster())

    def _require_unlocked(self, roster: Roster) -> None:
        if roster.locked:
            raise IllegalTransition("the roster is locked once the game has started")
