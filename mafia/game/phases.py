from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from ..errors import IllegalTransition
from ..net.protocol import PHASES, GameState

WAITING = "waiting"
ENDED = "ended"

# Phase that follows each phase. "waiting" leaves only through a started
# game, "ended" has no successor, and the only loop is finalVote -> mafiaKill.
TRANSITIONS: Dict[str, str] = {
    "waiting": "night.roleReveal",
    "night.roleReveal": "night.mafiaSetup",
    "night.mafiaSetup": "day.start",
    "night.mafiaKill": "night.sheriffCheck",
    "night.sheriffCheck": "night.donCheck",
    "night.donCheck": "day.start",
    "day.start": "day.discussion",
    "day.discussion": "day.defense",
    "day.defense": "day.finalVote",
    "day.finalVote": "night.mafiaKill",
}

# Leaving these phases first checks whether the game is already decided
GAME_OVER_CHECKPOINTS = ("day.start", "day.finalVote")

MAFIA_ROLES = ("don", "mafia")
CIVILIAN_ROLES = ("sheriff", "civilian")


def stage_of(phase: str) -> str:
    if phase in (WAITING, ENDED):
        return phase
    if phase not in PHASES:
        raise ValueError(f"unknown phase {phase!r}")
    return phase.split(".", 1)[0]


def check_winner(players: Iterable[Tuple[Optional[str], Optional[bool]]]) -> Optional[str]:
    """Return "civilians", "mafia" or None for ``(role, alive)`` pairs.

    Civilians win once no mafia member is alive; mafia win once they match
    or outnumber the living civilian side.
    """
    alive_mafia = 0
    alive_civilians = 0
    for role, alive in players:
        if not alive:
            continue
        if role in MAFIA_ROLES:
            alive_mafia += 1
        elif role in CIVILIAN_ROLES:
            alive_civilians += 1
    if alive_mafia == 0:
        return "civilians"
    if alive_mafia >= alive_civilians:
        return "mafia"
    return None


@dataclass(frozen=True)
class SessionContext:
    active_count: int
    capacity: int
    players: Tuple[Tuple[Optional[str], Optional[bool]], ...] = ()


def next_phase(state: GameState, context: SessionContext) -> GameState:
    phase = state.phase
    if phase == ENDED:
        raise IllegalTransition("the game has ended")

    if phase == WAITING:
        if context.active_count != context.capacity:
            raise IllegalTransition(
                f"need {context.capacity} active participants to start, have {context.active_count}"
            )
        return GameState(phase=TRANSITIONS[WAITING], day=1)

    if phase in GAME_OVER_CHECKPOINTS:
        winner = check_winner(context.players)
        if winner is not None:
            return GameState(phase=ENDED, day=state.day, winner=winner)

    day = state.day + 1 if phase == "day.finalVote" else state.day
    return GameState(phase=TRANSITIONS[phase], day=day)
