from __future__ import annotations

import random
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Tuple

from ..session.roster import Participant

SPECIAL_ROLES: Tuple[str, ...] = ("don", "mafia", "mafia", "sheriff")

ROLE_ASSETS: Dict[str, Tuple[str, ...]] = {
    "don": (
        "assets/mafia-don-character.png",
        "assets/mafia-don-character-2.png",
    ),
    "mafia": (
        "assets/mafia-regular-character.png",
        "assets/mafia-regular-character-2.png",
        "assets/mafia-regular-character-3.png",
        "assets/mafia-regular-character-4.png",
    ),
    "sheriff": ("assets/sheriff-character-1.png",),
    "civilian": (
        "assets/civilian-character-1.png",
        "assets/civilian-character-2.png",
        "assets/civilian-character-3.png",
        "assets/civilian-character-4.png",
    ),
}


def build_role_deck(size: int) -> List[str]:
    if size <= len(SPECIAL_ROLES):
        raise ValueError(f"need more than {len(SPECIAL_ROLES)} players, got {size}")
    return list(SPECIAL_ROLES) + ["civilian"] * (size - len(SPECIAL_ROLES))


def pick_asset(role: str, rng: random.Random) -> str:
    return rng.choice(ROLE_ASSETS[role])


def assign_roles(participants: Sequence[Participant], rng: Optional[random.Random] = None) -> List[Participant]:
    """Seat ``participants`` in a random order and deal them a shuffled deck.

    Seat numbers run 1..N in the seating order. Each participant also gets
    a character image drawn from its role's pool; images may repeat.
    """
    rng = rng or random.Random()
    seating = list(participants)
    rng.shuffle(seating)
    deck = build_role_deck(len(seating))
    rng.shuffle(deck)
    return [
        replace(p, index=seat, role=role, asset=pick_asset(role, rng), alive=True)
        for seat, (p, role) in enumerate(zip(seating, deck), start=1)
    ]
