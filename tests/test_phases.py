import pytest

from mafia.errors import IllegalTransition
from mafia.game.phases import ENDED, TRANSITIONS, SessionContext, check_winner, next_phase, stage_of
from mafia.net.protocol import PHASES, GameState

SEATED = tuple([("don", True), ("mafia", True), ("mafia", True), ("sheriff", True)] + [("civilian", True)] * 6)


def running(players=SEATED) -> SessionContext:
    return SessionContext(active_count=len(players), capacity=10, players=players)


def test_every_phase_but_ended_has_a_successor():
    assert set(TRANSITIONS) == set(PHASES) - {ENDED}
    assert set(TRANSITIONS.values()) <= set(PHASES)


def test_only_cycle_is_final_vote_back_to_mafia_kill():
    edges = dict(TRANSITIONS)
    del edges["day.finalVote"]

    # Without the one loop edge the graph must be acyclic.
    for start in edges:
        seen = set()
        phase = start
        while phase in edges:
            assert phase not in seen, f"cycle through {phase}"
            seen.add(phase)
            phase = edges[phase]

    assert TRANSITIONS["day.finalVote"] == "night.mafiaKill"


def test_start_requires_full_roster():
    with pytest.raises(IllegalTransition):
        next_phase(GameState(), SessionContext(active_count=9, capacity=10))
    started = next_phase(GameState(), SessionContext(active_count=10, capacity=10))
    assert started == GameState(phase="night.roleReveal", day=1)


def test_first_night_leads_to_first_day():
    state = GameState(phase="night.roleReveal", day=1)
    state = next_phase(state, running())
    assert state.phase == "night.mafiaSetup"
    state = next_phase(state, running())
    assert state == GameState(phase="day.start", day=1)


def test_full_day_night_loop_increments_day():
    state = GameState(phase="day.start", day=1)
    visited = []
    for _ in range(8):
        state = next_phase(state, running())
        visited.append(state.phase)
    assert visited == [
        "day.discussion",
        "day.defense",
        "day.finalVote",
        "night.mafiaKill",
        "night.sheriffCheck",
        "night.donCheck",
        "day.start",
        "day.discussion",
    ]
    assert state.day == 2


def test_final_vote_ends_game_when_mafia_reach_parity():
    players = (("don", True), ("mafia", True), ("civilian", True), ("sheriff", True), ("civilian", False))
    state = next_phase(GameState(phase="day.finalVote", day=3), running(players))
    assert state == GameState(phase="ended", day=3, winner="mafia")


def test_day_start_ends_game_when_no_mafia_left():
    players = (("don", False), ("mafia", False), ("civilian", True))
    state = next_phase(GameState(phase="day.start", day=2), running(players))
    assert state.phase == "ended"
    assert state.winner == "civilians"


def test_night_phases_do_not_check_for_game_over():
    players = (("don", False), ("mafia", False), ("civilian", True))
    state = next_phase(GameState(phase="night.mafiaKill", day=2), running(players))
    assert state.phase == "night.sheriffCheck"


def test_ended_has_no_outgoing_transition():
    with pytest.raises(IllegalTransition):
        next_phase(GameState(phase="ended", day=2, winner="mafia"), running())


@pytest.mark.parametrize(
    "players, expected",
    [
        ((("civilian", True), ("sheriff", True), ("don", False)), "civilians"),
        ((("don", True), ("civilian", True)), "mafia"),
        ((("don", True), ("mafia", True), ("civilian", True)), "mafia"),
        ((("don", True), ("civilian", True), ("sheriff", True)), None),
        (SEATED, None),
        ((), "civilians"),
        ((("mafia", True), ("civilian", True), ("civilian", True), ("civilian", False)), None),
    ],
)
def test_check_winner(players, expected):
    assert check_winner(players) == expected


@pytest.mark.parametrize(
    "phase, stage",
    [
        ("waiting", "waiting"),
        ("night.roleReveal", "night"),
        ("night.donCheck", "night"),
        ("day.finalVote", "day"),
        ("ended", "ended"),
    ],
)
def test_stage_of(phase, stage):
    assert stage_of(phase) == stage


def test_stage_of_unknown_phase():
    with pytest.raises(ValueError):
        stage_of("noon.lunch")
