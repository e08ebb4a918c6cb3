from __future__ import annotations

# Messages exchanged between host and participants.
# All messages are JSON objects with a 'type' field:
# - join:        { type: 'join', id: str, name: str }                    participant -> host
# - leave:       { type: 'leave', id: str }                              participant -> host
# - stateUpdate: { type: 'stateUpdate', playerData: {...},
#                  playersList: [{id, name, index?, status, alive?}, ...],
#                  gameState: {phase, day, winner?} }                    host -> participant
# - hostLeft:    { type: 'hostLeft' }                                    host -> participant
#
# playerData is private to its recipient: it is the only place a role or
# character image ever appears on the wire.

from typing import Annotated, Any, Literal, Optional, Tuple, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, constr

from ..errors import MessageValidationFailure

RoleName = Literal["don", "mafia", "sheriff", "civilian"]
StatusName = Literal["waiting", "active"]
WinnerName = Literal["mafia", "civilians"]
PhaseName = Literal[
    "waiting",
    "night.roleReveal",
    "night.mafiaSetup",
    "night.mafiaKill",
    "night.sheriffCheck",
    "night.donCheck",
    "day.start",
    "day.discussion",
    "day.defense",
    "day.finalVote",
    "ended",
]

ROLES: Tuple[str, ...] = get_args(RoleName)
PHASES: Tuple[str, ...] = get_args(PhaseName)

NonEmptyStr = constr(strip_whitespace=True, min_length=1)


class _WireModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)


class GameState(_WireModel):
    phase: PhaseName = "waiting"
    day: int = Field(default=0, ge=0)
    winner: Optional[WinnerName] = None


class PlayerListItem(_WireModel):
    id: NonEmptyStr
    name: NonEmptyStr
    index: Optional[int] = Field(default=None, ge=1)
    status: StatusName
    alive: Optional[bool] = None


class PlayerData(PlayerListItem):
    role: Optional[RoleName] = None
    character_image: Optional[str] = Field(default=None, alias="characterImage")


class JoinMessage(_WireModel):
    type: Literal["join"] = "join"
    id: NonEmptyStr
    name: NonEmptyStr


class LeaveMessage(_WireModel):
    type: Literal["leave"] = "leave"
    id: NonEmptyStr


class StateUpdateMessage(_WireModel):
    type: Literal["stateUpdate"] = "stateUpdate"
    player_data: PlayerData = Field(alias="playerData")
    players_list: Tuple[PlayerListItem, ...] = Field(alias="playersList")
    game_state: GameState = Field(alias="gameState")


class HostLeftMessage(_WireModel):
    type: Literal["hostLeft"] = "hostLeft"


Message = Annotated[
    Union[JoinMessage, LeaveMessage, StateUpdateMessage, HostLeftMessage],
    Field(discriminator="type"),
]

MESSAGE_TYPES = (JoinMessage, LeaveMessage, StateUpdateMessage, HostLeftMessage)

_message_adapter: TypeAdapter = TypeAdapter(Message)


def _describe(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def encode(message: Any) -> bytes:
    if not isinstance(message, MESSAGE_TYPES):
        raise MessageValidationFailure(f"not a protocol message: {type(message).__name__}")
    return message.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


def decode(data: Union[bytes, bytearray, str, dict]) -> Message:
    try:
        if isinstance(data, (bytes, bytearray, str)):
            return _message_adapter.validate_json(data)
        return _message_adapter.validate_python(data)
    except ValidationError as exc:
        raise MessageValidationFailure(_describe(exc)) from exc
