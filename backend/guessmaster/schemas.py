from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import EndReason, Session, SessionStatus
from .utils import sort_leaderboard


class WireModel(BaseModel):
    """Fields are snake_case in Python and camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class CreateSessionIn(WireModel):
    session_id: str
    player_name: str


class JoinIn(WireModel):
    session_id: str
    player_name: str


class SetQuestionIn(WireModel):
    session_id: str
    question: str
    answer: str
    player_name: Optional[str] = None


class StartGameIn(WireModel):
    session_id: str
    player_name: str


class GuessIn(WireModel):
    session_id: str
    player_name: str
    guess: str


class LeaveIn(WireModel):
    session_id: str
    player_name: str


class PlayerOut(WireModel):
    name: str
    score: int
    is_host: bool


class PublicSessionOut(WireModel):
    id: str
    host: str
    players: List[PlayerOut]
    status: SessionStatus
    question: str
    # hidden while a round is running
    answer: Optional[str]
    current_master: str
    time_remaining: int
    attempts: Dict[str, int]
    winner: Optional[str]
    round: int
    leaderboard: List[PlayerOut]

    @classmethod
    def from_session(cls, s: Session) -> "PublicSessionOut":
        players = [p.model_dump() for p in s.players]
        return cls(
            id=s.id,
            host=s.host,
            players=[PlayerOut(**p) for p in players],
            status=s.status,
            question=s.question,
            answer=None if s.status == SessionStatus.PLAYING else s.answer,
            current_master=s.current_master,
            time_remaining=s.time_remaining,
            attempts=dict(s.attempts),
            winner=s.winner,
            round=s.round,
            leaderboard=[PlayerOut(**p) for p in sort_leaderboard(players)],
        )


class GameEndedOut(WireModel):
    session: PublicSessionOut
    reason: EndReason
    winner: Optional[str] = None


class TimerTickOut(WireModel):
    time_remaining: int


class PlayerJoinedOut(WireModel):
    player_name: str


class MessageOut(WireModel):
    text: str
    type: Literal["system", "success", "guess"] = "system"


class ClientFrame(BaseModel):
    event: str
    data: Dict[str, Any] = Field(default_factory=dict)
    ack: Optional[Union[int, str]] = None
