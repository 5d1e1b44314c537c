from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class SessionStatus(str, Enum):
    WAITING = "waiting"
    PLAYING = "playing"
    ENDED = "ended"


class EndReason(str, Enum):
    TIMEOUT = "timeout"
    WINNER = "winner"


class Player(BaseModel):
    name: str
    score: int = 0
    is_host: bool = False


# States: waiting -> playing -> ended -> waiting
class Session(BaseModel):
    id: str
    host: str
    players: List[Player] = Field(default_factory=list)
    status: SessionStatus = SessionStatus.WAITING
    question: str = ""
    answer: str = ""
    current_master: str
    time_remaining: int = 0
    attempts: Dict[str, int] = Field(default_factory=dict)
    winner: Optional[str] = None
    round: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def find_player(self, name: str) -> Optional[Player]:
        return next((p for p in self.players if p.name == name), None)

    def player_names(self) -> List[str]:
        return [p.name for p in self.players]


class GuessOutcome(BaseModel):
    correct: bool
    attempts_left: int


class TickOutcome(BaseModel):
    time_remaining: int
    time_up: bool


class LeaveOutcome(BaseModel):
    session: Optional[Session] = None
    deleted: bool = False
    was_master: bool = False
