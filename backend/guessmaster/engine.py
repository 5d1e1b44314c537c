"""Round state machine for a single session.

waiting --start_game--> playing --(timeout | correct guess)--> ended
ended --reset_game_for_next_round--> waiting

Every operation takes the current Session, leaves it untouched and returns
a fresh copy (plus an outcome where the caller needs one). Failures are
raised as ``GameError`` subclasses. Nothing here does I/O or keeps state
between calls; locking, timers and broadcasting belong to the gateway.
"""

from __future__ import annotations

from typing import Optional, Tuple

from .config import Settings, settings
from .errors import (
    GameInProgress,
    InvalidInput,
    MasterCannotGuess,
    NameTaken,
    NoAttemptsLeft,
    NotEnoughPlayers,
    NotMaster,
    PlayerNotFound,
    QuestionNotSet,
    SessionFull,
    SessionInactive,
)
from .models import GuessOutcome, LeaveOutcome, Player, Session, SessionStatus, TickOutcome
from .utils import normalize


def create_session(session_id: str, host_name: str, rules: Settings = settings) -> Session:
    if not session_id.strip() or not host_name.strip():
        raise InvalidInput("Session id and player name are required")

    return Session(
        id=session_id,
        host=host_name,
        players=[Player(name=host_name, is_host=True)],
        current_master=host_name,
        time_remaining=rules.GAME_DURATION,
    )


def join_session(session: Session, name: str, rules: Settings = settings) -> Session:
    if not name.strip():
        raise InvalidInput("Player name is required")
    if session.status != SessionStatus.WAITING:
        raise GameInProgress()
    if len(session.players) >= rules.MAX_PLAYERS:
        raise SessionFull(f"Session is full ({rules.MAX_PLAYERS} players max)")
    if session.find_player(name):
        raise NameTaken()

    s = session.model_copy(deep=True)
    s.players.append(Player(name=name))
    return s


def leave_session(session: Session, name: str) -> LeaveOutcome:
    if not session.find_player(name):
        raise PlayerNotFound()

    s = session.model_copy(deep=True)
    s.players = [p for p in s.players if p.name != name]
    s.attempts.pop(name, None)

    if not s.players:
        return LeaveOutcome(session=None, deleted=True)

    was_master = s.current_master == name
    if was_master:
        # first remaining player in join order takes over
        s.current_master = s.players[0].name

    return LeaveOutcome(session=s, was_master=was_master)


def set_question(
    session: Session,
    question: str,
    answer: str,
    requester: Optional[str] = None,
    rules: Settings = settings,
) -> Session:
    if not question.strip() or not answer.strip():
        raise InvalidInput("Invalid question/answer")
    if session.status != SessionStatus.WAITING:
        raise GameInProgress()
    if rules.ENFORCE_MASTER_QUESTION and requester != session.current_master:
        raise NotMaster("Only master can set the question")

    s = session.model_copy(deep=True)
    s.question = question.strip()
    s.answer = normalize(answer)
    return s


def start_game(session: Session, requester: str, rules: Settings = settings) -> Session:
    if session.current_master != requester:
        raise NotMaster("Only master can start")
    if len(session.players) < rules.MIN_PLAYERS:
        raise NotEnoughPlayers(f"Need at least {rules.MIN_PLAYERS} players")
    if not session.question or not session.answer:
        raise QuestionNotSet()
    if session.status != SessionStatus.WAITING:
        raise GameInProgress()

    s = session.model_copy(deep=True)
    s.status = SessionStatus.PLAYING
    s.time_remaining = rules.GAME_DURATION
    s.winner = None
    s.attempts = {p.name: 0 for p in s.players}
    s.round += 1
    return s


def submit_guess(
    session: Session, name: str, guess: str, rules: Settings = settings
) -> Tuple[Session, GuessOutcome]:
    if session.status != SessionStatus.PLAYING:
        raise SessionInactive()
    if not session.find_player(name):
        raise PlayerNotFound()
    if session.current_master == name:
        raise MasterCannotGuess()
    if not guess.strip():
        raise InvalidInput("Guess cannot be empty")

    used = session.attempts.get(name, 0)
    if used >= rules.MAX_ATTEMPTS:
        raise NoAttemptsLeft()

    s = session.model_copy(deep=True)
    s.attempts[name] = used + 1
    outcome = GuessOutcome(
        correct=normalize(guess) == s.answer,
        attempts_left=rules.MAX_ATTEMPTS - (used + 1),
    )
    return s, outcome


def end_game(session: Session, winner_name: Optional[str] = None, rules: Settings = settings) -> Session:
    if session.status == SessionStatus.ENDED:
        return session.model_copy(deep=True)

    s = session.model_copy(deep=True)
    s.status = SessionStatus.ENDED
    s.winner = winner_name

    if winner_name:
        winner = s.find_player(winner_name)
        if winner:
            winner.score += rules.WINNING_POINTS

    if s.players:
        names = s.player_names()
        idx = names.index(s.current_master) if s.current_master in names else -1
        s.current_master = names[(idx + 1) % len(names)]

    return s


def reset_game_for_next_round(session: Session, rules: Settings = settings) -> Session:
    s = session.model_copy(deep=True)
    s.status = SessionStatus.WAITING
    s.question = ""
    s.answer = ""
    s.attempts = {}
    s.winner = None
    s.time_remaining = rules.GAME_DURATION
    return s


def tick(session: Session) -> Tuple[Session, TickOutcome]:
    if session.status != SessionStatus.PLAYING:
        raise SessionInactive()

    s = session.model_copy(deep=True)
    s.time_remaining -= 1
    return s, TickOutcome(time_remaining=s.time_remaining, time_up=s.time_remaining <= 0)
