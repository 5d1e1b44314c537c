"""Failures raised by the session engine and store.

Every error is a ``ValueError`` so request handlers can keep catching the
broad type, while the gateway reads ``code`` and ``category`` to build the
error ack sent back to the originating client.
"""

from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_INPUT = "invalid_input"
    FORBIDDEN = "forbidden"
    EXHAUSTED = "exhausted"
    NOT_ENOUGH_PLAYERS = "not_enough_players"


class GameError(ValueError):
    code = "game_error"
    category = ErrorCategory.CONFLICT
    default_message = "Request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_ack(self) -> dict:
        return {"error": self.message, "code": self.code}


class NotFound(GameError):
    code = "not_found"
    category = ErrorCategory.NOT_FOUND
    default_message = "Not found"


class SessionNotFound(NotFound):
    code = "session_not_found"
    default_message = "Session not found"


class PlayerNotFound(NotFound):
    code = "player_not_found"
    default_message = "Player not in session"


class Conflict(GameError):
    code = "conflict"
    category = ErrorCategory.CONFLICT


class AlreadyExists(Conflict):
    code = "already_exists"
    default_message = "Session already exists"


class NameTaken(Conflict):
    code = "name_taken"
    default_message = "Name already taken"


class GameInProgress(Conflict):
    code = "game_in_progress"
    default_message = "Game in progress"


class SessionFull(Conflict):
    code = "session_full"
    default_message = "Session is full"


class SessionInactive(Conflict):
    code = "session_inactive"
    default_message = "Game not active"


class QuestionNotSet(Conflict):
    code = "question_not_set"
    default_message = "Set question first"


class InvalidInput(GameError):
    code = "invalid_input"
    category = ErrorCategory.INVALID_INPUT
    default_message = "Invalid input"


class Forbidden(GameError):
    code = "forbidden"
    category = ErrorCategory.FORBIDDEN
    default_message = "Not allowed"


class NotMaster(Forbidden):
    code = "not_master"
    default_message = "Only master can do that"


class MasterCannotGuess(Forbidden):
    code = "master_cannot_guess"
    default_message = "Master cannot guess"


class NoAttemptsLeft(GameError):
    code = "no_attempts_left"
    category = ErrorCategory.EXHAUSTED
    default_message = "No attempts left"


class NotEnoughPlayers(GameError):
    code = "not_enough_players"
    category = ErrorCategory.NOT_ENOUGH_PLAYERS
    default_message = "Not enough players"
