from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Set

from pydantic import BaseModel, ValidationError

from . import engine
from .config import Settings, settings as default_settings
from .errors import GameError, InvalidInput, PlayerNotFound, SessionNotFound
from .events import Connection, EventHub
from .models import EndReason, Session, SessionStatus
from .schemas import (
    CreateSessionIn,
    GameEndedOut,
    GuessIn,
    JoinIn,
    LeaveIn,
    MessageOut,
    PlayerJoinedOut,
    PublicSessionOut,
    SetQuestionIn,
    StartGameIn,
    TimerTickOut,
    WireModel,
)
from .store import SessionStore
from .timer import RoundTimer

logger = logging.getLogger(__name__)

Ack = Dict[str, Any]


@dataclass
class Binding:
    session_id: str
    player_name: str


class EventGateway:
    """Turns client actions into engine calls and state changes into broadcasts.

    Every read -> engine -> write -> broadcast sequence for a session runs
    under that session's lock, timer callbacks included, so a winning guess
    and a timeout tick can never both settle the same round.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[SessionStore] = None,
        hub: Optional[EventHub] = None,
        timer: Optional[RoundTimer] = None,
    ):
        self.settings = settings or default_settings
        self.store = store or SessionStore()
        self.hub = hub or EventHub(
            log_limit=self.settings.EVENT_LOG_LIMIT, send_timeout=self.settings.SEND_TIMEOUT
        )
        self.timer = timer or RoundTimer(tick_interval=self.settings.TICK_INTERVAL)
        self.locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._bindings: Dict[str, Binding] = {}
        self._leaving: Set[asyncio.Task] = set()
        self._handlers: Dict[str, tuple[type[BaseModel], Callable[..., Awaitable[Ack]]]] = {
            "create_session": (CreateSessionIn, self.create_session),
            "join_session": (JoinIn, self.join_session),
            "set_question": (SetQuestionIn, self.set_question),
            "start_game": (StartGameIn, self.start_game),
            "submit_guess": (GuessIn, self.submit_guess),
            "leave_session": (LeaveIn, self.leave_session),
        }

    @asynccontextmanager
    async def _lock(self, session_id: str, create: bool = False) -> AsyncIterator[None]:
        """Hold the lock of a stored session, or of one about to be created.

        Unknown ids fail with ``SessionNotFound`` before any lock is made. The
        last user of a lock discards it once the session is gone.
        """
        if not create and session_id not in self.store:
            raise SessionNotFound()
        lock = self.locks.setdefault(session_id, asyncio.Lock())
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            users = self._lock_users[session_id] - 1
            if users:
                self._lock_users[session_id] = users
            else:
                # nobody holds or waits on it any more
                del self._lock_users[session_id]
                if session_id not in self.store:
                    del self.locks[session_id]

    # ---- dispatch ----

    async def handle(self, conn: Optional[Connection], event: str, data: Dict[str, Any]) -> Ack:
        """Validate a client action, run it and return the ack for the originator."""
        entry = self._handlers.get(event)
        if entry is None:
            return InvalidInput(f"Unknown event: {event}").to_ack()
        schema, handler = entry
        try:
            payload = schema.model_validate(data or {})
            return await handler(payload, conn)
        except ValidationError as exc:
            return InvalidInput(_describe_validation_error(exc)).to_ack()
        except GameError as exc:
            logger.info("%s rejected: %s", event, exc.code)
            return exc.to_ack()
        except Exception:
            logger.exception("%s failed", event)
            return {"error": "Internal error", "code": "internal_error"}

    # ---- actions ----

    async def create_session(self, payload: CreateSessionIn, conn: Optional[Connection] = None) -> Ack:
        async with self._lock(payload.session_id, create=True):
            s = engine.create_session(payload.session_id, payload.player_name, rules=self.settings)
            self.store.create(s)
            self.hub.reset(s.id)
            self._bind(conn, s.id, s.host)

            await self._publish_session(s)
            logger.info("session created id=%s host=%s", s.id, s.host)
            return {"success": True, "session": self._view(s)}

    async def join_session(self, payload: JoinIn, conn: Optional[Connection] = None) -> Ack:
        async with self._lock(payload.session_id):
            s = self.store.require(payload.session_id)
            s = engine.join_session(s, payload.player_name, rules=self.settings)
            self.store.save(s)
            name = s.players[-1].name
            self._bind(conn, s.id, name)

            await self._publish_session(s)
            await self._broadcast(s.id, "player_joined", PlayerJoinedOut(player_name=name))
            logger.info("player joined id=%s name=%s", s.id, name)
            return {"success": True, "session": self._view(s)}

    async def set_question(self, payload: SetQuestionIn, conn: Optional[Connection] = None) -> Ack:
        requester = payload.player_name or self._bound_player(conn, payload.session_id)
        async with self._lock(payload.session_id):
            s = self.store.require(payload.session_id)
            s = engine.set_question(s, payload.question, payload.answer, requester=requester, rules=self.settings)
            self.store.save(s)

            await self._publish_session(s)
            await self._message(s.id, "Question has been set by the game master")
            return {"success": True}

    async def start_game(self, payload: StartGameIn, conn: Optional[Connection] = None) -> Ack:
        async with self._lock(payload.session_id):
            s = self.store.require(payload.session_id)
            s = engine.start_game(s, payload.player_name, rules=self.settings)
            self.store.save(s)

            self.timer.start(s.id, self._tick_callback(s.id, s.round))
            await self._broadcast(s.id, "game_started", PublicSessionOut.from_session(s))
            await self._message(s.id, f"Game started! Question: {s.question}")
            logger.info("round started id=%s round=%s master=%s", s.id, s.round, s.current_master)
            return {"success": True}

    async def submit_guess(self, payload: GuessIn, conn: Optional[Connection] = None) -> Ack:
        async with self._lock(payload.session_id):
            s = self.store.require(payload.session_id)
            s, outcome = engine.submit_guess(s, payload.player_name, payload.guess, rules=self.settings)

            if not outcome.correct:
                self.store.save(s)
                await self._publish_session(s)
                await self._message(
                    s.id,
                    f"{payload.player_name} guessed: {payload.guess} - Wrong! {outcome.attempts_left} attempts left",
                    kind="guess",
                )
                return {"success": True, "correct": False, "attemptsLeft": outcome.attempts_left}

            # stop the countdown before the round settles so no tick lands after it
            self.timer.cancel(s.id)
            s = engine.end_game(s, payload.player_name, rules=self.settings)
            self.store.save(s)
            self._schedule_reset(s.id, s.round)

            await self._broadcast(
                s.id,
                "game_ended",
                GameEndedOut(
                    session=PublicSessionOut.from_session(s),
                    reason=EndReason.WINNER,
                    winner=payload.player_name,
                ),
            )
            await self._message(s.id, f"{payload.player_name} won! The answer was: {s.answer}", kind="success")
            logger.info("round won id=%s round=%s winner=%s", s.id, s.round, payload.player_name)
            return {"success": True, "correct": True}

    async def leave_session(self, payload: LeaveIn, conn: Optional[Connection] = None) -> Ack:
        try:
            await self._remove_player(payload.session_id, payload.player_name, "left the game")
        finally:
            if conn is not None:
                self._unbind(conn, payload.session_id, payload.player_name)
        return {"success": True}

    async def disconnect(self, conn: Connection) -> None:
        """A dropped connection leaves the session exactly like ``leave_session``.

        The leave runs in a task of its own and completes even when the
        caller (usually a socket handler being torn down) is cancelled.
        """
        binding = self._bindings.get(conn.id)
        if binding is None:
            return
        self.hub.leave(binding.session_id, conn)
        task = asyncio.create_task(self._leave_on_disconnect(conn, binding))
        self._leaving.add(task)
        task.add_done_callback(self._leaving.discard)
        await asyncio.shield(task)

    async def shutdown(self) -> None:
        if self._leaving:
            await asyncio.gather(*self._leaving, return_exceptions=True)
        self.timer.cancel_all()

    # ---- reads ----

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.store.get(session_id)

    def list_sessions(self) -> list[Session]:
        return self.store.list()

    # ---- internals ----

    async def _remove_player(self, session_id: str, name: str, verb: str) -> None:
        async with self._lock(session_id):
            s = self.store.require(session_id)
            result = engine.leave_session(s, name)

            if result.deleted:
                self.timer.cancel(session_id)
                self.store.delete(session_id)
                self.hub.drop(session_id)
                logger.info("session deleted id=%s (last player %s %s)", session_id, name, verb)
                return

            s = result.session
            self.store.save(s)
            await self._publish_session(s)
            await self._message(s.id, f"{name} {verb}")
            logger.info("player %s id=%s name=%s master=%s", verb, s.id, name, s.current_master)

    async def _leave_on_disconnect(self, conn: Connection, binding: Binding) -> None:
        try:
            await self._remove_player(binding.session_id, binding.player_name, "disconnected")
        except (SessionNotFound, PlayerNotFound):
            # already gone through an explicit leave
            pass
        except Exception:
            logger.exception("leave on disconnect failed id=%s name=%s", binding.session_id, binding.player_name)
        if self._bindings.get(conn.id) is binding:
            del self._bindings[conn.id]

    def _tick_callback(self, session_id: str, round_no: int) -> Callable[[], Awaitable[bool]]:
        async def on_tick() -> bool:
            if session_id not in self.store:
                return False
            async with self._lock(session_id):
                s = self.store.get(session_id)
                if not s or s.status != SessionStatus.PLAYING or s.round != round_no:
                    logger.debug("tick aborted id=%s round=%s", session_id, round_no)
                    return False

                s, outcome = engine.tick(s)
                if not outcome.time_up:
                    self.store.save(s)
                    await self._broadcast(s.id, "timer_tick", TimerTickOut(time_remaining=outcome.time_remaining))
                    return True

                s = engine.end_game(s, None, rules=self.settings)
                self.store.save(s)
                self._schedule_reset(s.id, s.round)
                await self._broadcast(
                    s.id,
                    "game_ended",
                    GameEndedOut(session=PublicSessionOut.from_session(s), reason=EndReason.TIMEOUT),
                )
                await self._message(s.id, f"Time's up! The answer was: {s.answer}")
                logger.info("round timed out id=%s round=%s", s.id, s.round)
                return False

        return on_tick

    def _schedule_reset(self, session_id: str, round_no: int) -> None:
        async def reset() -> None:
            if session_id not in self.store:
                return
            async with self._lock(session_id):
                s = self.store.get(session_id)
                if not s or s.status != SessionStatus.ENDED or s.round != round_no:
                    return
                s = engine.reset_game_for_next_round(s, rules=self.settings)
                self.store.save(s)
                await self._publish_session(s)

        self.timer.schedule(session_id, self.settings.cleanup_delay_seconds, reset)

    def _bind(self, conn: Optional[Connection], session_id: str, name: str) -> None:
        if conn is None:
            return
        previous = self._bindings.get(conn.id)
        if previous and previous.session_id != session_id:
            self.hub.leave(previous.session_id, conn)
        self._bindings[conn.id] = Binding(session_id=session_id, player_name=name)
        self.hub.join(session_id, conn)

    def _unbind(self, conn: Connection, session_id: str, name: str) -> None:
        self.hub.leave(session_id, conn)
        binding = self._bindings.get(conn.id)
        if binding and binding.session_id == session_id and binding.player_name == name:
            del self._bindings[conn.id]

    def _bound_player(self, conn: Optional[Connection], session_id: str) -> Optional[str]:
        binding = self._bindings.get(conn.id) if conn is not None else None
        if binding and binding.session_id == session_id:
            return binding.player_name
        return None

    def _view(self, s: Session) -> Dict[str, Any]:
        return PublicSessionOut.from_session(s).wire()

    async def _publish_session(self, s: Session) -> None:
        await self.hub.broadcast(s.id, "session_updated", self._view(s))

    async def _broadcast(self, session_id: str, event: str, body: WireModel) -> None:
        await self.hub.broadcast(session_id, event, body.wire())

    async def _message(self, session_id: str, text: str, kind: str = "system") -> None:
        await self._broadcast(session_id, "message", MessageOut(text=text, type=kind))


def _describe_validation_error(exc: ValidationError) -> str:
    first = exc.errors()[0]
    where = ".".join(str(part) for part in first.get("loc", ()))
    return f"{where}: {first.get('msg')}" if where else str(first.get("msg"))
