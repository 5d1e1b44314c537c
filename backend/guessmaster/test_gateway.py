from __future__ import annotations

import asyncio
from unittest import IsolatedAsyncioTestCase, mock

from .config import Settings
from .gateway import EventGateway
from .models import SessionStatus


class _FakeConnection:
    def __init__(self, conn_id: str):
        self.id = conn_id
        self.frames: list[dict] = []

    async def send(self, message: dict) -> None:
        self.frames.append(message)

    def events(self, name: str | None = None) -> list[dict]:
        return [f["data"] for f in self.frames if name is None or f["event"] == name]

    def names(self) -> list[str]:
        return [f["event"] for f in self.frames]


class _BrokenConnection(_FakeConnection):
    async def send(self, message: dict) -> None:
        raise ConnectionResetError("gone")


class _StalledConnection(_FakeConnection):
    async def send(self, message: dict) -> None:
        await asyncio.sleep(10)


async def _wait_for(predicate, timeout: float = 3.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def _fast_settings(**overrides) -> Settings:
    values = dict(GAME_DURATION=3, TICK_INTERVAL=0.01, SESSION_CLEANUP_DELAY=50)
    values.update(overrides)
    return Settings(_env_file=None, **values)


class GatewayTestCase(IsolatedAsyncioTestCase):
    settings_overrides: dict = {}

    def setUp(self) -> None:
        self.gateway = EventGateway(settings=_fast_settings(**self.settings_overrides))
        self.a = _FakeConnection("conn-a")
        self.b = _FakeConnection("conn-b")
        self.c = _FakeConnection("conn-c")

    async def asyncTearDown(self) -> None:
        await self.gateway.shutdown()

    async def act(self, conn, event: str, **data) -> dict:
        return await self.gateway.handle(conn, event, data)

    async def room_of_three(self) -> None:
        ack = await self.act(self.a, "create_session", sessionId="room", playerName="A")
        self.assertTrue(ack["success"])
        await self.act(self.b, "join_session", sessionId="room", playerName="B")
        await self.act(self.c, "join_session", sessionId="room", playerName="C")

    async def playing_room(self) -> None:
        await self.room_of_three()
        ack = await self.act(self.a, "set_question", sessionId="room", question="capital of France", answer="paris")
        self.assertEqual(ack, {"success": True})
        ack = await self.act(self.a, "start_game", sessionId="room", playerName="A")
        self.assertEqual(ack, {"success": True})


class SessionLifecycleTests(GatewayTestCase):
    async def test_create_and_join_broadcast_to_members(self):
        await self.room_of_three()

        self.assertIn("player_joined", self.a.names())
        self.assertEqual(self.a.events("player_joined")[-1], {"playerName": "C"})
        latest = self.a.events("session_updated")[-1]
        self.assertEqual([p["name"] for p in latest["players"]], ["A", "B", "C"])
        self.assertEqual(latest["currentMaster"], "A")

    async def test_duplicate_create_is_rejected(self):
        await self.act(self.a, "create_session", sessionId="room", playerName="A")

        ack = await self.act(self.b, "create_session", sessionId="room", playerName="B")

        self.assertEqual(ack["code"], "already_exists")

    async def test_join_unknown_session(self):
        ack = await self.act(self.a, "join_session", sessionId="nope", playerName="A")

        self.assertEqual(ack, {"error": "Session not found", "code": "session_not_found"})

    async def test_errors_go_to_originator_only(self):
        await self.room_of_three()
        before = list(self.a.frames)

        ack = await self.act(self.b, "join_session", sessionId="room", playerName="A")

        self.assertEqual(ack["code"], "name_taken")
        self.assertEqual(self.a.frames, before)

    async def test_unknown_event_and_bad_payload(self):
        ack = await self.act(self.a, "dance", sessionId="room")
        self.assertEqual(ack["code"], "invalid_input")

        ack = await self.act(self.a, "create_session", sessionId="room")
        self.assertEqual(ack["code"], "invalid_input")
        self.assertIn("playerName", ack["error"])

    async def test_master_leaving_hands_over(self):
        await self.room_of_three()

        ack = await self.act(self.a, "leave_session", sessionId="room", playerName="A")

        self.assertEqual(ack, {"success": True})
        self.assertEqual(self.gateway.get_session("room").current_master, "B")
        self.assertIn({"text": "A left the game", "type": "system"}, self.b.events("message"))
        # the leaver no longer receives room broadcasts
        await self.act(self.b, "set_question", sessionId="room", question="q", answer="a")
        self.assertNotIn({"text": "Question has been set by the game master", "type": "system"}, self.a.events("message"))
        self.assertIn({"text": "Question has been set by the game master", "type": "system"}, self.c.events("message"))

    async def test_disconnect_is_leave(self):
        await self.room_of_three()

        await self.gateway.disconnect(self.c)

        self.assertEqual(self.gateway.get_session("room").player_names(), ["A", "B"])
        self.assertIn({"text": "C disconnected", "type": "system"}, self.a.events("message"))

    async def test_disconnect_after_leave_is_quiet(self):
        await self.room_of_three()
        await self.act(self.c, "leave_session", sessionId="room", playerName="C")

        await self.gateway.disconnect(self.c)

        self.assertEqual(self.gateway.get_session("room").player_names(), ["A", "B"])

    async def test_last_player_leaving_deletes_session(self):
        await self.act(self.a, "create_session", sessionId="room", playerName="A")

        await self.gateway.disconnect(self.a)

        self.assertIsNone(self.gateway.get_session("room"))
        self.assertEqual(self.gateway.list_sessions(), [])
        self.assertEqual(self.gateway.hub.members("room"), [])
        self.assertEqual(self.gateway.locks, {})
        self.assertEqual(self.gateway.hub.list("room"), [])

    async def test_cancelled_disconnect_still_leaves(self):
        await self.room_of_three()

        async with self.gateway._lock("room"):
            pending = asyncio.create_task(self.gateway.disconnect(self.c))
            await asyncio.sleep(0.01)
            pending.cancel()
            await asyncio.sleep(0)
            self.assertIn("conn-c", self.gateway._bindings)
        with self.assertRaises(asyncio.CancelledError):
            await pending

        await _wait_for(lambda: "conn-c" not in self.gateway._bindings)
        self.assertEqual(self.gateway.get_session("room").player_names(), ["A", "B"])
        self.assertIn({"text": "C disconnected", "type": "system"}, self.a.events("message"))

    async def test_cancelled_disconnect_of_last_player_destroys_session(self):
        await self.act(self.a, "create_session", sessionId="room", playerName="A")

        async with self.gateway._lock("room"):
            pending = asyncio.create_task(self.gateway.disconnect(self.a))
            await asyncio.sleep(0.01)
            pending.cancel()
        await self.gateway.shutdown()

        self.assertIsNone(self.gateway.get_session("room"))
        self.assertEqual(self.gateway.locks, {})

    async def test_unknown_sessions_do_not_create_locks(self):
        for i in range(5):
            sid = f"nope-{i}"
            for event in ("join_session", "start_game", "leave_session"):
                ack = await self.act(self.a, event, sessionId=sid, playerName="A")
                self.assertEqual(ack["code"], "session_not_found")
            ack = await self.act(self.a, "submit_guess", sessionId=sid, playerName="A", guess="x")
            self.assertEqual(ack["code"], "session_not_found")
            ack = await self.act(self.a, "set_question", sessionId=sid, question="q", answer="a", playerName="A")
            self.assertEqual(ack["code"], "session_not_found")
        ack = await self.act(self.a, "create_session", sessionId="blank", playerName="  ")
        self.assertEqual(ack["code"], "invalid_input")

        self.assertEqual(self.gateway.locks, {})

    async def test_names_are_matched_verbatim(self):
        await self.act(self.a, "create_session", sessionId="room", playerName="A")
        ack = await self.act(self.b, "join_session", sessionId="room", playerName="Bob ")
        self.assertEqual([p["name"] for p in ack["session"]["players"]], ["A", "Bob "])

        ack = await self.act(self.b, "leave_session", sessionId="room", playerName="Bob ")

        self.assertEqual(ack, {"success": True})
        self.assertEqual(self.gateway.get_session("room").player_names(), ["A"])

    async def test_broken_connection_does_not_block_room(self):
        broken = _BrokenConnection("conn-x")
        await self.room_of_three()
        self.gateway.hub.join("room", broken)

        with self.assertLogs("backend.guessmaster.events", level="WARNING"):
            await self.act(self.a, "set_question", sessionId="room", question="q", answer="a")

        self.assertIn({"text": "Question has been set by the game master", "type": "system"}, self.b.events("message"))


class StalledConnectionTests(GatewayTestCase):
    settings_overrides = {"SEND_TIMEOUT": 0.05}

    async def test_stalled_connection_does_not_hold_up_room(self):
        await self.room_of_three()
        self.gateway.hub.join("room", _StalledConnection("conn-x"))
        loop = asyncio.get_running_loop()
        started = loop.time()

        with self.assertLogs("backend.guessmaster.events", level="WARNING") as logs:
            await self.act(self.a, "set_question", sessionId="room", question="q", answer="a")

        self.assertLess(loop.time() - started, 1.0)
        self.assertIn("timed out", logs.output[0])
        self.assertIn({"text": "Question has been set by the game master", "type": "system"}, self.b.events("message"))


class QuestionTests(GatewayTestCase):
    async def test_only_master_sets_question(self):
        await self.room_of_three()

        ack = await self.act(self.b, "set_question", sessionId="room", question="q", answer="a")
        self.assertEqual(ack["code"], "not_master")

        ack = await self.act(None, "set_question", sessionId="room", question="q", answer="a", playerName="A")
        self.assertEqual(ack, {"success": True})

    async def test_answer_hidden_while_playing(self):
        await self.playing_room()

        started = self.b.events("game_started")[-1]
        self.assertEqual(started["status"], "playing")
        self.assertIsNone(started["answer"])
        self.assertEqual(started["timeRemaining"], 3)
        self.assertIn({"text": "Game started! Question: capital of France", "type": "system"}, self.b.events("message"))


class PermissiveQuestionTests(GatewayTestCase):
    settings_overrides = {"ENFORCE_MASTER_QUESTION": False}

    async def test_any_player_may_set_question(self):
        await self.room_of_three()

        ack = await self.act(self.b, "set_question", sessionId="room", question="q", answer="a")

        self.assertEqual(ack, {"success": True})


class RoundTests(GatewayTestCase):
    settings_overrides = {"GAME_DURATION": 60}

    async def test_start_needs_two_players(self):
        await self.act(self.a, "create_session", sessionId="room", playerName="A")
        await self.act(self.a, "set_question", sessionId="room", question="q", answer="a")

        ack = await self.act(self.a, "start_game", sessionId="room", playerName="A")

        self.assertEqual(ack["code"], "not_enough_players")

    async def test_winning_guess_settles_round(self):
        await self.playing_room()

        ack = await self.act(self.b, "submit_guess", sessionId="room", playerName="B", guess="Paris")

        self.assertEqual(ack, {"success": True, "correct": True})
        ended = self.c.events("game_ended")[-1]
        self.assertEqual(ended["reason"], "winner")
        self.assertEqual(ended["winner"], "B")
        self.assertEqual(ended["session"]["status"], "ended")
        self.assertEqual(ended["session"]["answer"], "paris")
        self.assertEqual(ended["session"]["currentMaster"], "B")

        s = self.gateway.get_session("room")
        self.assertEqual(s.find_player("B").score, 10)
        self.assertEqual(s.winner, "B")
        self.assertIn({"text": "B won! The answer was: paris", "type": "success"}, self.a.events("message"))

    async def test_wrong_guesses_exhaust(self):
        await self.playing_room()

        for left in (2, 1, 0):
            ack = await self.act(self.c, "submit_guess", sessionId="room", playerName="C", guess="lyon")
            self.assertEqual(ack, {"success": True, "correct": False, "attemptsLeft": left})

        ack = await self.act(self.c, "submit_guess", sessionId="room", playerName="C", guess="paris")

        self.assertEqual(ack["code"], "no_attempts_left")
        self.assertEqual(self.gateway.get_session("room").attempts["C"], 3)
        self.assertIn({"text": "C guessed: lyon - Wrong! 0 attempts left", "type": "guess"}, self.a.events("message"))

    async def test_master_cannot_guess(self):
        await self.playing_room()

        ack = await self.act(self.a, "submit_guess", sessionId="room", playerName="A", guess="paris")

        self.assertEqual(ack["code"], "master_cannot_guess")

    async def test_concurrent_guesses_award_once(self):
        await self.playing_room()

        acks = await asyncio.gather(
            self.act(self.b, "submit_guess", sessionId="room", playerName="B", guess="paris"),
            self.act(self.c, "submit_guess", sessionId="room", playerName="C", guess="paris"),
        )

        self.assertEqual(acks[0], {"success": True, "correct": True})
        self.assertEqual(acks[1]["code"], "session_inactive")
        s = self.gateway.get_session("room")
        self.assertEqual([p.score for p in s.players], [0, 10, 0])
        self.assertEqual(len(self.a.events("game_ended")), 1)

    async def test_winning_guess_cancels_ticking(self):
        await self.playing_room()
        await _wait_for(lambda: len(self.a.events("timer_tick")) >= 1)

        await self.act(self.b, "submit_guess", sessionId="room", playerName="B", guess="paris")
        ticks = len(self.a.events("timer_tick"))
        await asyncio.sleep(0.03)

        self.assertEqual(len(self.a.events("timer_tick")), ticks)

    async def test_master_leaving_mid_round(self):
        await self.playing_room()

        await self.act(self.a, "leave_session", sessionId="room", playerName="A")

        s = self.gateway.get_session("room")
        self.assertEqual(s.status, SessionStatus.PLAYING)
        self.assertEqual(s.current_master, "B")
        self.assertTrue(self.gateway.timer.is_active("room"))
        ack = await self.act(self.b, "submit_guess", sessionId="room", playerName="B", guess="paris")
        self.assertEqual(ack["code"], "master_cannot_guess")

        ack = await self.act(self.c, "submit_guess", sessionId="room", playerName="C", guess="paris")

        self.assertEqual(ack, {"success": True, "correct": True})
        ended = self.b.events("game_ended")[-1]
        self.assertEqual(ended["winner"], "C")
        self.assertEqual(ended["session"]["currentMaster"], "C")


class TimeoutTests(GatewayTestCase):
    async def test_timeout_ends_round_then_resets(self):
        await self.playing_room()

        await _wait_for(lambda: self.a.events("game_ended"))
        await _wait_for(lambda: {"text": "Time's up! The answer was: paris", "type": "system"} in self.a.events("message"))
        ended = self.a.events("game_ended")[-1]
        self.assertEqual(ended["reason"], "timeout")
        self.assertIsNone(ended["winner"])
        self.assertEqual(ended["session"]["currentMaster"], "B")
        self.assertEqual([t["timeRemaining"] for t in self.a.events("timer_tick")], [2, 1])
        self.assertIn({"text": "Time's up! The answer was: paris", "type": "system"}, self.a.events("message"))
        self.assertEqual(self.gateway.get_session("room").status, SessionStatus.ENDED)

        await _wait_for(lambda: self.gateway.get_session("room").status == SessionStatus.WAITING)
        s = self.gateway.get_session("room")
        self.assertEqual((s.question, s.answer, s.winner, s.attempts), ("", "", None, {}))
        self.assertEqual(s.current_master, "B")
        self.assertEqual(self.a.events("session_updated")[-1]["status"], "waiting")

    async def test_next_round_after_reset(self):
        await self.playing_room()
        await self.act(self.b, "submit_guess", sessionId="room", playerName="B", guess="paris")
        await _wait_for(lambda: self.gateway.get_session("room").status == SessionStatus.WAITING)

        await self.act(self.b, "set_question", sessionId="room", question="2+2", answer="Four")
        ack = await self.act(self.b, "start_game", sessionId="room", playerName="B")

        self.assertEqual(ack, {"success": True})
        s = self.gateway.get_session("room")
        self.assertEqual(s.round, 2)
        self.assertEqual(s.attempts, {"A": 0, "B": 0, "C": 0})

    async def test_everyone_leaving_cancels_timer(self):
        await self.playing_room()

        for conn in (self.a, self.b, self.c):
            await self.gateway.disconnect(conn)

        self.assertIsNone(self.gateway.get_session("room"))
        self.assertFalse(self.gateway.timer.is_active("room"))

    async def test_pending_reset_dies_with_session(self):
        await self.playing_room()
        await self.act(self.b, "submit_guess", sessionId="room", playerName="B", guess="paris")

        with mock.patch.object(self.gateway.store, "save", wraps=self.gateway.store.save) as save:
            await self.gateway.disconnect(self.a)
            await self.gateway.disconnect(self.b)
            await self.gateway.disconnect(self.c)
            await asyncio.sleep(0.1)

        self.assertIsNone(self.gateway.get_session("room"))
        self.assertEqual(save.call_count, 2)


class EventLogTests(GatewayTestCase):
    async def test_broadcasts_are_logged_in_order(self):
        await self.room_of_three()

        events = self.gateway.hub.list("room")
        seqs = [e["seq"] for e in events]
        self.assertEqual(seqs, sorted(seqs))
        self.assertEqual(events[0]["payload"], {"type": "session_reset"})
        self.assertEqual(events[-1]["payload"]["type"], "player_joined")

        later = self.gateway.hub.list("room", after=seqs[-2])
        self.assertEqual([e["seq"] for e in later], [seqs[-1]])

    async def test_recreated_session_keeps_counting_and_log_is_dropped(self):
        first_seqs = []
        for _ in range(3):
            await self.act(self.a, "create_session", sessionId="room", playerName="A")
            first_seqs.append(self.gateway.hub.list("room")[0]["seq"])

            await self.act(self.a, "leave_session", sessionId="room", playerName="A")

            self.assertEqual(self.gateway.hub.list("room"), [])
            self.assertEqual(self.gateway.hub._events, {})
            self.assertEqual(self.gateway.hub._groups, {})

        self.assertEqual(first_seqs, sorted(set(first_seqs)))
