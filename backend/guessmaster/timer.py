from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Awaitable[bool]]
DelayedCallback = Callable[[], Awaitable[None]]


class RoundTimer:
    """Per-session countdown coordinator.

    Holds at most one asyncio task per session id: either the repeating tick
    loop of a running round or the one-shot delayed reset that follows it.
    Registering a new handle for a session cancels the previous one.
    """

    def __init__(self, tick_interval: float = 1.0):
        self.tick_interval = tick_interval
        self._tasks: Dict[str, asyncio.Task] = {}

    def start(self, session_id: str, on_tick: TickCallback) -> None:
        """Call ``on_tick`` every ``tick_interval`` seconds until it returns False."""
        self._register(session_id, self._run_ticks(session_id, on_tick))

    def schedule(self, session_id: str, delay: float, callback: DelayedCallback) -> None:
        """Call ``callback`` once after ``delay`` seconds."""
        self._register(session_id, self._run_once(session_id, delay, callback))

    def cancel(self, session_id: str) -> bool:
        task = self._tasks.pop(session_id, None)
        if task is None:
            return False
        # a handle may cancel itself from inside its own callback; in that
        # case it is unregistered and allowed to run to completion
        if task is not asyncio.current_task() and not task.done():
            task.cancel()
        logger.debug("timer cancelled session=%s", session_id)
        return True

    def cancel_all(self) -> None:
        for session_id in list(self._tasks):
            self.cancel(session_id)

    def is_active(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    def _register(self, session_id: str, coro) -> None:
        self.cancel(session_id)
        self._tasks[session_id] = asyncio.create_task(coro, name=f"round-timer:{session_id}")

    def _release(self, session_id: str) -> None:
        if self._tasks.get(session_id) is asyncio.current_task():
            del self._tasks[session_id]

    async def _run_ticks(self, session_id: str, on_tick: TickCallback) -> None:
        try:
            while True:
                await asyncio.sleep(self.tick_interval)
                if not await on_tick():
                    break
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("tick callback failed session=%s", session_id)
        finally:
            self._release(session_id)

    async def _run_once(self, session_id: str, delay: float, callback: DelayedCallback) -> None:
        try:
            await asyncio.sleep(delay)
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("delayed callback failed session=%s", session_id)
        finally:
            self._release(session_id)

    @property
    def active_sessions(self) -> list[str]:
        return [sid for sid, task in self._tasks.items() if not task.done()]
