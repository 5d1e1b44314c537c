from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol

from .utils import now_ts

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """A live client connection that can receive pushed frames."""

    id: str

    async def send(self, message: dict[str, Any]) -> None: ...


class EventHub:
    """Session socket groups plus a per-session event log clients can poll via HTTP."""

    def __init__(self, log_limit: int = 500, send_timeout: float = 2.0):
        self.log_limit = log_limit
        self.send_timeout = send_timeout
        self._groups: Dict[str, Dict[str, Connection]] = {}
        self._events: Dict[str, List[dict[str, Any]]] = {}
        # shared by all sessions so a re-created session id never reuses numbers
        self._seq = 0

    def join(self, session_id: str, conn: Connection) -> None:
        self._groups.setdefault(session_id, {})[conn.id] = conn

    def leave(self, session_id: str, conn: Connection) -> None:
        group = self._groups.get(session_id)
        if group is None:
            return
        group.pop(conn.id, None)
        if not group:
            del self._groups[session_id]

    def members(self, session_id: str) -> List[Connection]:
        return list(self._groups.get(session_id, {}).values())

    def append(self, session_id: str, payload: dict[str, Any]) -> int:
        """Store a new event for a session and return its sequence number."""

        self._seq += 1
        log = self._events.setdefault(session_id, [])
        log.append({"seq": self._seq, "timestamp": now_ts(), "payload": payload})
        if len(log) > self.log_limit:
            del log[: len(log) - self.log_limit]
        return self._seq

    async def broadcast(self, session_id: str, event: str, data: dict[str, Any]) -> int:
        """Log an event and push it to every connection in the session group.

        Sends are fire-and-forget: a connection that fails or stalls past
        ``send_timeout`` is logged and skipped, the rest of the group still
        gets the frame.
        """

        seq = self.append(session_id, {"type": event, "data": data})
        frame = {"event": event, "data": data, "seq": seq}
        members = self.members(session_id)
        if members:
            await asyncio.gather(*(self.send(conn, frame) for conn in members))
        return seq

    async def send(self, conn: Connection, frame: dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(conn.send(frame), self.send_timeout)
        except asyncio.TimeoutError:
            logger.warning("send to connection %s timed out after %.1fs", conn.id, self.send_timeout)
            return False
        except Exception as exc:
            logger.warning("send to connection %s failed: %s", conn.id, exc)
            return False
        return True

    def list(self, session_id: str, after: Optional[int] = None, limit: int = 200) -> List[dict[str, Any]]:
        """Return events for a session that occur after the given sequence."""

        events = self._events.get(session_id, [])
        if after is not None:
            events = [e for e in events if e["seq"] > after]
        return [dict(e) for e in events[:limit]]

    def reset(self, session_id: str) -> None:
        """Clear stored events for a session and emit a reset marker."""

        self._events.pop(session_id, None)
        self.append(session_id, {"type": "session_reset"})

    def drop(self, session_id: str) -> None:
        """Forget everything about a destroyed session."""

        self._groups.pop(session_id, None)
        self._events.pop(session_id, None)
