from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from .config import Settings, configure_logging, settings as default_settings
from .errors import ErrorCategory, GameError
from .gateway import EventGateway
from .schemas import (
    ClientFrame,
    CreateSessionIn,
    GuessIn,
    JoinIn,
    LeaveIn,
    PublicSessionOut,
    SetQuestionIn,
    StartGameIn,
)
from .utils import now_ts

logger = logging.getLogger(__name__)

STATUS_BY_CATEGORY = {
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.CONFLICT: 409,
    ErrorCategory.INVALID_INPUT: 400,
    ErrorCategory.FORBIDDEN: 403,
    ErrorCategory.EXHAUSTED: 429,
    ErrorCategory.NOT_ENOUGH_PLAYERS: 409,
}


class WebSocketConnection:
    def __init__(self, websocket: WebSocket):
        self.id = uuid.uuid4().hex
        self.websocket = websocket

    async def send(self, message: dict[str, Any]) -> None:
        await self.websocket.send_json(message)


def http_error(exc: GameError) -> HTTPException:
    return HTTPException(
        status_code=STATUS_BY_CATEGORY.get(exc.category, 400),
        detail={"error": exc.message, "code": exc.code},
    )


def create_app(settings: Optional[Settings] = None, gateway: Optional[EventGateway] = None) -> FastAPI:
    settings = settings or default_settings
    configure_logging(settings.LOG_LEVEL)
    gateway = gateway or EventGateway(settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await gateway.shutdown()

    app = FastAPI(title="Guess Master API", lifespan=lifespan)
    app.state.gateway = gateway

    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "timestamp": now_ts(), "sessions": len(gateway.store)}

    @app.get("/api/sessions")
    async def list_sessions():
        return {"sessions": [PublicSessionOut.from_session(s).wire() for s in gateway.list_sessions()]}

    @app.get("/api/session/{session_id}")
    async def get_session(session_id: str):
        s = gateway.get_session(session_id)
        if not s:
            raise HTTPException(404, "Session not found")
        return PublicSessionOut.from_session(s).wire()

    @app.get("/api/session/{session_id}/events")
    async def list_events(session_id: str, after: int | None = None, limit: int = 200):
        events = gateway.hub.list(session_id, after=after, limit=limit)
        latest_seq = events[-1]["seq"] if events else after
        return {"events": events, "latest_seq": latest_seq}

    async def run_action(call, payload):
        try:
            return await call(payload)
        except GameError as exc:
            raise http_error(exc) from exc

    @app.post("/api/session")
    async def create_session(payload: CreateSessionIn):
        return await run_action(gateway.create_session, payload)

    @app.post("/api/join")
    async def join(payload: JoinIn):
        return await run_action(gateway.join_session, payload)

    @app.post("/api/question")
    async def set_question(payload: SetQuestionIn):
        return await run_action(gateway.set_question, payload)

    @app.post("/api/start")
    async def start(payload: StartGameIn):
        return await run_action(gateway.start_game, payload)

    @app.post("/api/guess")
    async def guess(payload: GuessIn):
        return await run_action(gateway.submit_guess, payload)

    @app.post("/api/leave")
    async def leave(payload: LeaveIn):
        return await run_action(gateway.leave_session, payload)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await websocket.accept()
        conn = WebSocketConnection(websocket)
        logger.info("client connected: %s", conn.id)
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    frame = ClientFrame.model_validate_json(raw)
                except ValidationError:
                    await conn.send({"event": "ack", "ack": None, "data": {"error": "Malformed frame", "code": "invalid_input"}})
                    continue
                ack = await gateway.handle(conn, frame.event, frame.data)
                await conn.send({"event": "ack", "ack": frame.ack, "data": ack})
        except WebSocketDisconnect:
            pass
        finally:
            logger.info("client disconnected: %s", conn.id)
            await gateway.disconnect(conn)

    return app


def run() -> None:
    import uvicorn

    uvicorn.run("backend.guessmaster.main:app", host=default_settings.HOST, port=default_settings.PORT)


app = create_app()
