"""FastAPI dashboard over one chat session."""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from fitchat.messaging.envelope import Envelope
from fitchat.messaging.service import ChatSession


def _envelopes(items: list[Envelope]) -> list[dict]:
    return [item.to_dict() for item in items]


def create_app(session: ChatSession) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await session.connect()
        try:
            yield
        finally:
            await session.close()

    app = FastAPI(title="fitchat", lifespan=lifespan)
    app.state.session = session

    def _session(request: Request) -> ChatSession:
        return request.app.state.session

    @app.get("/api/status")
    async def get_status(request: Request):
        s = _session(request)
        if s.connected:
            status = "online"
        elif s.connecting:
            status = "connecting"
        else:
            status = "offline"
        return {
            "status": status,
            "user_id": s.local_user_id,
            "topic": s.transport.topic,
            "conversations": len(s.messages()),
        }

    @app.post("/api/chat/send")
    async def send_message(request: Request, receiver: str, text: str):
        s = _session(request)
        if not text.strip():
            return JSONResponse(status_code=400, content={"status": "error", "message": "Empty message"})
        if not s.connected:
            return JSONResponse(status_code=503, content={"status": "error", "message": "Not connected"})
        if not await s.send_message(receiver, text):
            return JSONResponse(status_code=502, content={"status": "error", "message": "Message failed"})
        return {"status": "ok"}

    @app.get("/api/chat/{counterparty}")
    async def get_conversation(request: Request, counterparty: str):
        return _envelopes(_session(request).load_chat_history(counterparty))

    @app.get("/api/conversations")
    async def list_conversations(request: Request):
        return {peer: _envelopes(items) for peer, items in _session(request).messages().items()}

    @app.get("/api/notifications")
    async def get_notifications(request: Request):
        return [
            {"title": n.title, "description": n.description, "variant": n.variant}
            for n in _session(request).drain_notifications()
        ]

    return app


def start_dashboard(session: ChatSession, host: str = "127.0.0.1", port: int = 8000) -> None:
    print(f"\n[DASHBOARD] Starting Web UI on http://{host}:{port}")
    uvicorn.run(create_app(session), host=host, port=port)
