"""
RTMS Webhook Server
===================

Receives the streaming provider's webhook events and drives the protocol
client (``rtms/``) for every stream:

- ``session.rtms_started`` → open signaling + media connections for the
  session, buffer its transcript and classify the emotion of each batch.
- ``session.rtms_stopped`` → close both connections and forget the session.

Everything else is acknowledged and ignored. Inbound webhooks are not
authenticated.

Usage
-----
    source .venv/bin/activate
    python server.py
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from logging import getLogger
from typing import Any, Dict

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from config import CLASSIFIER_MODEL_ID, GEMINI_API_KEY, HOST, PORT
from helpers.emotion_classifier import GeminiEmotionClassifier
from rtms.client_config import RtmsClientConfig
from rtms.controller import SessionController
from rtms.errors import DuplicateSessionError
from rtms.utils import setup_logging

logger = getLogger(__name__)

EVENT_RTMS_STARTED = "session.rtms_started"
EVENT_RTMS_STOPPED = "session.rtms_stopped"


class WebhookEvent(BaseModel):
    event: str
    payload: Dict[str, Any] = Field(default_factory=dict)


def create_app(controller: SessionController) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        await controller.shutdown()

    app = FastAPI(title="RTMS transcript sentiment", lifespan=lifespan)
    app.state.controller = controller

    @app.get("/", response_class=PlainTextResponse)
    async def index() -> str:
        return "RTMS sample server running."

    @app.get("/sessions")
    async def list_sessions() -> list:
        return [session.snapshot() for session in controller.sessions()]

    @app.post("/webhook")
    async def webhook(body: WebhookEvent) -> Dict[str, str]:
        payload = body.payload

        if body.event == EVENT_RTMS_STARTED:
            session_id = payload.get("session_id")
            stream_id = payload.get("rtms_stream_id")
            signaling_url = payload.get("server_urls")
            if not all(isinstance(value, str) and value for value in (session_id, stream_id, signaling_url)):
                logger.warning("[WEBHOOK] %s with incomplete payload: %r", body.event, payload)
                raise HTTPException(status_code=400, detail="session_id, rtms_stream_id and server_urls are required")

            logger.info("[WEBHOOK] Starting RTMS for session %s (stream %s)", session_id, stream_id)
            try:
                await controller.start(session_id, stream_id, signaling_url)
            except DuplicateSessionError as e:
                raise HTTPException(status_code=409, detail=str(e))
            return {"status": "started"}

        if body.event == EVENT_RTMS_STOPPED:
            session_id = payload.get("session_id")
            if not isinstance(session_id, str) or not session_id:
                raise HTTPException(status_code=400, detail="session_id is required")
            logger.info("[WEBHOOK] Stopping RTMS for session %s", session_id)
            stopped = await controller.stop(session_id)
            return {"status": "stopped" if stopped else "not_found"}

        logger.info("[WEBHOOK] Unknown event: %s", body.event)
        return {"status": "ignored"}

    return app


def main() -> None:
    setup_logging()
    classifier = GeminiEmotionClassifier(api_key=GEMINI_API_KEY, model_id=CLASSIFIER_MODEL_ID)
    controller = SessionController(RtmsClientConfig.from_env(), classifier)
    logger.info("Server is running on port %d", PORT)
    uvicorn.run(create_app(controller), host=HOST, port=PORT, log_config=None)


if __name__ == "__main__":
    main()
