"""
server.py — Voice Router · FastAPI Reply Server
================================================
Turns a spoken utterance into a spoken reply.  The voice client posts the
transcript plus the model it detected; the server answers with base64 mp3.

Endpoints
---------
  POST /api/chat     {"message", "model"} → {"data", "contentType", "model"}
  GET  /health       Service liveness
  GET  /config       Active configuration
  PUT  /config       Merge a partial patch, validate, persist

Usage
-----
    voice-router-server --host 127.0.0.1 --port 8000 --config voice_router.json
"""

from __future__ import annotations

import argparse
import base64
import logging
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from voice_router.config import VoiceRouterConfig, setup_logging
from voice_router.errors import ReplyGenerationError, UnknownModelError
from voice_router.replies import ReplyGenerator

load_dotenv()

log = logging.getLogger("voice_router.server")

CONFIG_PATH = os.getenv("VOICE_ROUTER_CONFIG", "voice_router.json")


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class ChatBody(BaseModel):
    message: str
    model: Optional[str] = None


class ChatReply(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    data: str
    content_type: str = Field(alias="contentType")
    model: str


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

def create_app(
    config: Optional[VoiceRouterConfig] = None,
    *,
    config_path: str | Path = CONFIG_PATH,
    generator: Optional[ReplyGenerator] = None,
) -> FastAPI:
    config_path = Path(config_path)

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        log.info("event=server_start config=%s", config_path)
        app.state.started_at = time.monotonic()
        yield
        log.info("event=server_stopped")

    app = FastAPI(
        title="Voice Router",
        version="1.0.0",
        description="Spoken prompt → model reply → speech",
        lifespan=_lifespan,
    )
    app.state.config = config or VoiceRouterConfig.load(config_path)
    app.state.generator = generator or ReplyGenerator(app.state.config)
    app.state.started_at = time.monotonic()

    # Allow any local origin to reach the API (dev only)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------------
    # Endpoints
    # -----------------------------------------------------------------------

    @app.post("/api/chat", response_model=ChatReply)
    async def chat(body: ChatBody) -> ChatReply:
        """Generate a spoken reply for one utterance."""
        log.info("event=chat_request model=%s message_len=%d", body.model, len(body.message))
        generator: ReplyGenerator = app.state.generator
        try:
            reply = await generator.generate(body.message, body.model)
        except UnknownModelError as exc:
            log.warning("event=chat_rejected error=%s", exc)
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except ReplyGenerationError as exc:
            log.error("event=chat_failed model=%s error=%s", body.model, exc)
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

        return ChatReply(
            data=base64.b64encode(reply.audio).decode("ascii"),
            content_type=reply.content_type,
            model=reply.model,
        )

    @app.get("/health")
    async def health() -> JSONResponse:
        """Liveness check."""
        return JSONResponse({
            "status":     "ok",
            "uptime_sec": round(time.monotonic() - app.state.started_at, 1),
        })

    @app.get("/config")
    async def get_config() -> JSONResponse:
        cfg: VoiceRouterConfig = app.state.config
        return JSONResponse(cfg.model_dump(mode="json"))

    @app.put("/config")
    async def put_config(patch: dict) -> JSONResponse:
        """Merge a partial config, e.g. {"groq": {"temperature": 0.7}}."""
        try:
            updated = app.state.config.merge_patch(patch)
        except ValidationError as exc:
            raise HTTPException(
                status_code=422,
                detail=exc.errors(include_url=False, include_context=False),
            ) from exc

        app.state.config = updated
        app.state.generator.config = updated
        try:
            updated.save(config_path)
        except OSError as exc:
            log.warning("event=config_save_failed path=%s error=%s", config_path, exc)
        log.info("event=config_updated keys=%s", ",".join(sorted(patch)))
        return JSONResponse(updated.model_dump(mode="json"))

    return app


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------

def main() -> None:
    import uvicorn

    parser = argparse.ArgumentParser(description="Voice Router reply server")
    parser.add_argument("--host", default=os.getenv("VOICE_ROUTER_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("VOICE_ROUTER_PORT", "8000")))
    parser.add_argument("--config", default=CONFIG_PATH, help="Path to JSON config")
    args = parser.parse_args()

    setup_logging()
    app = create_app(config_path=args.config)
    uvicorn.run(app, host=args.host, port=args.port, log_level="info")


if __name__ == "__main__":
    main()
