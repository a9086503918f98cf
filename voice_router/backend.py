"""
backend.py — Voice Router · Reply Backend Client
=================================================
One POST per dispatch cycle:

    POST /api/chat   {"message": "...", "model": "gpt3"}
    200              {"data": "<base64 mp3>", "contentType": "audio/mp3", "model": "gpt3"}

Any non-2xx status, transport error, timeout or malformed body raises
``BackendError``.  Network errors, timeouts and 5xx responses are marked
retryable; 4xx and bad payloads are not.
"""

from __future__ import annotations

import base64
import binascii
import logging
import time
from typing import Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from voice_router.config import BackendConfig
from voice_router.errors import BackendError

log = logging.getLogger("voice_router.backend")


class ChatRequest(BaseModel):
    message: str
    model: Optional[str] = None


class ChatResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    data: str
    content_type: str = Field(alias="contentType")
    model: str


class Reply(BaseModel):
    """Decoded backend reply handed to playback."""
    audio: bytes
    content_type: str
    model_id: str


class BackendClient:
    def __init__(self, config: Optional[BackendConfig] = None, *, client: Optional[httpx.AsyncClient] = None):
        self.config = config or BackendConfig()
        self._client = client or httpx.AsyncClient(timeout=self.config.timeout_sec)
        self._owns_client = client is None

    async def generate_reply(self, text: str, model_id: Optional[str]) -> Reply:
        body = ChatRequest(message=text, model=model_id)
        started = time.monotonic()
        log.info("event=backend_request url=%s model=%s text_len=%d", self.config.url, model_id, len(text))

        try:
            response = await self._client.post(self.config.url, json=body.model_dump())
        except httpx.TimeoutException as exc:
            raise BackendError(f"backend timed out: {exc}", retryable=True) from exc
        except httpx.HTTPError as exc:
            raise BackendError(f"backend unreachable: {exc}", retryable=True) from exc

        if not response.is_success:
            raise BackendError(
                f"HTTP error! status: {response.status_code}",
                status_code=response.status_code,
                retryable=response.status_code >= 500,
            )

        try:
            payload = ChatResponse.model_validate(response.json())
            audio = base64.b64decode(payload.data, validate=True)
        except (ValueError, ValidationError, binascii.Error) as exc:
            raise BackendError(f"malformed backend reply: {exc}", status_code=response.status_code) from exc

        log.info(
            "event=backend_reply model=%s content_type=%s audio_bytes=%d elapsed_ms=%.1f",
            payload.model, payload.content_type, len(audio), (time.monotonic() - started) * 1000.0,
        )
        return Reply(audio=audio, content_type=payload.content_type, model_id=payload.model)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
