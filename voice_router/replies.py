"""
replies.py — Voice Router · Reply Generation
=============================================
What stands behind POST /api/chat:

    message  → lower-case, drop the spoken keyword (first word)
             → common prompt + message
             → completion  (gpt4 / gpt3: OpenAI, llama: Groq-hosted Llama 3)
             → intro + completion
             → OpenAI text-to-speech, one voice per model
             → mp3 bytes

Provider clients are created lazily so the server can boot (and the tests
can run) without API keys.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

from groq import AsyncGroq, GroqError
from openai import AsyncOpenAI, OpenAIError

from voice_router.config import VoiceRouterConfig
from voice_router.errors import ReplyGenerationError, UnknownModelError
from voice_router.keywords import ModelId

log = logging.getLogger("voice_router.replies")

REPLY_CONTENT_TYPE = "audio/mp3"


def strip_keyword(message: str) -> str:
    """Lower-case and drop the first word (the spoken model keyword)."""
    message = message.lower()
    return message[message.index(" ") + 1:] if " " in message else ""


@dataclass
class GeneratedReply:
    text: str
    audio: bytes
    model: str
    content_type: str = REPLY_CONTENT_TYPE


class ReplyGenerator:
    def __init__(
        self,
        config: VoiceRouterConfig,
        *,
        openai_client: Optional[AsyncOpenAI] = None,
        groq_client: Optional[AsyncGroq] = None,
    ):
        self.config = config
        self._openai = openai_client
        self._groq = groq_client

    def _openai_client(self) -> AsyncOpenAI:
        if self._openai is None:
            self._openai = AsyncOpenAI(api_key=os.environ.get("OPENAI_API_KEY"))
        return self._openai

    def _groq_client(self) -> AsyncGroq:
        if self._groq is None:
            self._groq = AsyncGroq(api_key=os.environ.get("GROQ_API_KEY"))
        return self._groq

    # -----------------------------------------------------------------------

    async def complete(self, model_id: ModelId, prompt: str) -> str:
        messages = [{"role": "user", "content": prompt}]
        try:
            if model_id is ModelId.LLAMA:
                gcfg = self.config.groq
                response = await self._groq_client().chat.completions.create(
                    model=gcfg.model,
                    messages=messages,
                    **_optional(temperature=gcfg.temperature, max_tokens=gcfg.max_tokens),
                )
            else:
                ocfg = self.config.openai
                model = ocfg.gpt4_model if model_id is ModelId.GPT4 else ocfg.gpt3_model
                response = await self._openai_client().chat.completions.create(
                    model=model,
                    messages=messages,
                    **_optional(temperature=ocfg.temperature, max_tokens=ocfg.max_tokens),
                )
        except (OpenAIError, GroqError) as exc:
            raise ReplyGenerationError(f"{model_id.value} completion failed: {exc}") from exc
        return (response.choices[0].message.content or "").strip()

    async def synthesize(self, text: str, voice: str) -> bytes:
        try:
            response = await self._openai_client().audio.speech.create(
                model=self.config.speech.model,
                voice=voice,
                input=text,
                response_format="mp3",
            )
        except OpenAIError as exc:
            raise ReplyGenerationError(f"speech synthesis failed: {exc}") from exc
        return response.content

    async def generate(self, message: str, model: Optional[str]) -> GeneratedReply:
        model_name = model or "gpt4"
        try:
            model_id = ModelId(model_name)
        except ValueError:
            raise UnknownModelError(f"unknown model {model_name!r}") from None

        speech = self.config.speech
        prompt = self.config.common_prompt + strip_keyword(message)

        started = time.monotonic()
        completion = await self.complete(model_id, prompt)
        llm_ms = (time.monotonic() - started) * 1000.0

        full_text = speech.intros.get(model_id.value, "") + completion
        audio = await self.synthesize(full_text, speech.voices.get(model_id.value, "echo"))
        log.info(
            "event=reply_generated model=%s llm_ms=%.1f total_ms=%.1f text_len=%d audio_bytes=%d",
            model_id.value, llm_ms, (time.monotonic() - started) * 1000.0, len(full_text), len(audio),
        )
        return GeneratedReply(text=full_text, audio=audio, model=model_id.value)


def _optional(**kwargs) -> dict:
    """Drop unset sampling parameters so provider defaults apply."""
    return {k: v for k, v in kwargs.items() if v is not None}
