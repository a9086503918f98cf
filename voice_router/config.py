"""
config.py — Voice Router · Runtime Configuration
=================================================
Pydantic models for every tunable parameter across the client and the
reply server.  Serialises to / deserialises from JSON.  Used by:
  • client.py  — capture, detector, backend and playback sections
  • server.py  — GET/PUT /config endpoints, model + speech sections
Also home to ``setup_logging()``, shared by both entrypoints.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError

log = logging.getLogger("voice_router.config")

# ---------------------------------------------------------------------------
# Prompt prepended to every user message (kept here so config.py is the
# single source of truth)
# ---------------------------------------------------------------------------

DEFAULT_COMMON_PROMPT = "Be precise and concise, never respond in more than 1-2 sentences!"


# ---------------------------------------------------------------------------
# Client-side sections
# ---------------------------------------------------------------------------

class CaptureConfig(BaseModel):
    """Streaming recognizer + silence segmentation parameters."""
    quiet_period_ms: int = Field(default=2000, ge=50, le=30000, description="Silence that ends an utterance (ms)")
    locale: str = Field(default="en-US", description="Recognition locale")
    continuous: bool = Field(default=True, description="Keep listening across pauses")
    interim_results: bool = Field(default=True, description="Stream partial results")
    deepgram_model: str = Field(default="nova-3", description="Deepgram model")
    sample_rate: int = Field(default=16000, description="Microphone sample rate (Hz)")
    blocksize: int = Field(default=1280, ge=64, description="Microphone frames per block")


class DetectorConfig(BaseModel):
    """Spoken model keyword detection."""
    window_words: int = Field(default=3, ge=1, le=20, description="Leading words scanned for a keyword")
    default_model: Literal["gpt4", "gpt3", "llama"] = Field(default="gpt4", description="Model used when no keyword is spoken")


class BackendConfig(BaseModel):
    """Reply backend (POST /api/chat) as seen from the client."""
    url: str = Field(default="http://127.0.0.1:8000/api/chat", description="Chat endpoint")
    timeout_sec: float = Field(default=60.0, gt=0.0, description="Request timeout (seconds)")
    retries: int = Field(default=0, ge=0, le=5, description="Retries for transient failures")


class PlaybackConfig(BaseModel):
    """Reply playback."""
    max_duration_sec: float = Field(default=120.0, gt=0.0, description="Give up waiting for playback after this")


# ---------------------------------------------------------------------------
# Server-side sections
# ---------------------------------------------------------------------------

class OpenAIConfig(BaseModel):
    """OpenAI chat models behind the gpt4 / gpt3 keywords."""
    gpt4_model: str = Field(default="gpt-4o-mini", description="Model answering 'gpt4'")
    gpt3_model: str = Field(default="gpt-3.5-turbo", description="Model answering 'gpt3'")
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0, description="Randomness (0.0–2.0)")
    max_tokens: Optional[int] = Field(default=None, ge=1, description="Max response tokens")


class GroqConfig(BaseModel):
    """Groq-hosted Llama behind the llama keyword."""
    model: str = Field(default="llama-3.1-8b-instant", description="Groq model ID")
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0, description="Randomness (0.0–2.0)")
    max_tokens: Optional[int] = Field(default=None, ge=1, description="Max response tokens")


class SpeechConfig(BaseModel):
    """OpenAI text-to-speech parameters."""
    model: str = Field(default="tts-1", description="TTS model")
    voices: dict[str, str] = Field(
        default_factory=lambda: {"gpt4": "echo", "gpt3": "nova", "llama": "fable"},
        description="Voice per model id",
    )
    intros: dict[str, str] = Field(
        default_factory=lambda: {
            "gpt4": "GPT 4o mini here, ",
            "gpt3": "GPT3 point 5 here, ",
            "llama": "llama 3 here, ",
        },
        description="Spoken prefix per model id",
    )


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class VoiceRouterConfig(BaseModel):
    """Complete runtime configuration for the voice router."""
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    detector: DetectorConfig = Field(default_factory=DetectorConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    playback: PlaybackConfig = Field(default_factory=PlaybackConfig)
    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)
    groq: GroqConfig = Field(default_factory=GroqConfig)
    speech: SpeechConfig = Field(default_factory=SpeechConfig)
    common_prompt: str = Field(default=DEFAULT_COMMON_PROMPT, description="Instruction prepended to every message")

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "VoiceRouterConfig":
        """Read a JSON config.  A missing, unreadable or invalid file yields the defaults."""
        source = Path(path)
        try:
            raw = source.read_text(encoding="utf-8")
        except FileNotFoundError:
            log.info("event=config_defaults path=%s reason=missing", source)
            return cls()
        except OSError as exc:
            log.warning("event=config_defaults path=%s reason=unreadable error=%s", source, exc)
            return cls()
        try:
            config = cls.model_validate_json(raw)
        except ValidationError as exc:
            log.warning("event=config_defaults path=%s reason=invalid errors=%d", source, exc.error_count())
            return cls()
        log.info(
            "event=config_loaded path=%s quiet_ms=%d backend=%s",
            source, config.capture.quiet_period_ms, config.backend.url,
        )
        return config

    def save(self, path: str | Path) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2, exclude_none=True) + "\n", encoding="utf-8")
        log.info("event=config_saved path=%s", target)

    def merge_patch(self, patch: dict) -> "VoiceRouterConfig":
        """New config with ``patch`` laid over this one.

        Sections merge key by key, so ``{"speech": {"voices": {"gpt3": "alloy"}}}``
        re-voices gpt3 and leaves the other voices alone.  Raises
        ``ValidationError`` when the merged result is out of bounds.
        """
        return type(self).model_validate(_deep_merge(self.model_dump(), patch))


def _deep_merge(base: dict, patch: dict) -> dict:
    for key, value in patch.items():
        current = base.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            base[key] = _deep_merge(current, value)
        else:
            base[key] = value
    return base


def setup_logging() -> None:
    """Root logging for both entrypoints; DEBUG when VOICE_DEBUG is set."""
    logging.basicConfig(
        level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
        format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )
