"""Exceptions raised by the voice router collaborators."""

from __future__ import annotations

from typing import Optional


class VoiceRouterError(Exception):
    """Base class for every failure the coordinator knows how to degrade from."""


class CaptureError(VoiceRouterError):
    """The speech recognizer could not be started."""


class PlaybackError(VoiceRouterError):
    """Reply audio failed to play, or never reported completion."""


class BackendError(VoiceRouterError):
    """The reply backend call failed.

    ``retryable`` is True for transient failures (network errors, timeouts,
    5xx responses) and False for permanent ones (4xx, malformed payloads).
    """

    def __init__(self, message: str, *, status_code: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class ReplyGenerationError(VoiceRouterError):
    """An upstream model or speech provider failed while building a reply."""


class UnknownModelError(VoiceRouterError):
    """The requested model id has no provider behind it."""
