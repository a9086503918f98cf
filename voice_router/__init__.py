"""Voice Router — speak, name a model in the first words, hear its reply.

Client side (hands-free loop):
    CaptureSession      -- streaming recognizer, interim transcript, silence timer
    DispatchCoordinator -- IDLE → LISTENING → DISPATCHING → PLAYING → LISTENING
    PlaybackController  -- awaitable reply playback with a failure path
    BackendClient       -- POST /api/chat

Server side:
    server.create_app   -- FastAPI reply server (LLM + text-to-speech)
"""

from voice_router.backend import BackendClient, Reply
from voice_router.capture import CaptureSession
from voice_router.config import VoiceRouterConfig
from voice_router.coordinator import DispatchCoordinator, DispatchCycle, SessionState
from voice_router.errors import BackendError, CaptureError, PlaybackError, VoiceRouterError
from voice_router.keywords import ModelId, ModelKeywordDetector, ModelSelection
from voice_router.playback import PlaybackController
from voice_router.segmenter import SilenceSegmenter
from voice_router.transcript import RecognitionEvent, TranscriptAccumulator

__version__ = "1.0.0"

__all__ = [
    "BackendClient",
    "BackendError",
    "CaptureError",
    "CaptureSession",
    "DispatchCoordinator",
    "DispatchCycle",
    "ModelId",
    "ModelKeywordDetector",
    "ModelSelection",
    "PlaybackController",
    "PlaybackError",
    "RecognitionEvent",
    "Reply",
    "SessionState",
    "SilenceSegmenter",
    "TranscriptAccumulator",
    "VoiceRouterConfig",
    "VoiceRouterError",
]
