"""
coordinator.py — Voice Router · Dispatch Coordinator
=====================================================
The hands-free loop.  One utterance at a time travels

    stop capture → POST utterance + model → await reply → play reply → resume capture

State machine
─────────────
    IDLE        --start()-------------------------------> LISTENING
    LISTENING   --silence boundary, non-empty text------> DISPATCHING
    LISTENING   --stop()--------------------------------> IDLE
    LISTENING   --recognizer halted / restart failed----> IDLE
    DISPATCHING --reply received------------------------> PLAYING
    DISPATCHING --backend failure-----------------------> IDLE
    PLAYING     --playback done-------------------------> LISTENING
    PLAYING     --playback done, stop requested---------> IDLE
    PLAYING     --playback failed-----------------------> IDLE

Capture is stopped synchronously, inside the segmenter callback, before the
state becomes DISPATCHING; it is only restarted once the state is back to
LISTENING.  A stop() during DISPATCHING or PLAYING does not interrupt the
cycle; it sets ``stop_requested``, which is checked when the reply finishes
playing.  A start() before that point withdraws the request.

Every failure ends in IDLE with a log line, ``last_error`` and ``on_error``;
nothing propagates out of the cycle task.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from voice_router.capture import CaptureSession
from voice_router.errors import BackendError, CaptureError, VoiceRouterError
from voice_router.keywords import ModelKeywordDetector
from voice_router.playback import PlaybackController

log = logging.getLogger("voice_router.coordinator")


class SessionState(Enum):
    IDLE        = "idle"
    LISTENING   = "listening"
    DISPATCHING = "dispatching"
    PLAYING     = "playing"


@dataclass(frozen=True)
class DispatchCycle:
    utterance_text: str
    model_id: str
    submitted_at: float = field(default_factory=time.monotonic)


class ReplyBackend(Protocol):
    async def generate_reply(self, text: str, model_id: Optional[str]) -> Any: ...


class DispatchCoordinator:
    def __init__(
        self,
        capture: CaptureSession,
        playback: PlaybackController,
        backend: ReplyBackend,
        detector: Optional[ModelKeywordDetector] = None,
        *,
        retries: int = 0,
        on_state_change: Optional[Callable[[SessionState], None]] = None,
        on_transcript: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
    ):
        self.capture = capture
        self.playback = playback
        self.backend = backend
        self.detector = detector or ModelKeywordDetector()
        self.retries = retries
        self.on_state_change = on_state_change
        self.on_transcript = on_transcript
        self.on_error = on_error

        self._state = SessionState.IDLE
        self.cycle: Optional[DispatchCycle] = None
        self.current_model: Optional[str] = None
        self.stop_requested = False
        self.last_error: Optional[Exception] = None
        self._cycle_task: Optional[asyncio.Task] = None

        capture.bind(
            on_utterance=self.on_utterance,
            on_transcript=self._on_transcript,
            on_halt=self._on_capture_halt,
        )

    # -----------------------------------------------------------------------
    # State
    # -----------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @state.setter
    def state(self, new_state: SessionState) -> None:
        old = self._state
        if old is new_state:
            return
        self._state = new_state
        log.info("event=state_change from=%s to=%s", old.name, new_state.name)
        if self.on_state_change:
            try:
                self.on_state_change(new_state)
            except Exception as exc:
                log.error("event=state_observer_error error=%s", exc)

    def status(self) -> dict:
        """Snapshot for display."""
        return {
            "state": self._state.value,
            "model": self.current_model,
            "capturing": self.capture.active,
            "playing": self.playback.active,
            "stop_requested": self.stop_requested,
            "last_error": str(self.last_error) if self.last_error else None,
        }

    # -----------------------------------------------------------------------
    # User toggle
    # -----------------------------------------------------------------------

    async def start(self) -> None:
        if self._state in (SessionState.DISPATCHING, SessionState.PLAYING):
            if self.stop_requested:
                log.info("event=stop_request_withdrawn state=%s", self._state.name)
            self.stop_requested = False
            return
        if self._state is SessionState.LISTENING:
            return

        self.stop_requested = False
        self.last_error = None
        await self._listen()

    def stop(self) -> None:
        if self._state is SessionState.LISTENING:
            self.capture.stop()
            self.state = SessionState.IDLE
        elif self._state in (SessionState.DISPATCHING, SessionState.PLAYING):
            log.info("event=stop_requested state=%s", self._state.name)
            self.stop_requested = True

    async def toggle(self) -> None:
        if self._state is SessionState.IDLE:
            await self.start()
        elif self._state is SessionState.LISTENING:
            self.stop()
        elif self.stop_requested:
            await self.start()
        else:
            self.stop()

    async def drain(self) -> None:
        """Wait for the in-flight dispatch cycle, if any, to finish."""
        task = self._cycle_task
        if task is not None and not task.done():
            await asyncio.shield(task)

    async def shutdown(self) -> None:
        self.capture.stop()
        task = self._cycle_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.playback.stop()
        self.cycle = None
        self.stop_requested = False
        self.state = SessionState.IDLE

    # -----------------------------------------------------------------------
    # Capture callbacks
    # -----------------------------------------------------------------------

    def on_utterance(self, text: str) -> None:
        """Silence boundary: freeze the utterance and dispatch it."""
        if self._state is not SessionState.LISTENING:
            log.info("event=utterance_ignored state=%s", self._state.name)
            return
        if not text.strip():
            log.info("event=utterance_empty")
            return
        if self.cycle is not None:
            log.warning("event=utterance_ignored reason=cycle_in_flight")
            return

        selection = self.detector.resolve(text)
        self.current_model = selection.resolved_id.value

        self.capture.stop()
        self.cycle = DispatchCycle(utterance_text=text, model_id=selection.resolved_id.value)
        self.state = SessionState.DISPATCHING
        self._cycle_task = asyncio.create_task(self._run_cycle(self.cycle), name="dispatch_cycle")

    def _on_transcript(self, text: str) -> None:
        if self.on_transcript:
            self.on_transcript(text)

    def _on_capture_halt(self) -> None:
        if self._state is SessionState.LISTENING:
            self._fail(CaptureError("recognition stream ended unexpectedly"))

    # -----------------------------------------------------------------------
    # Dispatch cycle
    # -----------------------------------------------------------------------

    async def _run_cycle(self, cycle: DispatchCycle) -> None:
        log.info("event=dispatch model=%s text=%.80s", cycle.model_id, cycle.utterance_text)
        try:
            reply = await self._request_reply(cycle)
            if reply.model_id:
                self.current_model = reply.model_id
            self.state = SessionState.PLAYING
            await self.playback.play(reply.audio, reply.content_type)

            elapsed = (time.monotonic() - cycle.submitted_at) * 1000.0
            log.info("event=cycle_complete model=%s elapsed_ms=%.1f", self.current_model, elapsed)
            self.cycle = None

            if self.stop_requested:
                self.stop_requested = False
                log.info("event=resume_skipped reason=stop_requested")
                self.state = SessionState.IDLE
                return
            await self._listen()
        except VoiceRouterError as exc:
            self._fail(exc)
        except Exception as exc:
            log.exception("event=cycle_crashed error=%s", exc)
            self._fail(exc)
        finally:
            self.cycle = None

    async def _request_reply(self, cycle: DispatchCycle) -> Any:
        attempt = 0
        while True:
            try:
                return await self.backend.generate_reply(cycle.utterance_text, cycle.model_id)
            except BackendError as exc:
                if not exc.retryable or attempt >= self.retries:
                    raise
                attempt += 1
                log.warning("event=backend_retry attempt=%d/%d error=%s", attempt, self.retries, exc)

    async def _listen(self) -> None:
        self.state = SessionState.LISTENING
        try:
            await self.capture.start()
        except CaptureError as exc:
            self._fail(exc)

    def _fail(self, exc: Exception) -> None:
        log.error("event=cycle_failed state=%s error_type=%s error=%s",
                  self._state.name, type(exc).__name__, exc)
        self.last_error = exc
        self.cycle = None
        self.stop_requested = False
        if self.capture.active:
            self.capture.stop()
        self.state = SessionState.IDLE
        if self.on_error:
            try:
                self.on_error(exc)
            except Exception as cb_exc:
                log.error("event=error_observer_error error=%s", cb_exc)
