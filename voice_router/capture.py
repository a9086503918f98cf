"""
capture.py — Voice Router · Capture Session
============================================
Owns the streaming recognizer, the interim transcript and the silence
timer for the current utterance.  Nothing else in the package starts or
stops the recognizer.

    CaptureSession.start()  → recognizer.start(on_event, on_end)
    recognizer events       → TranscriptAccumulator → SilenceSegmenter.restart
    silence boundary        → on_utterance(frozen_text)
    CaptureSession.stop()   → recognizer.stop()   (fire-and-forget)

``stop()`` returns immediately and marks the session inactive; anything the
recognizer delivers after that is ignored.  Callers that need the recognizer
fully quiesced await ``wait_stopped()``, which resolves on its ``on_end``.

Every ``start()`` opens a new run.  Callbacks are bound to the run that
registered them, so a late ``on_end`` from a previous run cannot be taken
for the halt of the current one.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Protocol

from voice_router.config import CaptureConfig
from voice_router.errors import CaptureError
from voice_router.segmenter import SilenceSegmenter
from voice_router.transcript import TranscriptAccumulator

log = logging.getLogger("voice_router.capture")


class Recognizer(Protocol):
    """Streaming speech-recognition collaborator.

    ``start`` raises on failure.  After ``stop`` the recognizer calls
    ``on_end`` once the stream has actually halted.
    """

    async def start(self, on_event: Callable[[Any], None], on_end: Callable[[], None]) -> None: ...

    def stop(self) -> None: ...


class CaptureSession:
    def __init__(
        self,
        recognizer: Recognizer,
        config: Optional[CaptureConfig] = None,
        *,
        on_utterance: Optional[Callable[[str], None]] = None,
        on_transcript: Optional[Callable[[str], None]] = None,
        on_halt: Optional[Callable[[], None]] = None,
    ):
        self.config = config or CaptureConfig()
        self._recognizer = recognizer
        self._on_utterance = on_utterance
        self._on_transcript = on_transcript
        self._on_halt = on_halt
        self._active = False
        self._run: int = 0
        self._stopped = asyncio.Event()
        self._stopped.set()

        self.segmenter = SilenceSegmenter(self.config.quiet_period_ms / 1000.0, self._on_boundary)
        self.accumulator = TranscriptAccumulator(on_update=self._on_update)

    @property
    def active(self) -> bool:
        return self._active

    @property
    def transcript(self) -> str:
        return self.accumulator.text

    def bind(
        self,
        *,
        on_utterance: Optional[Callable[[str], None]] = None,
        on_transcript: Optional[Callable[[str], None]] = None,
        on_halt: Optional[Callable[[], None]] = None,
    ) -> None:
        """Attach the owner's callbacks (the coordinator calls this once)."""
        if on_utterance is not None:
            self._on_utterance = on_utterance
        if on_transcript is not None:
            self._on_transcript = on_transcript
        if on_halt is not None:
            self._on_halt = on_halt

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def start(self) -> None:
        if self._active:
            log.debug("event=capture_start_ignored reason=already_active")
            return

        self._run += 1
        run = self._run
        self.accumulator.reset()
        self.segmenter.cancel()
        self._stopped.clear()
        self._active = True
        log.info(
            "event=capture_starting run=%d locale=%s continuous=%s interim=%s",
            run, self.config.locale, self.config.continuous, self.config.interim_results,
        )
        try:
            await self._recognizer.start(
                lambda event: self._on_event(run, event),
                lambda: self._on_end(run),
            )
        except Exception as exc:
            if run == self._run:
                self._active = False
                self._stopped.set()
            log.error("event=capture_start_failed run=%d error=%s", run, exc)
            if isinstance(exc, CaptureError):
                raise
            raise CaptureError(f"recognizer failed to start: {exc}") from exc
        log.info("event=capture_started run=%d", run)

    def stop(self) -> None:
        if not self._active:
            return
        self._active = False
        self.segmenter.cancel()
        self.accumulator.reset()
        log.info("event=capture_stopping run=%d", self._run)
        try:
            self._recognizer.stop()
        except Exception as exc:
            # Already inactive; a failing stop only means on_end may never arrive
            log.warning("event=capture_stop_error run=%d error=%s", self._run, exc)
            self._stopped.set()

    async def wait_stopped(self, timeout: Optional[float] = None) -> bool:
        """Wait for the recognizer to acknowledge the stop.  False on timeout."""
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("event=capture_quiesce_timeout timeout_sec=%s", timeout)
            return False
        return True

    # -----------------------------------------------------------------------
    # Recognizer callbacks
    # -----------------------------------------------------------------------

    def _on_event(self, run: int, event: Any) -> None:
        if run != self._run or not self._active:
            log.debug("event=recognition_event_dropped run=%d", run)
            return
        self.accumulator.on_recognition_event(event)

    def _on_update(self, text: str) -> None:
        self.segmenter.restart(text)
        if self._on_transcript is not None:
            self._on_transcript(text)

    def _on_end(self, run: int) -> None:
        if run != self._run:
            log.debug("event=capture_end_stale run=%d current=%d", run, self._run)
            return
        log.info("event=capture_ended run=%d active=%s", run, self._active)
        self._stopped.set()
        if self._active:
            # Stream halted without a stop request
            self._active = False
            self.segmenter.cancel()
            self.accumulator.reset()
            if self._on_halt is not None:
                self._on_halt()

    def _on_boundary(self, text: str) -> None:
        self.accumulator.reset()
        if self._on_utterance is not None:
            self._on_utterance(text)
