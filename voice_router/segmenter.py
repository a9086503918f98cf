"""
segmenter.py — utterance boundaries from silence
=================================================
Continuous recognition never declares an utterance finished, so the end of
an utterance is inferred from a quiet period: every recognition event
restarts a single-shot countdown, and when it runs out uninterrupted the
frozen transcript is handed to ``on_fire``.

Each countdown carries a generation id.  ``restart()`` and ``cancel()``
bump the generation, and a countdown only fires if its id is still current,
so a timer that was superseded (or has already fired) can never fire again
even if its task was scheduled before the cancellation landed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

log = logging.getLogger("voice_router.segmenter")


class SilenceSegmenter:
    def __init__(self, quiet_period_sec: float, on_fire: Callable[[str], None]):
        self.quiet_period_sec = quiet_period_sec
        self._on_fire = on_fire
        self._generation: int = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def generation(self) -> int:
        return self._generation

    def restart(self, text: str) -> None:
        """Cancel any pending countdown and start a new one carrying ``text``."""
        self.cancel()
        generation = self._generation
        self._task = asyncio.create_task(
            self._countdown(generation, text),
            name=f"silence_segmenter_{generation}",
        )

    def cancel(self) -> None:
        self._generation += 1
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _countdown(self, generation: int, text: str) -> None:
        try:
            await asyncio.sleep(self.quiet_period_sec)
        except asyncio.CancelledError:
            log.debug("event=silence_timer_cancelled generation=%d", generation)
            raise

        if generation != self._generation:
            return  # stale

        # Consume this generation before the callback runs so nothing the
        # callback does (e.g. stopping capture) can cancel or refire it.
        self._generation += 1
        self._task = None
        log.info("event=silence_boundary quiet_sec=%.2f text=%.80s", self.quiet_period_sec, text)
        self._on_fire(text)
