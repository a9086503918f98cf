"""
transcript.py — recognition events and the interim transcript
==============================================================
The streaming recognizer emits batches of results.  Each batch names the
first result index that changed (``resultIndex``) and carries the results
themselves, each with one or more alternative hypotheses.  Payloads are
validated here, at the boundary, and anything that does not fit the shape
below is dropped as a no-op.

    {"resultIndex": 1,
     "results": [{"alternatives": [{"transcript": "gpt3"}]},
                 {"alternatives": [{"transcript": " what is"}]}]}
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

log = logging.getLogger("voice_router.transcript")


# ---------------------------------------------------------------------------
# Event models
# ---------------------------------------------------------------------------

class Alternative(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str = Field(alias="transcript")


class RecognitionResult(BaseModel):
    alternatives: list[Alternative] = Field(default_factory=list)

    @property
    def top(self) -> str:
        return self.alternatives[0].text if self.alternatives else ""


class RecognitionEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    result_index: int = Field(default=0, ge=0, alias="resultIndex")
    results: list[RecognitionResult] = Field(default_factory=list)

    @classmethod
    def parse(cls, payload: Any) -> Optional["RecognitionEvent"]:
        """Validate a raw payload.  Returns None for anything malformed."""
        if isinstance(payload, cls):
            return payload
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            log.debug("event=recognition_event_rejected errors=%d", exc.error_count())
            return None

    @classmethod
    def of(cls, *fragments: str, result_index: int = 0) -> "RecognitionEvent":
        """Build an event with one top hypothesis per fragment."""
        return cls(
            result_index=result_index,
            results=[RecognitionResult(alternatives=[Alternative(text=f)]) for f in fragments],
        )


# ---------------------------------------------------------------------------
# Utterance + accumulator
# ---------------------------------------------------------------------------

@dataclass
class Utterance:
    """Fragments recognized since the last segmentation boundary."""
    slots: list[str] = field(default_factory=list)
    started_at: Optional[float] = None

    @property
    def raw_text(self) -> str:
        return "".join(self.slots)

    def clear(self) -> None:
        self.slots.clear()
        self.started_at = None


class TranscriptAccumulator:
    """Folds recognition events into the interim text of the open utterance.

    Every accepted event calls ``on_update(text)``; the capture session wires
    that to the silence segmenter's restart.
    """

    def __init__(self, on_update: Optional[Callable[[str], None]] = None):
        self._on_update = on_update
        self.utterance = Utterance()

    @property
    def text(self) -> str:
        return self.utterance.raw_text

    def on_recognition_event(self, event: Any) -> str:
        parsed = RecognitionEvent.parse(event)
        if parsed is None or not parsed.results or parsed.result_index >= len(parsed.results):
            return self.text

        slots = self.utterance.slots
        if self.utterance.started_at is None:
            self.utterance.started_at = time.monotonic()

        # Results past the end of this batch no longer exist
        del slots[len(parsed.results):]
        while len(slots) < parsed.result_index:
            slots.append("")
        for i in range(parsed.result_index, len(parsed.results)):
            top = parsed.results[i].top
            if i < len(slots):
                slots[i] = top
            else:
                slots.append(top)

        text = self.utterance.raw_text
        log.debug("event=transcript_interim text=%.80s", text)
        if self._on_update is not None:
            self._on_update(text)
        return text

    def reset(self) -> str:
        """Freeze and clear the utterance, returning its final text."""
        text = self.utterance.raw_text
        self.utterance.clear()
        return text
