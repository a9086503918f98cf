"""Spoken model keyword detection.

The model is chosen by a keyword in the first few words of the utterance
("gpt3 what is the capital of France").  Matching is substring based, not
whole-word: "llamas" still selects llama, and so would a hypothetical
"gpt4ish".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

log = logging.getLogger("voice_router.keywords")


class ModelId(str, Enum):
    GPT4 = "gpt4"
    GPT3 = "gpt3"
    LLAMA = "llama"


# Checked in this order, first match wins
MODEL_KEYWORDS: tuple[str, ...] = ("gpt4", "gpt3", "llama", "lama")

_NORMALISED: dict[str, ModelId] = {
    "gpt4": ModelId.GPT4,
    "gpt3": ModelId.GPT3,
    "llama": ModelId.LLAMA,
    "lama": ModelId.LLAMA,
}


@dataclass(frozen=True)
class ModelSelection:
    keyword: Optional[str]
    resolved_id: ModelId


class ModelKeywordDetector:
    def __init__(self, window_words: int = 3, default_model: ModelId | str = ModelId.GPT4):
        self.window_words = window_words
        self.default_model = ModelId(default_model)

    def resolve(self, transcript_text: str) -> ModelSelection:
        head = " ".join(transcript_text.split()[: self.window_words]).lower()
        for keyword in MODEL_KEYWORDS:
            if keyword in head:
                selection = ModelSelection(keyword=keyword, resolved_id=_NORMALISED[keyword])
                break
        else:
            selection = ModelSelection(keyword=None, resolved_id=self.default_model)

        log.info(
            "event=model_detected keyword=%s model=%s head=%.40r",
            selection.keyword, selection.resolved_id.value, head,
        )
        return selection
