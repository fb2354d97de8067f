"""
ASREngine: abstract interface for speech-to-text over segment files.

Implementations: OpenAIWhisperEngine, CloudflareWhisperEngine (httpx),
LocalWhisperEngine (faster-whisper in executor).
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass

CONFIDENCE_FLOOR = 0.4
CONFIDENCE_CEILING = 0.98

_PUNCTUATION = re.compile(r"[.,;:!?]")


@dataclass
class TranscriptFragment:
    """Result of one transcribe call for one segment."""

    text: str
    confidence: float  # 0.0–1.0, native when the engine has one, else heuristic


def heuristic_confidence(text: str) -> float:
    """
    Confidence proxy for engines that report none: longer, punctuated output
    tends to come from clean speech. Monotonic in token and punctuation counts,
    clamped to [0.4, 0.98].
    """
    tokens = len((text or "").split())
    marks = len(_PUNCTUATION.findall(text or ""))
    score = CONFIDENCE_FLOOR + 0.01 * tokens + 0.03 * marks
    return max(CONFIDENCE_FLOOR, min(CONFIDENCE_CEILING, score))


class ASREngine(ABC):
    """
    Abstract ASR engine. Accepts the path of one encoded segment file.
    transcribe() is async; implementations may run sync work in executor.
    """

    name: str = "asr"

    @abstractmethod
    async def transcribe(self, segment_path: str) -> TranscriptFragment:
        """
        Transcribe one segment. Raises TranscriptionError on any engine or
        transport failure. Must not block event loop.
        """
        ...

    async def aclose(self) -> None:
        """Release clients held by the engine."""
        return None
