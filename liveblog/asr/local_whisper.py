"""
LocalWhisperEngine: Whisper-compatible ASR using faster-whisper.

- Model loaded ONCE at startup (singleton, injected at construction).
- Decodes the segment file directly; faster-whisper handles Ogg/Opus via PyAV.
- Confidence is native: mean exp(avg_logprob) over decoded segments.
- Runs in executor so event loop stays responsive.
"""
from __future__ import annotations

import asyncio
import math
from typing import Any

from liveblog.asr.base import (
    CONFIDENCE_CEILING,
    ASREngine,
    TranscriptFragment,
    heuristic_confidence,
)
from liveblog.config import Settings, get_settings
from liveblog.errors import TranscriptionError

# Type for shared WhisperModel (loaded at startup)
WhisperModelT = Any


def load_whisper_model(settings: Settings | None = None) -> WhisperModelT:
    """Load faster-whisper model once. Called at startup when ASR_BACKEND=local."""
    try:
        from faster_whisper import WhisperModel
    except ImportError as err:
        raise ImportError(
            "faster-whisper is required for ASR_BACKEND=local. "
            "Install with: pip install faster-whisper"
        ) from err
    settings = settings or get_settings()
    return WhisperModel(
        settings.LOCAL_WHISPER_MODEL,
        device=settings.LOCAL_WHISPER_DEVICE,
        compute_type=settings.LOCAL_WHISPER_COMPUTE_TYPE,
    )


class LocalWhisperEngine(ASREngine):
    """
    Local Whisper via faster-whisper. Uses shared model (singleton).
    transcribe() is async; heavy work runs in executor.
    """

    name = "local"

    def __init__(self, model: WhisperModelT | None = None, beam_size: int | None = None) -> None:
        self._model = model
        self._beam_size = beam_size or get_settings().LOCAL_WHISPER_BEAM_SIZE

    def _transcribe_sync(self, segment_path: str) -> TranscriptFragment:
        if self._model is None:
            raise TranscriptionError("local Whisper model not loaded")
        try:
            segments, _ = self._model.transcribe(
                segment_path,
                beam_size=self._beam_size,
                vad_filter=True,
                vad_parameters=dict(min_silence_duration_ms=300, speech_pad_ms=100),
            )
            parts: list[str] = []
            probs: list[float] = []
            for seg in segments:
                t = (seg.text or "").strip()
                if t:
                    parts.append(t)
                    logprob = getattr(seg, "avg_logprob", None)
                    if logprob is not None:
                        probs.append(math.exp(logprob))
        except TranscriptionError:
            raise
        except Exception as e:
            raise TranscriptionError(f"faster-whisper failed on {segment_path}: {e}") from e

        text = " ".join(parts).strip()
        if probs:
            confidence = max(0.0, min(CONFIDENCE_CEILING, sum(probs) / len(probs)))
        else:
            confidence = heuristic_confidence(text)
        return TranscriptFragment(text=text, confidence=confidence)

    async def transcribe(self, segment_path: str) -> TranscriptFragment:
        """Run _transcribe_sync in executor so event loop is not blocked."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._transcribe_sync, segment_path)
