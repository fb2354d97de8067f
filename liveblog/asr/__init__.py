"""ASR: swappable Whisper-compatible engines over segment files."""
from __future__ import annotations

from typing import Any

from liveblog.config import Settings, get_settings

from .base import ASREngine, TranscriptFragment, heuristic_confidence
from .cloudflare import CloudflareWhisperEngine
from .local_whisper import LocalWhisperEngine, load_whisper_model
from .openai_whisper import OpenAIWhisperEngine


def create_asr_engine(settings: Settings | None = None, whisper_model: Any = None) -> ASREngine:
    """Return ASR engine based on config. Local uses the singleton model loaded at startup."""
    settings = settings or get_settings()
    if settings.ASR_BACKEND == "cloudflare":
        return CloudflareWhisperEngine(settings)
    if settings.ASR_BACKEND == "local":
        return LocalWhisperEngine(model=whisper_model, beam_size=settings.LOCAL_WHISPER_BEAM_SIZE)
    return OpenAIWhisperEngine(settings)


__all__ = [
    "ASREngine",
    "TranscriptFragment",
    "heuristic_confidence",
    "CloudflareWhisperEngine",
    "LocalWhisperEngine",
    "OpenAIWhisperEngine",
    "create_asr_engine",
    "load_whisper_model",
]
