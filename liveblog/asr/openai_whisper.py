"""
OpenAIWhisperEngine: hosted transcription via the OpenAI audio API.

Posts the segment file as multipart to /audio/transcriptions and keeps only
the text; the API reports no confidence, so the heuristic is used.
"""
from __future__ import annotations

import logging
import os

import httpx

from liveblog.asr.base import ASREngine, TranscriptFragment, heuristic_confidence
from liveblog.config import Settings, get_settings
from liveblog.errors import TranscriptionError

logger = logging.getLogger(__name__)


class OpenAIWhisperEngine(ASREngine):
    name = "openai"

    def __init__(self, settings: Settings | None = None, client: httpx.AsyncClient | None = None) -> None:
        settings = settings or get_settings()
        self._api_key = settings.OPENAI_API_KEY
        self._model = settings.TRANSCRIBE_MODEL
        self._url = settings.OPENAI_BASE_URL.rstrip("/") + "/audio/transcriptions"
        self._client = client or httpx.AsyncClient(timeout=settings.TRANSCRIBE_TIMEOUT_S)

    async def transcribe(self, segment_path: str) -> TranscriptFragment:
        if not self._api_key:
            raise TranscriptionError("OPENAI_API_KEY is required for ASR_BACKEND=openai")
        try:
            with open(segment_path, "rb") as f:
                audio = f.read()
        except OSError as e:
            raise TranscriptionError(f"cannot read segment {segment_path}: {e}") from e

        try:
            resp = await self._client.post(
                self._url,
                headers={"Authorization": f"Bearer {self._api_key}"},
                data={"model": self._model, "response_format": "json"},
                files={"file": (os.path.basename(segment_path), audio, "audio/ogg")},
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise TranscriptionError(
                f"transcription API returned {e.response.status_code}: {e.response.text[:300]}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise TranscriptionError(f"transcription request failed: {e}") from e

        text = (data.get("text") if isinstance(data, dict) else "") or ""
        text = text.strip()
        return TranscriptFragment(text=text, confidence=heuristic_confidence(text))

    async def aclose(self) -> None:
        await self._client.aclose()
