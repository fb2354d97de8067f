"""
CloudflareWhisperEngine: Whisper via Cloudflare Workers AI.

Sends the encoded segment file bytes to @cf/openai/whisper.
"""
from __future__ import annotations

import httpx

from liveblog.asr.base import ASREngine, TranscriptFragment, heuristic_confidence
from liveblog.config import Settings, get_settings
from liveblog.errors import TranscriptionError


class CloudflareWhisperEngine(ASREngine):
    """
    Remote Whisper via Cloudflare Workers AI.
    Workers AI reports no usable confidence; the heuristic fills it in.
    """

    name = "cloudflare"

    def __init__(self, settings: Settings | None = None, client: httpx.AsyncClient | None = None) -> None:
        settings = settings or get_settings()
        self._account_id = settings.CLOUDFLARE_ACCOUNT_ID
        self._token = settings.CLOUDFLARE_API_TOKEN
        self._client = client or httpx.AsyncClient(timeout=settings.TRANSCRIBE_TIMEOUT_S)

    async def transcribe(self, segment_path: str) -> TranscriptFragment:
        if not self._account_id or not self._token:
            raise TranscriptionError("CLOUDFLARE_ACCOUNT_ID and CLOUDFLARE_API_TOKEN are required for ASR")
        try:
            with open(segment_path, "rb") as f:
                audio = f.read()
        except OSError as e:
            raise TranscriptionError(f"cannot read segment {segment_path}: {e}") from e

        url = f"https://api.cloudflare.com/client/v4/accounts/{self._account_id}/ai/run/@cf/openai/whisper"
        try:
            resp = await self._client.post(
                url,
                headers={"Authorization": f"Bearer {self._token}"},
                json={"audio": list(audio)},
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise TranscriptionError(f"Workers AI returned {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise TranscriptionError(f"Workers AI request failed: {e}") from e

        result = data.get("result", data) if isinstance(data, dict) else data
        if isinstance(result, dict):
            text = result.get("text", result.get("transcript", ""))
        elif isinstance(result, str):
            text = result
        else:
            text = ""
        text = (text or "").strip()
        return TranscriptFragment(text=text, confidence=heuristic_confidence(text))

    async def aclose(self) -> None:
        await self._client.aclose()
