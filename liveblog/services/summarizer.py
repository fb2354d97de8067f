"""
Structured summarisation: two request shapes, one response discipline.

- summarise_window(): rolling-window strategy; summarise exactly one span of
  transcript, with caller-owned time bounds.
- timer_based_summarise(): diff-timer strategy; summarise only what is new
  relative to the previous card. An empty headline is a valid "no update".

The summariser is an untrusted black box. Backends return a raw output
candidate; envelope.parse_card_response() turns it into a CardContent or
raises ResponseShapeError / ResponseParseError / SchemaViolationError.
Nothing here retries; the caller drops the cycle.
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from liveblog.config import Settings, get_settings
from liveblog.errors import ResponseShapeError, SummaryRequestError, preview, with_deadline
from liveblog.schemas.card import TIMER_CARD_SCHEMA, WINDOW_CARD_SCHEMA, CardContent
from liveblog.services.envelope import parse_card_response

logger = logging.getLogger(__name__)

UNCLEAR_TOKEN = "[unclear]"

_WINDOW_SYSTEM_PROMPT = " ".join(
    [
        "You are a live-blog note-taker.",
        "Summarise only what the speaker actually said in this window.",
        f"If a name/number is unclear, write {UNCLEAR_TOKEN}.",
        "Prefer short, verb-led bullets.",
        "Do not invent facts from context; use context only to disambiguate terms.",
    ]
)

_TIMER_SYSTEM_PROMPT = " ".join(
    [
        "You are a live-blog note-taker following a talk in real time.",
        "You receive the most recent words of the live transcript and the summary you published last.",
        "Report ONLY information that is not already present in the previous summary.",
        "If there is nothing new, return an empty headline and empty arrays.",
        f"If a name/number is unclear, write {UNCLEAR_TOKEN}.",
        "Prefer short, verb-led bullets; at most five.",
        "Output only JSON matching the schema.",
    ]
)


class SummaryBackend(ABC):
    """One structured-output LLM call. Returns the raw output candidate for envelope decoding."""

    name: str = "backend"

    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        user_parts: list[str],
        schema: dict[str, Any],
        schema_name: str,
    ) -> Any:
        ...

    async def aclose(self) -> None:
        return None


class OpenAIResponsesBackend(SummaryBackend):
    """OpenAI Responses API with `text.format = json_schema`."""

    name = "openai"

    def __init__(self, settings: Settings | None = None, client: httpx.AsyncClient | None = None) -> None:
        settings = settings or get_settings()
        self._api_key = settings.OPENAI_API_KEY
        self._model = settings.SUMMARISE_MODEL
        self._max_tokens = settings.SUMMARY_MAX_TOKENS
        self._url = settings.OPENAI_BASE_URL.rstrip("/") + "/responses"
        self._client = client or httpx.AsyncClient(timeout=settings.SUMMARY_TIMEOUT_S)

    async def complete(self, system_prompt, user_parts, schema, schema_name):
        if not self._api_key:
            raise SummaryRequestError("OPENAI_API_KEY is required for SUMMARY_BACKEND=openai")
        payload = {
            "model": self._model,
            "input": [
                {"role": "system", "content": system_prompt},
                {
                    "role": "user",
                    "content": [{"type": "input_text", "text": part} for part in user_parts if part],
                },
            ],
            "text": {
                "format": {"type": "json_schema", "name": schema_name, "schema": schema, "strict": True},
            },
            "max_output_tokens": self._max_tokens,
        }
        data = await _post_json(
            self._client,
            self._url,
            payload,
            {"Authorization": f"Bearer {self._api_key}"},
        )
        output = data.get("output") if isinstance(data, dict) else None
        if not isinstance(output, list) or not output:
            raise ResponseShapeError("no textual output found (response has no output items)")
        # Reasoning models put a reasoning item first; the answer is the first message item
        for item in output:
            if isinstance(item, dict) and item.get("type") == "message":
                return item
        return output[0]

    async def aclose(self) -> None:
        await self._client.aclose()


class CloudflareSummaryBackend(SummaryBackend):
    """Workers AI text generation with `response_format = json_schema`."""

    name = "cloudflare"

    def __init__(self, settings: Settings | None = None, client: httpx.AsyncClient | None = None) -> None:
        settings = settings or get_settings()
        self._account_id = (settings.CLOUDFLARE_ACCOUNT_ID or "").strip()
        self._token = (settings.CLOUDFLARE_API_TOKEN or "").strip()
        self._model = settings.CF_SUMMARY_MODEL
        self._max_tokens = settings.SUMMARY_MAX_TOKENS
        self._client = client or httpx.AsyncClient(timeout=settings.SUMMARY_TIMEOUT_S)

    async def complete(self, system_prompt, user_parts, schema, schema_name):
        if not self._account_id or not self._token:
            raise SummaryRequestError("CLOUDFLARE_ACCOUNT_ID and CLOUDFLARE_API_TOKEN are required for summaries")
        url = f"https://api.cloudflare.com/client/v4/accounts/{self._account_id}/ai/run/{self._model}"
        payload = {
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": "\n\n".join(p for p in user_parts if p)},
            ],
            "response_format": {"type": "json_schema", "json_schema": schema},
            "max_tokens": self._max_tokens,
            "temperature": 0.2,
        }
        data = await _post_json(self._client, url, payload, {"Authorization": f"Bearer {self._token}"})
        # Workers AI returns { "result": { "response": ... } } or direct { "response": ... }
        result = data.get("result", data) if isinstance(data, dict) else data
        response = result.get("response") if isinstance(result, dict) else result
        if isinstance(response, dict) and "headline" in response:
            # JSON mode may hand back the already-parsed object
            return json.dumps(response)
        return response

    async def aclose(self) -> None:
        await self._client.aclose()


async def _post_json(client: httpx.AsyncClient, url: str, payload: dict, headers: dict) -> Any:
    try:
        resp = await client.post(url, json=payload, headers={**headers, "Content-Type": "application/json"})
        resp.raise_for_status()
        return resp.json()
    except httpx.HTTPStatusError as e:
        raise SummaryRequestError(
            f"summariser returned {e.response.status_code}: {e.response.text[:300]}"
        ) from e
    except httpx.HTTPError as e:
        raise SummaryRequestError(f"summariser request failed: {e}") from e
    except ValueError as e:
        raise SummaryRequestError(f"summariser response body is not JSON: {e}") from e


def create_summary_backend(settings: Settings | None = None) -> SummaryBackend:
    settings = settings or get_settings()
    if settings.SUMMARY_BACKEND == "cloudflare":
        return CloudflareSummaryBackend(settings)
    return OpenAIResponsesBackend(settings)


class Summarizer:
    """Prompts + deadline + response parsing around a SummaryBackend."""

    def __init__(self, backend: SummaryBackend, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self.backend = backend
        self._timeout = settings.SUMMARY_TIMEOUT_S
        self._context_lines = [
            f"Talk title: {settings.CONTEXT_TITLE}" if settings.CONTEXT_TITLE else "",
            f"Speaker: {settings.CONTEXT_SPEAKER}" if settings.CONTEXT_SPEAKER else "",
            f"Abstract: {settings.CONTEXT_ABSTRACT}" if settings.CONTEXT_ABSTRACT else "",
        ]

    @property
    def context_text(self) -> str:
        return "\n".join(line for line in self._context_lines if line)

    async def _call(self, system_prompt: str, user_parts: list[str], schema: dict, schema_name: str) -> CardContent:
        raw = await with_deadline(
            self.backend.complete(system_prompt, user_parts, schema, schema_name),
            self._timeout,
            SummaryRequestError,
            f"{self.backend.name} summary",
        )
        return parse_card_response(raw)

    async def summarise_window(
        self,
        text: str,
        time_start: float,
        time_end: float,
        confidence: float | None = None,
    ) -> CardContent:
        """Summarise one transcript window. Time fields always come from the caller."""
        logger.debug(
            "Window summary [%.1f-%.1fs] input len=%d preview=%s",
            time_start, time_end, len(text), preview(text),
        )
        content = await self._call(
            _WINDOW_SYSTEM_PROMPT,
            [self.context_text, f"Transcript [{time_start:.1f}–{time_end:.1f}s]:\n{text}"],
            WINDOW_CARD_SCHEMA,
            "LiveBlogChunk",
        )
        return content.model_copy(
            update={"time_start": time_start, "time_end": time_end, "confidence": confidence}
        )

    async def timer_based_summarise(
        self,
        last_words: str,
        previous_summary: str,
        max_words: int,
    ) -> CardContent:
        """Summarise only what is new in the transcript tail relative to previous_summary."""
        logger.debug(
            "Timer summary input words<=%d preview=%s previous=%s",
            max_words, preview(last_words), preview(previous_summary, 120),
        )
        content = await self._call(
            _TIMER_SYSTEM_PROMPT,
            [
                self.context_text,
                f"Previous summary:\n{previous_summary.strip() or '(none yet)'}",
                f"Latest transcript (last {max_words} words):\n{last_words}",
            ],
            TIMER_CARD_SCHEMA,
            "LiveBlogUpdate",
        )
        # Timer cards carry no source time span
        return content.model_copy(update={"time_start": None, "time_end": None})

    async def aclose(self) -> None:
        await self.backend.aclose()
