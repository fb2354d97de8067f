"""
Schemas for the ingest WebSocket control channel.

Text frames carry JSON control messages, binary frames carry audio. The first
control message is the handshake; every field is optional and falls back to
the configured defaults.
"""
from __future__ import annotations

import json
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from liveblog.config import Settings
from liveblog.errors import SessionConfigError

# Formats that carry headerless little-endian 16-bit linear PCM
RAW_PCM_FORMATS = frozenset({"s16le", "pcm", "pcm_s16le", "linear16"})


class Handshake(BaseModel):
    """First control message: `{kind: "handshake", format, sampleRate, ...}`."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    kind: Literal["handshake"] = "handshake"
    format: str | None = Field(None, description="'s16le' for raw PCM, else a container (webm, ogg, wav...)")
    sample_rate: int | None = Field(None, alias="sampleRate", gt=0, le=192000)
    channels: int | None = Field(None, ge=1, le=8)
    name: str | None = Field(None, max_length=200)
    client_chunk_ms: int | None = Field(None, alias="clientChunkMs", gt=0)
    summary_words: int | None = Field(None, alias="summaryWords", gt=0, le=5000)
    segment_seconds: int | None = Field(None, alias="segmentSeconds", gt=0, le=600)
    process_interval_ms: int | None = Field(None, alias="processIntervalMs", ge=100)
    summary_interval_ms: int | None = Field(None, alias="summaryIntervalMs", ge=100)


class SessionConfig(BaseModel):
    """Negotiated per-session parameters, fixed for the session's lifetime."""

    format: str | None = None
    sample_rate: int = 16000
    channels: int = 1
    name: str | None = None
    client_chunk_ms: int = 250
    summary_words: int = 40
    segment_seconds: int = 15
    process_interval_ms: int = 10000
    summary_interval_ms: int = 10000

    @property
    def is_raw_pcm(self) -> bool:
        return (self.format or "").strip().lower() in RAW_PCM_FORMATS

    @classmethod
    def defaults(cls, settings: Settings) -> "SessionConfig":
        return cls(
            sample_rate=settings.SAMPLE_RATE,
            channels=settings.CHANNELS,
            client_chunk_ms=settings.CLIENT_CHUNK_MS,
            summary_words=settings.SUMMARY_WORDS,
            segment_seconds=settings.SEGMENT_SECONDS,
            process_interval_ms=settings.PROCESS_INTERVAL_MS,
            summary_interval_ms=settings.SUMMARY_INTERVAL_MS,
        )

    @classmethod
    def from_handshake(cls, handshake: Handshake, settings: Settings) -> "SessionConfig":
        base = cls.defaults(settings)
        overrides = handshake.model_dump(exclude={"kind"}, exclude_none=True)
        return base.model_copy(update=overrides)


def parse_control_message(text: str) -> Handshake:
    """
    Decode one text frame into a handshake.
    Raises SessionConfigError for invalid JSON, non-objects, unknown kinds or bad values.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise SessionConfigError(f"control message is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise SessionConfigError("control message must be a JSON object")
    kind = data.get("kind", "handshake")
    if kind != "handshake":
        raise SessionConfigError(f"unknown control message kind: {kind!r}")
    try:
        return Handshake.model_validate(data)
    except ValidationError as e:
        raise SessionConfigError(f"invalid handshake: {e.errors(include_url=False)}") from e
