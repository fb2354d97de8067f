"""Application configuration. Loads from env vars."""
from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """App settings. Override via environment variables."""

    # Viewer UI, SSE stream and ingest WebSocket share one listener
    HOST: str = "0.0.0.0"
    PORT: int = 5173

    # Live session defaults; a handshake may override any of these per connection
    SAMPLE_RATE: int = 16000
    CHANNELS: int = 1
    CLIENT_CHUNK_MS: int = 250
    SUMMARY_WORDS: int = 40
    SEGMENT_SECONDS: int = 15
    PROCESS_INTERVAL_MS: int = 10000
    SUMMARY_INTERVAL_MS: int = 10000
    # When false, audio arriving before the handshake is accepted with the defaults above
    INGEST_REQUIRE_HANDSHAKE: bool = True

    # Segmentation: ffmpeg re-encodes every segment to mono Opus at this rate
    FFMPEG_BIN: str = "ffmpeg"
    SEGMENT_SAMPLE_RATE: int = 16000
    SEGMENT_CODEC: str = "libopus"

    # ASR backend: "openai" | "cloudflare" | "local"
    ASR_BACKEND: Literal["openai", "cloudflare", "local"] = "openai"
    TRANSCRIBE_MODEL: str = "gpt-4o-transcribe"

    # Summary backend: "openai" (Responses API) | "cloudflare" (Workers AI)
    SUMMARY_BACKEND: Literal["openai", "cloudflare"] = "openai"
    SUMMARISE_MODEL: str = "gpt-4o-mini"
    CF_SUMMARY_MODEL: str = "@cf/meta/llama-3.1-8b-instruct"
    SUMMARY_MAX_TOKENS: int = 1024

    # Optional talk context prepended to every window summary
    CONTEXT_TITLE: str = ""
    CONTEXT_SPEAKER: str = ""
    CONTEXT_ABSTRACT: str = ""

    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"

    # Cloudflare Workers AI: ASR (when ASR_BACKEND=cloudflare) and summaries (SUMMARY_BACKEND=cloudflare)
    CLOUDFLARE_ACCOUNT_ID: str = ""
    CLOUDFLARE_API_TOKEN: str = ""

    # Local Whisper (when ASR_BACKEND=local); model loaded once at startup
    LOCAL_WHISPER_MODEL: str = "base"  # base | small | medium | large-v3
    LOCAL_WHISPER_DEVICE: Literal["cpu", "cuda"] = "cpu"
    LOCAL_WHISPER_COMPUTE_TYPE: Literal["int8", "float16"] = "int8"
    LOCAL_WHISPER_BEAM_SIZE: int = 5

    # Deadlines for external calls (seconds); a timeout drops the cycle like any other failure
    SEGMENT_TIMEOUT_S: float = 120.0
    TRANSCRIBE_TIMEOUT_S: float = 60.0
    SUMMARY_TIMEOUT_S: float = 60.0

    # Push channel
    SSE_KEEPALIVE_S: float = 15.0
    SSE_QUEUE_SIZE: int = 256
    EMIT_DEGRADED_EVENTS: bool = True

    # Logging: level (DEBUG, INFO, WARNING, ERROR); file path = also log to a rotating file.
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    class Config:
        env_file = ".env"
        extra = "ignore"


def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings | None = None) -> None:
    """Console logging plus an optional rotating file. Safe to call more than once."""
    settings = settings or get_settings()
    level = getattr(logging, (settings.LOG_LEVEL or "INFO").upper(), logging.INFO)
    fmt = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    root = logging.getLogger()
    root.setLevel(level)
    if not any(getattr(h, "_liveblog", False) for h in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(fmt)
        console._liveblog = True  # type: ignore[attr-defined]
        root.addHandler(console)
        if settings.LOG_FILE:
            os.makedirs(os.path.dirname(settings.LOG_FILE) or ".", exist_ok=True)
            handler = RotatingFileHandler(settings.LOG_FILE, maxBytes=2_000_000, backupCount=3)
            handler.setFormatter(fmt)
            handler._liveblog = True  # type: ignore[attr-defined]
            root.addHandler(handler)
