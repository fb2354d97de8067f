"""
Error taxonomy for the live-blog pipeline.

Every external stage raises its own type so the cycle boundary (session
manager, simulation) can log it, publish a ``degraded`` event and move on.
Summariser failures get one class per depth of malformation.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, TypeVar

T = TypeVar("T")


class LiveBlogError(Exception):
    """Base for all pipeline errors."""


class SegmentationError(LiveBlogError):
    """ffmpeg failed to split the input into segments."""


class TranscriptionError(LiveBlogError):
    """Speech-to-text call failed for one segment."""


class SummaryError(LiveBlogError):
    """Base for summariser failures."""


class SummaryRequestError(SummaryError):
    """Transport failure, non-2xx status, missing credentials or deadline exceeded."""


class ResponseShapeError(SummaryError):
    """No textual output could be extracted from the response envelope."""


class ResponseParseError(SummaryError):
    """Extracted text is not valid JSON."""

    def __init__(self, message: str, raw: str) -> None:
        super().__init__(f"{message}; raw={preview(raw, 300)!r}")
        self.raw = raw


class SchemaViolationError(SummaryError):
    """Parsed JSON does not match the card shape."""

    def __init__(self, message: str, payload: Any = None, details: list | None = None) -> None:
        super().__init__(message)
        self.payload = payload
        self.details = details or []


class SessionConfigError(LiveBlogError):
    """Handshake missing, malformed or out of range."""


def preview(text: str | None, limit: int = 200) -> str:
    """Collapse whitespace and truncate, for log lines."""
    flat = " ".join((text or "").split())
    if len(flat) <= limit:
        return flat
    return flat[:limit] + f"... [{len(flat)} chars]"


async def with_deadline(
    awaitable: Awaitable[T],
    timeout: float | None,
    error_cls: type[LiveBlogError],
    what: str,
) -> T:
    """Await with a bounded deadline; a timeout becomes ``error_cls``."""
    if not timeout or timeout <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as err:
        raise error_cls(f"{what} timed out after {timeout:.1f}s") from err
