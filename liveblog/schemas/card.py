"""
Schemas for live-blog summary cards.

CardContent is what the summariser returns; SummaryCard adds the emission id
and is what viewers receive as a ``chunk`` event. Cards are never mutated
after emission and never persisted.
"""
from __future__ import annotations

import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

MAX_BULLETS = 5

# Strict structured-output schema shared by both summariser requests.
_BASE_PROPERTIES: dict[str, Any] = {
    "headline": {"type": "string"},
    "bullets": {"type": "array", "items": {"type": "string"}, "maxItems": MAX_BULLETS},
    "quotes": {"type": "array", "items": {"type": "string"}},
    "entities": {"type": "array", "items": {"type": "string"}},
}


def _object_schema(properties: dict[str, Any]) -> dict[str, Any]:
    # Structured-output validators require every property in `required` when additionalProperties is false
    return {
        "type": "object",
        "additionalProperties": False,
        "properties": properties,
        "required": list(properties),
    }


WINDOW_CARD_SCHEMA: dict[str, Any] = _object_schema(
    {
        **_BASE_PROPERTIES,
        "time_start": {"type": "number"},
        "time_end": {"type": "number"},
        "revision_of": {"type": ["string", "null"]},
    }
)

TIMER_CARD_SCHEMA: dict[str, Any] = _object_schema(dict(_BASE_PROPERTIES))


class CardContent(BaseModel):
    """Summariser output: a card without its emission id."""

    model_config = ConfigDict(extra="ignore")

    headline: str = Field(..., description="Short headline; empty = nothing new to report")
    bullets: list[str] = Field(..., max_length=MAX_BULLETS, description="Short verb-led bullets")
    quotes: list[str] = Field(..., description="Verbatim quotes, may be empty")
    entities: list[str] = Field(..., description="Named entities, may be empty")
    time_start: float | None = Field(None, description="Window start, seconds into the source")
    time_end: float | None = Field(None, description="Window end, seconds into the source")
    confidence: float | None = Field(None, ge=0.0, le=1.0, description="Mean ASR confidence of the window")
    revision_of: str | None = Field(None, description="Id of a card this one supersedes")

    @property
    def is_empty(self) -> bool:
        return not self.headline.strip()


class SummaryCard(CardContent):
    """The emitted unit, broadcast as a ``chunk`` event."""

    id: str = Field(..., description="Opaque unique id generated at emission time")

    @classmethod
    def from_content(cls, content: CardContent) -> "SummaryCard":
        data = content.model_dump()
        # Revisions are reserved; every emitted card is a fresh one
        data["revision_of"] = None
        return cls(id=str(uuid.uuid4()), **data)


def render_previous_summary(card: CardContent) -> str:
    """Plain-text rendering fed back to the next diff-timer cycle."""
    bullets = "; ".join(b.strip() for b in card.bullets if b.strip())
    headline = card.headline.strip()
    return f"{headline}: {bullets}" if bullets else headline
