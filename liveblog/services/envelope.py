"""
Response envelope decoding for structured summariser output.

Backends nest the answer differently: a bare string, a typed text part
`{type, text}`, or a container `{content: [...]}` (the Responses API message
item). Each known shape is an explicit variant; decode_envelope() maps a raw
candidate onto exactly one of them or fails with ResponseShapeError. Parsing
then proceeds in three steps, each with its own error: extract text, parse
JSON, validate against CardContent.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Union

from pydantic import ValidationError

from liveblog.errors import ResponseParseError, ResponseShapeError, SchemaViolationError
from liveblog.schemas.card import CardContent

# Part types that carry model text; anything else (e.g. "refusal") has no usable output
TEXT_PART_TYPES = frozenset({"output_text", "text"})


@dataclass(frozen=True)
class BareText:
    text: str


@dataclass(frozen=True)
class TypedText:
    type: str
    text: str


@dataclass(frozen=True)
class NestedContent:
    parts: tuple["Envelope", ...]


Envelope = Union[BareText, TypedText, NestedContent]


def decode_envelope(raw: Any) -> Envelope:
    """Map a raw output candidate onto one envelope variant."""
    if isinstance(raw, str):
        return BareText(raw)
    if isinstance(raw, dict):
        if isinstance(raw.get("text"), str):
            return TypedText(type=str(raw.get("type") or "output_text"), text=raw["text"])
        if "content" in raw:
            content = raw["content"]
            items = content if isinstance(content, list) else [content]
            return NestedContent(tuple(decode_envelope(item) for item in items))
        if "type" in raw:
            # A typed part without text, e.g. {"type": "refusal", "refusal": "..."}
            return TypedText(type=str(raw["type"]), text="")
    raise ResponseShapeError(f"no textual output found (unrecognised envelope: {type(raw).__name__})")


def envelope_text(envelope: Envelope) -> str:
    """Extract the single JSON text blob carried by an envelope."""
    if isinstance(envelope, BareText):
        text = envelope.text
    elif isinstance(envelope, TypedText):
        if envelope.type not in TEXT_PART_TYPES:
            raise ResponseShapeError(f"output part of type {envelope.type!r} carries no text")
        text = envelope.text
    elif isinstance(envelope, NestedContent):
        if not envelope.parts:
            raise ResponseShapeError("no textual output found (empty content)")
        # First part wins; the structured-output contract yields exactly one text part
        return envelope_text(envelope.parts[0])
    else:
        raise ResponseShapeError(f"unknown envelope variant {type(envelope).__name__}")
    if not text.strip():
        raise ResponseShapeError("no textual output found (empty text)")
    return text


_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```\s*$")


def parse_json_text(text: str) -> Any:
    """Parse model JSON (may be wrapped in markdown code block)."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_OPEN.sub("", cleaned)
        cleaned = _FENCE_CLOSE.sub("", cleaned)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ResponseParseError(f"summariser output is not valid JSON ({e.msg} at {e.pos})", raw=text) from e


def validate_card(payload: Any) -> CardContent:
    if not isinstance(payload, dict):
        raise SchemaViolationError(
            f"expected a JSON object, got {type(payload).__name__}", payload=payload
        )
    try:
        return CardContent.model_validate(payload)
    except ValidationError as e:
        details = e.errors(include_url=False)
        fields = ", ".join(".".join(str(p) for p in d.get("loc", ())) or "?" for d in details)
        raise SchemaViolationError(
            f"summariser output does not match card shape ({fields})",
            payload=payload,
            details=details,
        ) from e


def parse_card_response(raw: Any) -> CardContent:
    """Envelope → text → JSON → CardContent. Each step fails with its own error type."""
    text = envelope_text(decode_envelope(raw))
    return validate_card(parse_json_text(text))
