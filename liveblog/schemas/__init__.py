"""Pydantic schemas for cards and the ingest control channel."""
from liveblog.schemas.card import (
    MAX_BULLETS,
    TIMER_CARD_SCHEMA,
    WINDOW_CARD_SCHEMA,
    CardContent,
    SummaryCard,
    render_previous_summary,
)
from liveblog.schemas.ingest import Handshake, SessionConfig, parse_control_message

__all__ = [
    "MAX_BULLETS",
    "TIMER_CARD_SCHEMA",
    "WINDOW_CARD_SCHEMA",
    "CardContent",
    "SummaryCard",
    "render_previous_summary",
    "Handshake",
    "SessionConfig",
    "parse_control_message",
]
