"""
Window/buffer management for the two summarisation strategies.

Rolling window (simulation): an append-only log of timed transcript entries;
each step re-summarises the trailing max(30, 2 x chunk) seconds, clamped at 0.

Diff timer (live): one append-only running transcript; each tick hands the
trailing N words plus the previous card to the summariser.
"""
from __future__ import annotations

from dataclasses import dataclass

MIN_WINDOW_SECONDS = 30.0


@dataclass(frozen=True)
class TranscriptEntry:
    start: float
    end: float
    text: str
    confidence: float = 0.0


@dataclass(frozen=True)
class Window:
    """Span of transcript selected as input to one summarisation call."""

    text: str
    start: float  # current chunk start (card time_start)
    end: float  # current chunk end (card time_end)
    window_start: float  # earliest context boundary
    confidence: float | None
    entry_count: int


def window_back_seconds(chunk_seconds: float) -> float:
    return max(MIN_WINDOW_SECONDS, 2.0 * chunk_seconds)


class RollingWindow:
    """Ordered log of (start, end, text) entries with trailing-window selection."""

    def __init__(self, chunk_seconds: float) -> None:
        self.chunk_seconds = float(chunk_seconds)
        self.back_seconds = window_back_seconds(self.chunk_seconds)
        self._entries: list[TranscriptEntry] = []

    @property
    def entries(self) -> tuple[TranscriptEntry, ...]:
        return tuple(self._entries)

    def append(self, entry: TranscriptEntry) -> Window:
        """Record the newest entry and return the window ending at it."""
        if self._entries and entry.end < self._entries[-1].end:
            raise ValueError(
                f"entries must arrive in order: end {entry.end} < previous {self._entries[-1].end}"
            )
        self._entries.append(entry)
        return self.window_at(entry.start, entry.end)

    def window_at(self, start: float, end: float) -> Window:
        window_start = max(0.0, end - self.back_seconds)
        selected = [e for e in self._entries if e.end > window_start]
        confidences = [e.confidence for e in selected]
        return Window(
            text="\n".join(e.text for e in selected),
            start=start,
            end=end,
            window_start=window_start,
            confidence=(sum(confidences) / len(confidences)) if confidences else None,
            entry_count=len(selected),
        )


class RunningTranscript:
    """
    Append-only transcript for one live session. Appends are a single
    synchronous step on the event loop, so readers never see a partial one.
    """

    def __init__(self) -> None:
        self._fragments: list[str] = []
        self._text = ""

    def append(self, text: str) -> bool:
        """Append one fragment; blank fragments are ignored. Returns True if appended."""
        cleaned = " ".join((text or "").split())
        if not cleaned:
            return False
        self._fragments.append(cleaned)
        self._text = f"{self._text} {cleaned}" if self._text else cleaned
        return True

    @property
    def text(self) -> str:
        return self._text

    @property
    def fragment_count(self) -> int:
        return len(self._fragments)

    def __len__(self) -> int:
        return len(self._text)

    def word_count(self) -> int:
        return len(self._text.split())

    def tail_words(self, max_words: int) -> str:
        """Trailing `max_words` whitespace-separated tokens, empty tokens discarded."""
        if max_words <= 0:
            return ""
        return " ".join(self._text.split()[-max_words:])
