"""
Simulation pipeline: plays an audio file through the rolling-window strategy.

A simulated clock advances by the nominal chunk length per segment. Between
segments the pipeline waits chunk/speed seconds of wall time, transcribes,
then holds back `hold` seconds before summarising the trailing window. Every
summary is broadcast as-is (no diffing); `eof` follows the last segment.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from liveblog.asr.base import ASREngine
from liveblog.audio.segmenter import Segmenter
from liveblog.broadcast import BroadcastHub
from liveblog.errors import LiveBlogError, SummaryError, TranscriptionError, preview, with_deadline
from liveblog.schemas.card import SummaryCard
from liveblog.services.summarizer import Summarizer
from liveblog.transcript.window import RollingWindow, TranscriptEntry

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class SimulationOptions:
    file: str
    chunk: float = 15.0
    hold: float = 1.0
    speed: float = 1.0

    def __post_init__(self) -> None:
        if self.chunk <= 0:
            raise ValueError("chunk must be positive")
        if self.hold < 0:
            raise ValueError("hold must not be negative")
        if self.speed <= 0:
            raise ValueError("speed must be positive")


@dataclass
class SimulationResult:
    segments: int = 0
    cards: int = 0
    dropped: int = 0


async def run_simulation(
    options: SimulationOptions,
    *,
    segmenter: Segmenter,
    engine: ASREngine,
    summarizer: Summarizer,
    hub: BroadcastHub,
    transcribe_timeout: float | None = None,
    emit_degraded: bool = True,
    sleep: Sleep = asyncio.sleep,
) -> SimulationResult:
    """Segment, transcribe and summarise `options.file`, broadcasting as it goes."""
    segments = await segmenter.segment_file(options.file, options.chunk)
    logger.info("Segmented into %d chunks of ~%ss", len(segments.files), options.chunk)

    window = RollingWindow(options.chunk)
    result = SimulationResult(segments=len(segments.files))
    clock = 0.0

    def degraded(stage: str, err: LiveBlogError, index: int) -> None:
        result.dropped += 1
        if emit_degraded:
            hub.publish("degraded", {"stage": stage, "error": str(err), "index": index})

    try:
        for index, path in enumerate(segments.files):
            start = clock
            end = clock + options.chunk
            clock = end

            # Simulate playback time (scaled by speed)
            await sleep(max(0.0, options.chunk / options.speed))

            try:
                fragment = await with_deadline(
                    engine.transcribe(path), transcribe_timeout, TranscriptionError, "transcription"
                )
            except TranscriptionError as e:
                logger.warning("Segment %d [%.1f-%.1fs] transcription failed: %s", index, start, end, e)
                degraded("transcription", e, index)
                continue

            hub.publish("transcript_piece", {"index": index, "path": path, "text": fragment.text})
            win = window.append(TranscriptEntry(start, end, fragment.text, fragment.confidence))
            logger.debug(
                "Window [%.1f-%.1fs] covers %d entries back to %.1fs",
                start, end, win.entry_count, win.window_start,
            )

            # Hold-back before we summarise this window
            await sleep(options.hold)

            try:
                content = await summarizer.summarise_window(win.text, start, end, confidence=win.confidence)
            except SummaryError as e:
                logger.warning(
                    "Window [%.1f-%.1fs] summary dropped (%s): %s; input=%s",
                    start, end, type(e).__name__, e, preview(win.text),
                )
                degraded("summary", e, index)
                continue
            if content.is_empty:
                logger.info("Window [%.1f-%.1fs] produced an empty headline; nothing to emit", start, end)
                continue

            card = SummaryCard.from_content(content)
            hub.publish("chunk", card.model_dump())
            result.cards += 1
            logger.info("Card [%.1f-%.1fs] %s", start, end, card.headline)
    finally:
        Segmenter.cleanup(segments)

    hub.publish("eof", {"done": True})
    logger.info("Simulation done: %d segments, %d cards, %d dropped", result.segments, result.cards, result.dropped)
    return result
