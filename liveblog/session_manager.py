"""
LiveSession: one ingest WebSocket = one live-blog session.

State machine: AWAITING_HANDSHAKE -> STREAMING -> CLOSING -> CLOSED.
Text frames are JSON control messages, binary frames are audio; there is no
content sniffing. The handshake fixes the session config and starts the
summary timer; the server answers with `{kind: "ready"}`. Text frames after
the handshake are logged and ignored.

Two independent timers drive the session:
- ingest timer: armed lazily by the first buffered byte, re-armed only after
  it fires; each firing drains the buffer, segments, transcribes segments in
  order and appends to the running transcript (transcript_piece per fragment).
- summary timer: fires every summary_interval_ms regardless of audio; runs
  the diff-timer strategy over the transcript tail and the previous card.

Flushes are serialised by a lock, so fragments land in segment order even if
the close-time flush overlaps a timer flush. Closing cancels both timers,
lets in-flight work finish, then flushes once more. A failed segment or
summary cycle is logged and dropped; it never ends the session.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

from liveblog.asr.base import ASREngine
from liveblog.audio.pcm import PcmFormat
from liveblog.audio.segmenter import Segmenter, Segments
from liveblog.broadcast import BroadcastHub
from liveblog.config import Settings, get_settings
from liveblog.errors import (
    LiveBlogError,
    SegmentationError,
    SessionConfigError,
    SummaryError,
    TranscriptionError,
    preview,
    with_deadline,
)
from liveblog.schemas.card import SummaryCard, render_previous_summary
from liveblog.schemas.ingest import SessionConfig, parse_control_message
from liveblog.services.summarizer import Summarizer
from liveblog.session_store import generate_session_id, register_session, unregister_session
from liveblog.transcript.window import RunningTranscript

logger = logging.getLogger(__name__)

# WebSocket close code for protocol/policy violations (bad handshake, audio before handshake)
POLICY_VIOLATION = 1008


class SessionPhase(str, Enum):
    AWAITING_HANDSHAKE = "awaiting_handshake"
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class SessionState:
    """All mutable state of one live connection; owned by its LiveSession."""

    session_id: str
    config: SessionConfig
    phase: SessionPhase = SessionPhase.AWAITING_HANDSHAKE
    running_transcript: RunningTranscript = field(default_factory=RunningTranscript)
    previous_summary_context: str = ""
    pending_audio: bytearray = field(default_factory=bytearray)
    ingest_timer: asyncio.Task | None = None
    summary_timer: asyncio.Task | None = None
    # len(running_transcript) covered by the last cycle that got a summariser answer
    summarised_upto: int = 0
    fragments_emitted: int = 0
    cards_emitted: int = 0
    bytes_received: int = 0
    created_at: float = field(default_factory=time.time)

    def drain_audio(self, multiple_of: int = 1) -> bytes:
        """Take the longest buffered prefix whose length is a multiple of `multiple_of`."""
        n = len(self.pending_audio)
        if multiple_of > 1:
            n -= n % multiple_of
        data = bytes(self.pending_audio[:n])
        del self.pending_audio[:n]
        return data

    def snapshot(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "name": self.config.name,
            "phase": self.phase.value,
            "format": self.config.format,
            "transcript_chars": len(self.running_transcript),
            "transcript_words": self.running_transcript.word_count(),
            "fragments_emitted": self.fragments_emitted,
            "cards_emitted": self.cards_emitted,
            "bytes_received": self.bytes_received,
            "pending_bytes": len(self.pending_audio),
            "created_at": self.created_at,
        }


class LiveSession:
    """Drives one SessionState from its WebSocket and its two timers."""

    def __init__(
        self,
        websocket: WebSocket,
        *,
        engine: ASREngine,
        summarizer: Summarizer,
        segmenter: Segmenter,
        hub: BroadcastHub,
        settings: Settings | None = None,
    ) -> None:
        self._ws = websocket
        self._engine = engine
        self._summarizer = summarizer
        self._segmenter = segmenter
        self._hub = hub
        self._settings = settings or get_settings()
        self.state = SessionState(
            session_id=generate_session_id(),
            config=SessionConfig.defaults(self._settings),
        )
        self._flush_lock = asyncio.Lock()
        self._flush_tasks: set[asyncio.Task] = set()
        self._summary_inflight: asyncio.Task | None = None

    @property
    def session_id(self) -> str:
        return self.state.session_id

    # --- connection loop ---

    async def run(self) -> None:
        """Receive until disconnect, then close the session."""
        register_session(self.state)
        logger.info("[%s] ingest connection opened", self.session_id)
        try:
            while self.state.phase in (SessionPhase.AWAITING_HANDSHAKE, SessionPhase.STREAMING):
                try:
                    msg = await self._ws.receive()
                except (WebSocketDisconnect, RuntimeError):
                    break
                if msg.get("type") == "websocket.disconnect":
                    break
                if msg.get("text") is not None:
                    await self.handle_control(msg["text"])
                elif msg.get("bytes") is not None:
                    await self.handle_audio(msg["bytes"])
        except SessionConfigError as e:
            logger.warning("[%s] rejecting connection: %s", self.session_id, e)
            await self._reject(str(e))
        finally:
            await self.close()

    async def handle_control(self, text: str) -> None:
        if self.state.phase is not SessionPhase.AWAITING_HANDSHAKE:
            # Config is fixed once streaming; later control frames never end the session
            logger.warning(
                "[%s] control frame ignored while %s: %s",
                self.session_id, self.state.phase.value, preview(text, 80),
            )
            return
        handshake = parse_control_message(text)
        self._start(SessionConfig.from_handshake(handshake, self._settings))
        await self._send({"kind": "ready", "session_id": self.session_id, "config": self.state.config.model_dump()})

    async def handle_audio(self, data: bytes) -> None:
        if self.state.phase is SessionPhase.AWAITING_HANDSHAKE:
            if self._settings.INGEST_REQUIRE_HANDSHAKE:
                raise SessionConfigError("audio received before handshake")
            logger.info("[%s] audio before handshake; using default config", self.session_id)
            self._start(self.state.config)
        if self.state.phase is not SessionPhase.STREAMING or not data:
            return
        self.state.pending_audio.extend(data)
        self.state.bytes_received += len(data)
        if self.state.ingest_timer is None:
            self.state.ingest_timer = asyncio.create_task(self._ingest_timer())

    def _start(self, config: SessionConfig) -> None:
        self.state.config = config
        self.state.phase = SessionPhase.STREAMING
        self.state.summary_timer = asyncio.create_task(self._summary_timer())
        logger.info(
            "[%s] streaming: name=%s format=%s rate=%d ch=%d segment=%ss flush=%dms summary=%dms words=%d",
            self.session_id, config.name, config.format, config.sample_rate, config.channels,
            config.segment_seconds, config.process_interval_ms, config.summary_interval_ms,
            config.summary_words,
        )

    # --- timers ---

    async def _ingest_timer(self) -> None:
        await asyncio.sleep(self.state.config.process_interval_ms / 1000.0)
        self.state.ingest_timer = None
        # Separate task: cancelling the timer must not interrupt a running flush
        task = asyncio.create_task(self.process_buffer())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def _summary_timer(self) -> None:
        interval = self.state.config.summary_interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            self._summary_inflight = asyncio.create_task(self.summary_cycle())
            try:
                await asyncio.shield(self._summary_inflight)
            except Exception:
                logger.exception("[%s] summary cycle failed", self.session_id)

    # --- processing ---

    async def process_buffer(self, final: bool = False) -> int:
        """
        Drain, segment and transcribe buffered audio. Returns fragments appended.

        Raw PCM is drained in whole sample frames; a trailing partial frame stays
        buffered for the next flush unless this is the final one.
        """
        async with self._flush_lock:
            config = self.state.config
            pcm = PcmFormat(config.sample_rate, config.channels) if config.is_raw_pcm else None
            data = self.state.drain_audio(pcm.block_align if pcm is not None and not final else 1)
            if not data:
                return 0
            logger.info("[%s] processing buffer: %d bytes", self.session_id, len(data))

            segments: Segments | None = None
            appended = 0
            try:
                try:
                    segments = await self._segmenter.segment_bytes(
                        data, config.segment_seconds, pcm=pcm, container=config.format
                    )
                except SegmentationError as e:
                    logger.warning("[%s] dropping %d bytes: %s", self.session_id, len(data), e)
                    self._degraded("segmentation", e)
                    return 0

                # Sequential: fragments must land in segment order
                for path in segments.files:
                    try:
                        fragment = await with_deadline(
                            self._engine.transcribe(path),
                            self._settings.TRANSCRIBE_TIMEOUT_S,
                            TranscriptionError,
                            "transcription",
                        )
                    except TranscriptionError as e:
                        logger.warning("[%s] skipping segment %s: %s", self.session_id, path, e)
                        self._degraded("transcription", e)
                        continue
                    if not self.state.running_transcript.append(fragment.text):
                        continue
                    index = self.state.fragments_emitted
                    self.state.fragments_emitted += 1
                    appended += 1
                    logger.info(
                        "[%s] fragment %d (conf %.2f): %s",
                        self.session_id, index, fragment.confidence, preview(fragment.text, 120),
                    )
                    self._hub.publish(
                        "transcript_piece",
                        {"index": index, "path": path, "text": fragment.text, "session_id": self.session_id},
                    )
            finally:
                Segmenter.cleanup(segments)
            return appended

    async def summary_cycle(self) -> SummaryCard | None:
        """One diff-timer tick. Returns the broadcast card, or None when nothing was emitted."""
        transcript = self.state.running_transcript
        config = self.state.config
        if len(transcript) == self.state.summarised_upto:
            logger.debug("[%s] summary tick: no new words", self.session_id)
            return None
        tail = transcript.tail_words(config.summary_words)
        if not tail:
            logger.debug("[%s] summary tick: empty tail", self.session_id)
            return None

        covered = len(transcript)
        try:
            content = await self._summarizer.timer_based_summarise(
                tail, self.state.previous_summary_context, config.summary_words
            )
        except SummaryError as e:
            logger.warning(
                "[%s] summary cycle dropped (%s): %s; input=%s",
                self.session_id, type(e).__name__, e, preview(tail),
            )
            self._degraded("summary", e)
            return None

        self.state.summarised_upto = covered
        if content.is_empty:
            logger.info("[%s] summary tick: nothing new", self.session_id)
            return None

        card = SummaryCard.from_content(content)
        self._hub.publish("chunk", card.model_dump())
        self.state.previous_summary_context = render_previous_summary(card)
        self.state.cards_emitted += 1
        logger.info("[%s] card %s: %s", self.session_id, card.id, card.headline)
        return card

    # --- teardown ---

    async def close(self) -> None:
        """Cancel timers, let in-flight work finish, flush once more."""
        if self.state.phase in (SessionPhase.CLOSING, SessionPhase.CLOSED):
            return
        self.state.phase = SessionPhase.CLOSING
        logger.info(
            "[%s] closing; flushing %d buffered bytes", self.session_id, len(self.state.pending_audio)
        )
        for timer in (self.state.ingest_timer, self.state.summary_timer):
            if timer is not None and not timer.done():
                timer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await timer
        self.state.ingest_timer = None
        self.state.summary_timer = None

        inflight = list(self._flush_tasks)
        if self._summary_inflight is not None and not self._summary_inflight.done():
            inflight.append(self._summary_inflight)
        if inflight:
            await asyncio.gather(*inflight, return_exceptions=True)

        try:
            await self.process_buffer(final=True)
        except LiveBlogError as e:
            logger.warning("[%s] final flush failed: %s", self.session_id, e)
        finally:
            self.state.phase = SessionPhase.CLOSED
            unregister_session(self.session_id)
            logger.info(
                "[%s] closed: %d fragments, %d cards",
                self.session_id, self.state.fragments_emitted, self.state.cards_emitted,
            )

    # --- helpers ---

    def _degraded(self, stage: str, err: LiveBlogError) -> None:
        if self._settings.EMIT_DEGRADED_EVENTS:
            self._hub.publish("degraded", {"stage": stage, "error": str(err), "session_id": self.session_id})

    async def _send(self, payload: dict) -> None:
        try:
            await self._ws.send_json(payload)
        except Exception as e:
            logger.debug("[%s] send failed: %s", self.session_id, e)

    async def _reject(self, message: str) -> None:
        await self._send({"kind": "error", "error": message})
        try:
            await self._ws.close(code=POLICY_VIOLATION)
        except Exception as e:
            logger.debug("[%s] close failed: %s", self.session_id, e)
