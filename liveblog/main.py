"""
FastAPI app: viewer UI, SSE push channel and the live audio ingest WebSocket.

GET /              viewer page (EventSource client)
GET /stream        text/event-stream: transcript_piece | chunk | eof | degraded
WS  /audio-stream  handshake (text) then audio (binary); one socket = one session
GET /health        liveness
GET /api/sessions  active live sessions

Components (ASR engine, summariser, segmenter, hub) are built in the lifespan
unless injected through create_app(); an optional simulation runs as a
background task next to live sessions, sharing the same hub.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import FastAPI, WebSocket
from fastapi.responses import FileResponse, StreamingResponse

from liveblog.asr import create_asr_engine, load_whisper_model
from liveblog.asr.base import ASREngine
from liveblog.audio.segmenter import Segmenter
from liveblog.broadcast import BroadcastHub, Subscription
from liveblog.config import Settings, get_settings
from liveblog.errors import LiveBlogError
from liveblog.services.simulation import SimulationOptions, run_simulation
from liveblog.services.summarizer import Summarizer, create_summary_backend
from liveblog.session_manager import LiveSession
from liveblog.session_store import list_sessions

logger = logging.getLogger(__name__)

UI_PATH = Path(__file__).parent / "static" / "ui.html"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def _sse_frames(hub: BroadcastHub, sub: Subscription, keepalive: float):
    """Frames for one viewer; comment pings while idle. Unsubscribes on disconnect."""
    try:
        yield ": connected\n\n"
        while True:
            try:
                frame = await sub.next_frame(timeout=keepalive)
            except asyncio.TimeoutError:
                yield ": ping\n\n"
                continue
            if frame is None:
                return
            yield frame
    finally:
        hub.unsubscribe(sub)


async def _simulate(app: FastAPI, options: SimulationOptions, settings: Settings) -> None:
    state = app.state
    try:
        await run_simulation(
            options,
            segmenter=state.segmenter,
            engine=state.asr_engine,
            summarizer=state.summarizer,
            hub=state.hub,
            transcribe_timeout=settings.TRANSCRIBE_TIMEOUT_S,
            emit_degraded=settings.EMIT_DEGRADED_EVENTS,
        )
    except LiveBlogError as e:
        logger.error("Simulation of %s aborted: %s", options.file, e)


def create_app(
    *,
    settings: Settings | None = None,
    asr_engine: ASREngine | None = None,
    summarizer: Summarizer | None = None,
    segmenter: Segmenter | None = None,
    hub: BroadcastHub | None = None,
    simulation: SimulationOptions | None = None,
) -> FastAPI:
    """Build the app. Anything not injected is built from settings at startup."""
    settings = settings or get_settings()
    hub = hub or BroadcastHub(settings.SSE_QUEUE_SIZE)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned: list[Any] = []
        engine = asr_engine
        app.state.whisper_model = None
        if engine is None:
            # Load Whisper model once at startup when using local backend (singleton)
            if settings.ASR_BACKEND == "local":
                app.state.whisper_model = load_whisper_model(settings)
            engine = create_asr_engine(settings, whisper_model=app.state.whisper_model)
            owned.append(engine)
        summ = summarizer
        if summ is None:
            summ = Summarizer(create_summary_backend(settings), settings)
            owned.append(summ)

        app.state.asr_engine = engine
        app.state.summarizer = summ
        app.state.segmenter = segmenter or Segmenter(settings)
        app.state.simulation_task = None
        logger.info(
            "Started: asr=%s summary=%s handshake_required=%s",
            engine.name, summ.backend.name, settings.INGEST_REQUIRE_HANDSHAKE,
        )
        if simulation is not None:
            app.state.simulation_task = asyncio.create_task(_simulate(app, simulation, settings))
        yield

        task = app.state.simulation_task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        hub.close()
        for component in owned:
            await component.aclose()
        app.state.whisper_model = None

    app = FastAPI(
        title="Live blog",
        description="Incremental live-blog summaries of talks, pushed over SSE",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.hub = hub

    @app.get("/")
    async def index() -> FileResponse:
        return FileResponse(UI_PATH, media_type="text/html")

    @app.get("/stream")
    async def stream() -> StreamingResponse:
        sub = hub.subscribe()
        return StreamingResponse(
            _sse_frames(hub, sub, settings.SSE_KEEPALIVE_S),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.websocket("/audio-stream")
    async def audio_stream(websocket: WebSocket) -> None:
        """
        Ingest: first a text frame `{kind: "handshake", format, sampleRate, ...}`,
        then binary audio frames. Server replies `{kind: "ready"}` or
        `{kind: "error"}` followed by close 1008.
        """
        await websocket.accept()
        state = websocket.app.state
        session = LiveSession(
            websocket,
            engine=state.asr_engine,
            summarizer=state.summarizer,
            segmenter=state.segmenter,
            hub=hub,
            settings=settings,
        )
        await session.run()

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/api/sessions")
    async def sessions() -> dict:
        return {"sessions": list_sessions(), "viewers": hub.subscriber_count}

    return app


app = create_app()
