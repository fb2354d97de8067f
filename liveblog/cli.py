"""CLI entry point: serve the live-blog app, optionally replaying a recording."""
from __future__ import annotations

import argparse
import asyncio
import logging
import os

import uvicorn

from liveblog.asr import create_asr_engine, load_whisper_model
from liveblog.audio.segmenter import Segmenter
from liveblog.broadcast import BroadcastHub
from liveblog.config import Settings, configure_logging, get_settings
from liveblog.errors import LiveBlogError
from liveblog.services.simulation import SimulationOptions, SimulationResult, run_simulation
from liveblog.services.summarizer import Summarizer, create_summary_backend

logger = logging.getLogger("liveblog.cli")


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="liveblog",
        description="Live-blog a talk: summary cards pushed to browsers over SSE.",
    )
    parser.add_argument("--file", help="Audio file to replay as a simulated talk. Omit for live ingest only.")
    parser.add_argument("--chunk", type=float, default=15.0, help="Segment length in seconds.")
    parser.add_argument("--hold", type=float, default=1.0, help="Seconds to wait before summarising each window.")
    parser.add_argument("--speed", type=float, default=1.0, help="Playback speed multiplier.")
    parser.add_argument(
        "--serve",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Run the web server (viewer UI, /stream, /audio-stream).",
    )
    parser.add_argument("--host", default=settings.HOST, help="Bind address.")
    parser.add_argument("--port", type=int, default=settings.PORT, help="Port.")
    return parser


async def run_headless(options: SimulationOptions, settings: Settings) -> SimulationResult:
    """Simulation without a server; cards only reach the log."""
    model = load_whisper_model(settings) if settings.ASR_BACKEND == "local" else None
    engine = create_asr_engine(settings, whisper_model=model)
    summarizer = Summarizer(create_summary_backend(settings), settings)
    hub = BroadcastHub(settings.SSE_QUEUE_SIZE)
    try:
        return await run_simulation(
            options,
            segmenter=Segmenter(settings),
            engine=engine,
            summarizer=summarizer,
            hub=hub,
            transcribe_timeout=settings.TRANSCRIBE_TIMEOUT_S,
            emit_degraded=settings.EMIT_DEGRADED_EVENTS,
        )
    finally:
        hub.close()
        await summarizer.aclose()
        await engine.aclose()


def main(argv: list[str] | None = None) -> int:
    settings = get_settings()
    parser = build_parser(settings)
    args = parser.parse_args(argv)
    configure_logging(settings)

    options = None
    if args.file:
        if not os.path.isfile(args.file):
            parser.error(f"audio file not found: {args.file}")
        try:
            options = SimulationOptions(file=args.file, chunk=args.chunk, hold=args.hold, speed=args.speed)
        except ValueError as e:
            parser.error(str(e))

    if not args.serve:
        if options is None:
            parser.error("--no-serve needs --file")
        try:
            result = asyncio.run(run_headless(options, settings))
        except LiveBlogError as e:
            logger.error("Simulation failed: %s", e)
            return 1
        print(f"{result.segments} segments, {result.cards} cards, {result.dropped} dropped")
        return 0

    # liveblog.main builds a module-level app on import
    from liveblog.main import create_app

    app = create_app(settings=settings, simulation=options)
    logger.info("Serving on http://%s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port, log_level=settings.LOG_LEVEL.lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
