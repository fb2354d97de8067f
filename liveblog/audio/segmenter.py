"""
Segmenter: splits audio into fixed-duration, independently decodable segments.

ffmpeg's segment muxer does the work; every segment is re-encoded to mono
Opus/Ogg so all ASR backends see the same format. The caller owns the
returned temp directory and must call Segmenter.cleanup() when done.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass

from liveblog.audio.pcm import WAV_HEADER_BYTES, PcmFormat, wrap_pcm_as_wav
from liveblog.config import Settings, get_settings
from liveblog.errors import SegmentationError, with_deadline

logger = logging.getLogger(__name__)

SEGMENT_PATTERN = "chunk_%05d.ogg"

# Container hints for temp files holding already-encoded live audio
_CONTAINER_EXTENSIONS = {"webm": ".webm", "ogg": ".ogg", "opus": ".ogg", "wav": ".wav", "mp3": ".mp3", "m4a": ".m4a"}


@dataclass
class Segments:
    """Result of one segmentation call."""

    directory: str
    files: list[str]
    duration_map: list[float]
    temp_input: str | None = None  # live buffer written to disk; removed by cleanup()

    def __len__(self) -> int:
        return len(self.files)


class Segmenter:
    """Runs ffmpeg as a subprocess; never blocks the event loop."""

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self._ffmpeg = settings.FFMPEG_BIN
        self._sample_rate = settings.SEGMENT_SAMPLE_RATE
        self._codec = settings.SEGMENT_CODEC
        self._timeout = settings.SEGMENT_TIMEOUT_S

    def _command(self, input_path: str, seconds: int | float, out_dir: str) -> list[str]:
        return [
            self._ffmpeg,
            "-hide_banner",
            "-loglevel", "error",
            "-nostdin",
            "-y",
            "-i", input_path,
            "-ac", "1",
            "-ar", str(self._sample_rate),
            "-c:a", self._codec,
            "-f", "segment",
            "-segment_time", str(seconds),
            "-reset_timestamps", "1",
            os.path.join(out_dir, SEGMENT_PATTERN),
        ]

    async def _run_ffmpeg(self, args: list[str]) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise SegmentationError(f"cannot run {args[0]!r}: {e}") from e
        try:
            _, stderr = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise
        if proc.returncode != 0:
            tail = (stderr or b"").decode(errors="ignore").strip()[-800:]
            raise SegmentationError(f"ffmpeg exited with {proc.returncode}: {tail or '(no stderr)'}")

    async def segment_file(self, input_path: str, seconds: int | float = 15) -> Segments:
        """Split an existing audio file into `seconds`-long segments."""
        if seconds <= 0:
            raise SegmentationError(f"segment length must be positive, got {seconds}")
        if not os.path.isfile(input_path):
            raise SegmentationError(f"input not found: {input_path}")
        if os.path.getsize(input_path) == 0:
            raise SegmentationError(f"input is empty: {input_path}")

        out_dir = tempfile.mkdtemp(prefix="simsegs-")
        try:
            await with_deadline(
                self._run_ffmpeg(self._command(input_path, seconds, out_dir)),
                self._timeout,
                SegmentationError,
                "ffmpeg segmentation",
            )
            files = sorted(
                f for f in os.listdir(out_dir) if f.startswith("chunk_") and f.endswith(".ogg")
            )
            if not files:
                raise SegmentationError(f"ffmpeg produced no segments for {input_path}")
        except BaseException:
            shutil.rmtree(out_dir, ignore_errors=True)
            raise

        logger.debug("Segmented %s into %d x %ss in %s", input_path, len(files), seconds, out_dir)
        return Segments(
            directory=out_dir,
            files=[os.path.join(out_dir, f) for f in files],
            duration_map=[float(seconds)] * len(files),
        )

    async def segment_bytes(
        self,
        data: bytes,
        seconds: int | float = 15,
        pcm: PcmFormat | None = None,
        container: str | None = None,
    ) -> Segments:
        """
        Segment a live buffer. Raw PCM gets a WAV header first; anything else is
        written as-is and left for ffmpeg to probe.
        """
        if not data:
            raise SegmentationError("empty audio buffer")
        if pcm is not None:
            payload = wrap_pcm_as_wav(data, pcm)
            if len(payload) <= WAV_HEADER_BYTES:
                raise SegmentationError("PCM buffer shorter than one sample frame")
            ext = ".wav"
        else:
            payload = data
            ext = _CONTAINER_EXTENSIONS.get((container or "").strip().lower(), ".bin")

        fd, tmp_path = tempfile.mkstemp(prefix="liveaudio-", suffix=ext)
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
        try:
            segments = await self.segment_file(tmp_path, seconds)
        except BaseException:
            _remove_quietly(tmp_path)
            raise
        segments.temp_input = tmp_path
        return segments

    @staticmethod
    def cleanup(segments: Segments | None) -> None:
        """Remove segment directory and temp input. Never raises."""
        if segments is None:
            return
        shutil.rmtree(segments.directory, ignore_errors=True)
        if segments.temp_input:
            _remove_quietly(segments.temp_input)


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except OSError:
        pass
