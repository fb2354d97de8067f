import asyncio
import json
import os

import pytest

from liveblog.asr.base import ASREngine, TranscriptFragment
from liveblog.audio.segmenter import Segments
from liveblog.config import Settings
from liveblog.errors import SegmentationError, TranscriptionError
from liveblog.services.summarizer import SummaryBackend


def card_json(headline="Speaker opens the talk", bullets=None, quotes=None, entities=None, **extra):
    payload = {
        "headline": headline,
        "bullets": ["Introduces the agenda"] if bullets is None else bullets,
        "quotes": [] if quotes is None else quotes,
        "entities": ["PyCon"] if entities is None else entities,
    }
    payload.update(extra)
    return json.dumps(payload)


class FakeEngine(ASREngine):
    """Returns scripted texts in call order; indexes in `fail_on` raise."""

    name = "fake"

    def __init__(self, texts=(), fail_on=(), confidence=0.8):
        self.texts = list(texts)
        self.fail_on = set(fail_on)
        self.confidence = confidence
        self.calls = []

    async def transcribe(self, segment_path):
        index = len(self.calls)
        self.calls.append(segment_path)
        if index in self.fail_on:
            raise TranscriptionError(f"engine failed on {segment_path}")
        text = self.texts[index] if index < len(self.texts) else ""
        return TranscriptFragment(text=text, confidence=self.confidence)


class FakeBackend(SummaryBackend):
    """Replays scripted raw outputs; Exception instances are raised. Repeats the last one."""

    name = "fake"

    def __init__(self, responses=None, delay=0.0):
        self.responses = list(responses) if responses is not None else [card_json()]
        self.delay = delay
        self.calls = []

    async def complete(self, system_prompt, user_parts, schema, schema_name):
        self.calls.append(
            {"system": system_prompt, "user_parts": list(user_parts), "schema": schema, "schema_name": schema_name}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class FakeSegmenter:
    """Writes `count` empty .ogg files per call into a fresh directory under `root`."""

    def __init__(self, root, count=1, fail=False):
        self.root = root
        self.count = count
        self.fail = fail
        self.calls = []
        self.directories = []

    def _make(self, count):
        directory = os.path.join(str(self.root), f"segs-{len(self.directories)}")
        os.makedirs(directory)
        files = []
        for i in range(count):
            path = os.path.join(directory, f"chunk_{i:05d}.ogg")
            with open(path, "wb") as f:
                f.write(b"OggS")
            files.append(path)
        self.directories.append(directory)
        return Segments(directory=directory, files=files, duration_map=[15.0] * count)

    async def segment_file(self, input_path, seconds=15):
        self.calls.append({"file": input_path, "seconds": seconds})
        if self.fail:
            raise SegmentationError("ffmpeg exited with 1: boom")
        return self._make(self.count)

    async def segment_bytes(self, data, seconds=15, pcm=None, container=None):
        self.calls.append(
            {"bytes": len(data), "data": bytes(data), "seconds": seconds, "pcm": pcm, "container": container}
        )
        if self.fail:
            raise SegmentationError("ffmpeg exited with 1: boom")
        return self._make(self.count)


def drain(sub):
    """Pending SSE frames of a subscription as (event, data) pairs."""
    events = []
    while not sub.queue.empty():
        frame = sub.queue.get_nowait()
        if frame is None:
            break
        lines = frame.strip().split("\n")
        event = lines[0][len("event: "):]
        data = json.loads(lines[1][len("data: "):])
        events.append((event, data))
    return events


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        OPENAI_API_KEY="sk-test",
        CLOUDFLARE_ACCOUNT_ID="acct",
        CLOUDFLARE_API_TOKEN="token",
        CONTEXT_TITLE="",
        CONTEXT_SPEAKER="",
        CONTEXT_ABSTRACT="",
        INGEST_REQUIRE_HANDSHAKE=True,
        EMIT_DEGRADED_EVENTS=True,
        SUMMARY_TIMEOUT_S=5.0,
        TRANSCRIBE_TIMEOUT_S=5.0,
        LOG_FILE="",
    )
