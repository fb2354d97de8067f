import asyncio
import json
import os
import struct

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from liveblog.audio.pcm import PcmFormat
from liveblog.broadcast import BroadcastHub
from liveblog.errors import SessionConfigError
from liveblog.main import create_app
from liveblog.services.summarizer import Summarizer
from liveblog.session_manager import POLICY_VIOLATION, LiveSession, SessionPhase
from liveblog.session_store import list_sessions

from conftest import FakeBackend, FakeEngine, FakeSegmenter, card_json, drain

MISSING_ENTITIES = json.dumps({"headline": "Broken", "bullets": ["x"], "quotes": []})


class FakeWebSocket:
    """Replays scripted ASGI receive messages, then disconnects."""

    def __init__(self, messages=()):
        self.incoming = list(messages)
        self.sent = []
        self.close_code = None

    async def receive(self):
        if self.incoming:
            return self.incoming.pop(0)
        return {"type": "websocket.disconnect", "code": 1000}

    async def send_json(self, data):
        self.sent.append(data)

    async def close(self, code=1000):
        self.close_code = code


def text_msg(payload):
    return {"type": "websocket.receive", "text": json.dumps(payload)}


def bytes_msg(data):
    return {"type": "websocket.receive", "bytes": data}


def handshake(**fields):
    return json.dumps({"kind": "handshake", "format": "s16le", "sampleRate": 16000, **fields})


class Harness:
    def __init__(self, settings, tmp_path, texts=(), responses=None, fail_on=(), segments=1, ws=None):
        self.ws = ws or FakeWebSocket()
        self.engine = FakeEngine(texts, fail_on=fail_on)
        self.backend = FakeBackend(responses)
        self.segmenter = FakeSegmenter(tmp_path, count=segments)
        self.hub = BroadcastHub()
        self.sub = self.hub.subscribe()
        self.session = LiveSession(
            self.ws,
            engine=self.engine,
            summarizer=Summarizer(self.backend, settings),
            segmenter=self.segmenter,
            hub=self.hub,
            settings=settings,
        )

    def events(self):
        return drain(self.sub)


def test_silence_emits_no_cards(settings, tmp_path):
    h = Harness(settings, tmp_path, texts=[""])

    async def scenario():
        await h.session.handle_control(handshake(segmentSeconds=15, summaryIntervalMs=10000))
        await h.session.handle_audio(bytes(16000 * 2 * 12))
        await h.session.process_buffer()
        card = await h.session.summary_cycle()
        await h.session.close()
        return card

    assert asyncio.run(scenario()) is None
    assert h.backend.calls == []
    assert h.segmenter.calls[0]["seconds"] == 15
    assert h.segmenter.calls[0]["pcm"] == PcmFormat(16000, 1)
    assert [e for e, _ in h.events() if e == "chunk"] == []


def test_schema_violation_drops_cycle_then_recovers(settings, tmp_path):
    h = Harness(
        settings, tmp_path,
        texts=["We are launching the new scheduler today"],
        responses=[MISSING_ENTITIES, card_json(headline="Scheduler launch", bullets=["Ships today"])],
    )

    async def scenario():
        await h.session.handle_control(handshake())
        await h.session.handle_audio(bytes(3200))
        await h.session.process_buffer()
        first = await h.session.summary_cycle()
        upto_after_failure = h.session.state.summarised_upto
        second = await h.session.summary_cycle()
        third = await h.session.summary_cycle()
        await h.session.close()
        return first, upto_after_failure, second, third

    first, upto_after_failure, second, third = asyncio.run(scenario())

    assert first is None
    assert upto_after_failure == 0
    assert second.headline == "Scheduler launch"
    assert third is None
    assert len(h.backend.calls) == 2
    assert h.session.state.previous_summary_context == "Scheduler launch: Ships today"

    events = h.events()
    names = [e for e, _ in events]
    assert names == ["transcript_piece", "degraded", "chunk"]
    assert events[1][1]["stage"] == "summary"
    assert events[2][1]["id"] == second.id


def test_previous_card_feeds_next_cycle(settings, tmp_path):
    h = Harness(
        settings, tmp_path,
        texts=["first part of the talk", "second part adds benchmarks"],
        responses=[card_json(headline="Opening", bullets=["Sets scope"]), card_json(headline="Benchmarks")],
    )

    async def scenario():
        await h.session.handle_control(handshake(summaryWords=3))
        await h.session.handle_audio(bytes(3200))
        await h.session.process_buffer()
        await h.session.summary_cycle()
        await h.session.handle_audio(bytes(3200))
        await h.session.process_buffer()
        await h.session.summary_cycle()
        await h.session.close()

    asyncio.run(scenario())

    first, second = h.backend.calls
    assert "Previous summary:\n(none yet)" in first["user_parts"]
    assert "Previous summary:\nOpening: Sets scope" in second["user_parts"]
    assert second["user_parts"][-1].endswith("adds benchmarks")
    assert "last 3 words" in second["user_parts"][-1]


def test_empty_headline_advances_watermark_without_broadcast(settings, tmp_path):
    h = Harness(settings, tmp_path, texts=["nothing new"], responses=[card_json(headline="", bullets=[], entities=[])])

    async def scenario():
        await h.session.handle_control(handshake())
        await h.session.handle_audio(bytes(3200))
        await h.session.process_buffer()
        await h.session.summary_cycle()
        await h.session.summary_cycle()
        await h.session.close()

    asyncio.run(scenario())

    assert len(h.backend.calls) == 1
    assert h.session.state.summarised_upto == len(h.session.state.running_transcript)
    assert h.session.state.previous_summary_context == ""
    assert [e for e, _ in h.events()] == ["transcript_piece"]


def test_fragments_append_in_segment_order(settings, tmp_path):
    h = Harness(settings, tmp_path, texts=["alpha", "beta", "gamma"], fail_on={1}, segments=3)

    async def scenario():
        await h.session.handle_control(handshake())
        await h.session.handle_audio(bytes(6400))
        appended = await h.session.process_buffer()
        await h.session.close()
        return appended

    assert asyncio.run(scenario()) == 2
    assert h.session.state.running_transcript.text == "alpha gamma"

    events = h.events()
    pieces = [data for e, data in events if e == "transcript_piece"]
    assert [(p["index"], p["text"]) for p in pieces] == [(0, "alpha"), (1, "gamma")]
    assert all(p["session_id"] == h.session.session_id for p in pieces)
    assert events[1][0] == "degraded"
    assert events[1][1]["stage"] == "transcription"
    assert events[1][1]["session_id"] == h.session.session_id
    assert not os.path.exists(h.segmenter.directories[0])


def test_segmentation_failure_drops_buffer(settings, tmp_path):
    h = Harness(settings, tmp_path)
    h.segmenter.fail = True

    async def scenario():
        await h.session.handle_control(handshake())
        await h.session.handle_audio(bytes(3200))
        appended = await h.session.process_buffer()
        await h.session.close()
        return appended

    assert asyncio.run(scenario()) == 0
    assert len(h.session.state.pending_audio) == 0
    assert [e for e, _ in h.events()] == ["degraded"]
    assert len(h.segmenter.calls) == 1


def test_container_format_is_passed_through(settings, tmp_path):
    h = Harness(settings, tmp_path, texts=["hi"])

    async def scenario():
        await h.session.handle_control(json.dumps({"kind": "handshake", "format": "webm"}))
        await h.session.handle_audio(b"\x1a\x45\xdf\xa3")
        await h.session.close()

    asyncio.run(scenario())
    assert h.segmenter.calls[0]["pcm"] is None
    assert h.segmenter.calls[0]["container"] == "webm"


def test_close_flushes_pending_audio(settings, tmp_path):
    ws = FakeWebSocket([text_msg({"kind": "handshake", "format": "s16le"}), bytes_msg(bytes(3200))])
    h = Harness(settings, tmp_path, texts=["last words"], ws=ws)

    asyncio.run(h.session.run())

    assert ws.sent[0]["kind"] == "ready"
    assert ws.sent[0]["session_id"] == h.session.session_id
    assert h.session.state.phase is SessionPhase.CLOSED
    assert h.session.state.running_transcript.text == "last words"
    assert len(h.segmenter.calls) == 1
    assert all(s["session_id"] != h.session.session_id for s in list_sessions())
    assert h.backend.calls == []


def test_timers_drive_flush_and_summary(settings, tmp_path):
    h = Harness(settings, tmp_path, texts=["timer driven text"])

    async def scenario():
        await h.session.handle_control(handshake(processIntervalMs=100, summaryIntervalMs=150))
        await h.session.handle_audio(bytes(3200))
        await h.session.handle_audio(bytes(3200))
        await asyncio.sleep(0.4)
        await h.session.close()
        calls_at_close = len(h.backend.calls)
        await asyncio.sleep(0.3)
        return calls_at_close

    calls_at_close = asyncio.run(scenario())

    assert len(h.segmenter.calls) == 1
    assert h.segmenter.calls[0]["bytes"] == 6400
    assert calls_at_close == 1
    assert len(h.backend.calls) == 1
    assert [e for e, _ in h.events()] == ["transcript_piece", "chunk"]


def test_sample_split_across_flushes_stays_aligned(settings, tmp_path):
    h = Harness(settings, tmp_path, texts=["a", "b"])
    samples = struct.pack("<4h", 1000, 2000, 3000, 4000)

    async def scenario():
        await h.session.handle_control(handshake(processIntervalMs=10000, summaryIntervalMs=10000))
        await h.session.handle_audio(samples[:3])
        await h.session.process_buffer()
        await h.session.handle_audio(samples[3:])
        await h.session.process_buffer()
        await h.session.close()

    asyncio.run(scenario())

    assert [c["bytes"] for c in h.segmenter.calls] == [2, 6]
    assert b"".join(c["data"] for c in h.segmenter.calls) == samples
    assert struct.unpack("<3h", h.segmenter.calls[1]["data"]) == (2000, 3000, 4000)


def test_final_flush_drains_partial_frame(settings, tmp_path):
    h = Harness(settings, tmp_path, texts=["tail"])

    async def scenario():
        await h.session.handle_control(handshake(processIntervalMs=10000, summaryIntervalMs=10000))
        await h.session.handle_audio(bytes(3))
        await h.session.process_buffer()
        leftover = len(h.session.state.pending_audio)
        await h.session.close()
        return leftover

    assert asyncio.run(scenario()) == 1
    assert [c["bytes"] for c in h.segmenter.calls] == [2, 1]
    assert len(h.session.state.pending_audio) == 0


def test_text_frames_while_streaming_are_ignored(settings, tmp_path):
    ws = FakeWebSocket(
        [
            {"type": "websocket.receive", "text": handshake()},
            bytes_msg(bytes(3200)),
            text_msg({"kind": "ping"}),
            {"type": "websocket.receive", "text": "not json"},
            bytes_msg(bytes(3200)),
        ]
    )
    h = Harness(settings, tmp_path, texts=["still streaming"], ws=ws)

    asyncio.run(h.session.run())

    assert [m["kind"] for m in ws.sent] == ["ready"]
    assert ws.close_code is None
    assert h.session.state.bytes_received == 6400
    assert sum(c["bytes"] for c in h.segmenter.calls) == 6400
    assert h.session.state.running_transcript.text == "still streaming"


def test_summary_timer_survives_unexpected_error(settings, tmp_path):
    h = Harness(settings, tmp_path, texts=["words to summarise"], responses=[RuntimeError("backend bug"), card_json()])

    async def scenario():
        await h.session.handle_control(handshake(processIntervalMs=100, summaryIntervalMs=150))
        await h.session.handle_audio(bytes(3200))
        await asyncio.sleep(0.4)
        alive = not h.session.state.summary_timer.done()
        await h.session.close()
        return alive

    assert asyncio.run(scenario())
    assert len(h.backend.calls) == 2
    assert [e for e, _ in h.events()] == ["transcript_piece", "chunk"]


def test_audio_before_handshake_is_rejected(settings, tmp_path):
    ws = FakeWebSocket([bytes_msg(bytes(3200))])
    h = Harness(settings, tmp_path, ws=ws)

    asyncio.run(h.session.run())

    assert ws.sent == [{"kind": "error", "error": "audio received before handshake"}]
    assert ws.close_code == POLICY_VIOLATION
    assert h.segmenter.calls == []
    assert h.session.state.phase is SessionPhase.CLOSED


def test_audio_before_handshake_tolerated_when_configured(settings, tmp_path):
    settings.INGEST_REQUIRE_HANDSHAKE = False
    h = Harness(settings, tmp_path, texts=["hello"])

    async def scenario():
        await h.session.handle_audio(bytes(3200))
        phase = h.session.state.phase
        await h.session.close()
        return phase

    assert asyncio.run(scenario()) is SessionPhase.STREAMING
    assert h.segmenter.calls[0]["pcm"] is None
    assert h.session.state.config.sample_rate == settings.SAMPLE_RATE


@pytest.mark.parametrize(
    "text",
    ["not json", "[1, 2]", json.dumps({"kind": "stop"}), json.dumps({"kind": "handshake", "sampleRate": -1})],
)
def test_malformed_handshake_closes_with_policy_violation(settings, tmp_path, text):
    ws = FakeWebSocket([{"type": "websocket.receive", "text": text}])
    h = Harness(settings, tmp_path, ws=ws)

    asyncio.run(h.session.run())

    assert ws.sent[0]["kind"] == "error"
    assert ws.close_code == POLICY_VIOLATION


def test_repeated_handshake_is_ignored(settings, tmp_path):
    h = Harness(settings, tmp_path)

    async def scenario():
        await h.session.handle_control(handshake(summaryWords=10))
        await h.session.handle_control(handshake(summaryWords=99))
        await h.session.close()

    asyncio.run(scenario())
    assert h.session.state.config.summary_words == 10
    assert len(h.ws.sent) == 1


def test_handshake_rejects_unknown_kind_directly(settings, tmp_path):
    h = Harness(settings, tmp_path)
    with pytest.raises(SessionConfigError):
        asyncio.run(h.session.handle_control(json.dumps({"kind": "pause"})))


def _app(settings, tmp_path, texts=("hello",)):
    return create_app(
        settings=settings,
        asr_engine=FakeEngine(texts),
        summarizer=Summarizer(FakeBackend(), settings),
        segmenter=FakeSegmenter(tmp_path),
        hub=BroadcastHub(),
    )


def test_websocket_handshake_gets_ready(settings, tmp_path):
    app = _app(settings, tmp_path)
    with TestClient(app) as client:
        with client.websocket_connect("/audio-stream") as ws:
            ws.send_text(handshake(name="keynote", summaryWords=25))
            ready = ws.receive_json()
            assert ready["kind"] == "ready"
            assert ready["config"]["name"] == "keynote"
            assert ready["config"]["summary_words"] == 25

            listed = client.get("/api/sessions").json()["sessions"]
            assert [s["session_id"] for s in listed] == [ready["session_id"]]
            assert listed[0]["phase"] == "streaming"


def test_websocket_bad_handshake_is_closed(settings, tmp_path):
    app = _app(settings, tmp_path)
    with TestClient(app) as client:
        with client.websocket_connect("/audio-stream") as ws:
            ws.send_text("{not json")
            error = ws.receive_json()
            assert error["kind"] == "error"
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_text()
            assert exc.value.code == POLICY_VIOLATION
    assert list_sessions() == []


def test_http_routes(settings, tmp_path):
    app = _app(settings, tmp_path)
    with TestClient(app) as client:
        assert client.get("/health").json() == {"status": "ok"}
        page = client.get("/")
        assert page.status_code == 200
        assert "EventSource" in page.text
        assert client.get("/api/sessions").json() == {"sessions": [], "viewers": 0}
