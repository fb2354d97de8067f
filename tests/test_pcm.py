import io
import wave

import numpy as np

from liveblog.audio.pcm import (
    WAV_HEADER_BYTES,
    PcmFormat,
    build_wav_header,
    rms_int16,
    trim_to_frames,
    wrap_pcm_as_wav,
)


def test_header_is_readable_by_wave_module():
    pcm = bytes(3200)
    wav_bytes = wrap_pcm_as_wav(pcm, PcmFormat(16000, 1))

    with wave.open(io.BytesIO(wav_bytes)) as w:
        assert w.getnchannels() == 1
        assert w.getframerate() == 16000
        assert w.getsampwidth() == 2
        assert w.getnframes() == 1600


def test_header_fields_for_stereo():
    fmt = PcmFormat(48000, 2)
    header = build_wav_header(1000, fmt)
    assert len(header) == WAV_HEADER_BYTES
    assert header[:4] == b"RIFF" and header[8:12] == b"WAVE"
    assert int.from_bytes(header[4:8], "little") == 1036
    assert int.from_bytes(header[28:32], "little") == 48000 * 4
    assert int.from_bytes(header[40:44], "little") == 1000


def test_partial_frame_is_dropped():
    assert len(trim_to_frames(bytes(3201), PcmFormat())) == 3200
    assert len(trim_to_frames(bytes(3202), PcmFormat(16000, 2))) == 3200
    assert len(wrap_pcm_as_wav(bytes(3201), PcmFormat())) == WAV_HEADER_BYTES + 3200


def test_rms():
    assert rms_int16(bytes(320)) == 0.0
    loud = np.full(160, 1000, dtype="<i2").tobytes()
    assert rms_int16(loud) == 1000.0
    assert rms_int16(b"\x01") == 0.0


def test_duration():
    assert PcmFormat(16000, 1).duration_seconds(32000) == 1.0
