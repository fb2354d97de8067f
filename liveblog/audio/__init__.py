"""Audio pipeline: raw PCM framing and ffmpeg segmentation."""
from .pcm import PcmFormat, build_wav_header, rms_int16, trim_to_frames, wrap_pcm_as_wav
from .segmenter import Segmenter, Segments

__all__ = [
    "PcmFormat",
    "build_wav_header",
    "rms_int16",
    "trim_to_frames",
    "wrap_pcm_as_wav",
    "Segmenter",
    "Segments",
]
