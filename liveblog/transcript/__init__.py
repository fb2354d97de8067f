"""Transcript windows: rolling window (simulation) and running transcript (live)."""
from .window import RollingWindow, RunningTranscript, TranscriptEntry, Window, window_back_seconds

__all__ = ["RollingWindow", "RunningTranscript", "TranscriptEntry", "Window", "window_back_seconds"]
