"""Audio pipeline: rebuffer media packets into STT frames; optional raw backup recording."""
from .rebuffer import AudioRebuffer, frame_bytes_for
from .recorder import AudioRecorderBase, create_audio_recorder

__all__ = [
    "AudioRebuffer",
    "frame_bytes_for",
    "AudioRecorderBase",
    "create_audio_recorder",
]
