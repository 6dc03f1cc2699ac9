"""Zoom RTMS media source: signaling + media websockets delivering per-speaker PCM."""
from insight_relay.rtms.transport import (
    AudioTransport,
    NoOpAudioTransport,
    RTMSAudioTransport,
    create_audio_transport,
    generate_signature,
)

__all__ = [
    "AudioTransport",
    "NoOpAudioTransport",
    "RTMSAudioTransport",
    "create_audio_transport",
    "generate_signature",
]
