"""
AudioRecorder: optional per-meeting raw audio backup to WAV.

- When recording disabled: no-op (append/finalize do nothing).
- When enabled: in-memory buffer only; written ONCE when the meeting stops.
- The STT stream never goes through here; the recorder sees the same raw packets.
- finalize() is blocking file I/O; run it in an executor.
"""
from __future__ import annotations

import logging
import os
import wave
from abc import ABC, abstractmethod
from typing import Optional

import numpy as np

from insight_relay.config import get_settings

logger = logging.getLogger(__name__)

# RMS threshold for optional silence warning (int16 scale)
RMS_SILENCE_THRESHOLD = 100
RMS_SILENCE_CHUNKS_WARN = 50


class AudioRecorderBase(ABC):
    """Base for meeting recorder. append() accepts raw PCM; finalize() writes file once and returns path or None."""

    @abstractmethod
    def append(self, data: bytes) -> None:
        ...

    @abstractmethod
    def finalize(self) -> Optional[str]:
        """Write buffered audio to disk, once. Run in executor. Returns path or None."""
        ...


class NoOpAudioRecorder(AudioRecorderBase):
    """Recorder when recording disabled."""

    def append(self, data: bytes) -> None:
        pass

    def finalize(self) -> Optional[str]:
        return None


def _validate_pcm_chunk(data: bytes) -> bool:
    """PCM contract: length divisible by 2 (int16), non-empty."""
    if len(data) == 0:
        return False
    if len(data) % 2 != 0:
        logger.warning("Recording: dropped malformed chunk (length %d not divisible by 2)", len(data))
        return False
    return True


def _rms_int16(pcm_bytes: bytes) -> float:
    """RMS of int16 samples (for optional silence logging)."""
    if len(pcm_bytes) < 2:
        return 0.0
    samples = np.frombuffer(pcm_bytes, dtype=np.int16)
    return float(np.sqrt(np.mean(samples.astype(np.float32) ** 2)))


def _write_wav_sync(pcm_bytes: bytes, out_path: str, sample_rate: int, channels: int, sample_width: int) -> None:
    """One open, header once, all frames, one close."""
    os.makedirs(os.path.dirname(out_path) or ".", exist_ok=True)
    with wave.open(out_path, "wb") as wav:
        wav.setnchannels(channels)
        wav.setsampwidth(sample_width)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm_bytes)


class AudioRecorder(AudioRecorderBase):
    """One meeting = one in-memory buffer; flushed to recording_{session_id}.wav on finalize()."""

    def __init__(self, session_id: str, record_dir: str | None = None) -> None:
        settings = get_settings()
        self._session_id = session_id
        self._buffer = bytearray()
        self._sample_rate = settings.SAMPLE_RATE
        self._channels = settings.CHANNELS
        self._sample_width = settings.SAMPLE_WIDTH
        self._record_dir = record_dir or settings.BACKEND_RECORD_DIR
        self._finalized = False
        self._dropped_chunks = 0
        self._low_rms_count = 0

    def append(self, data: bytes) -> None:
        if self._finalized:
            return
        if not _validate_pcm_chunk(data):
            self._dropped_chunks += 1
            return
        self._buffer.extend(data)
        if _rms_int16(data) < RMS_SILENCE_THRESHOLD:
            self._low_rms_count += 1
            if self._low_rms_count == RMS_SILENCE_CHUNKS_WARN:
                logger.warning(
                    "Recording %s: %d consecutive packets with RMS < %s (muted participant?)",
                    self._session_id,
                    RMS_SILENCE_CHUNKS_WARN,
                    RMS_SILENCE_THRESHOLD,
                )
        else:
            self._low_rms_count = 0

    def finalize(self) -> Optional[str]:
        if self._finalized:
            return None
        self._finalized = True
        if len(self._buffer) == 0:
            logger.info("Recording %s: no audio data received", self._session_id)
            return None
        path = os.path.join(self._record_dir, f"recording_{self._session_id}.wav")
        _write_wav_sync(bytes(self._buffer), path, self._sample_rate, self._channels, self._sample_width)
        self._buffer = bytearray()
        logger.info("Recording saved: %s", path)
        return path


def create_audio_recorder(session_id: str) -> AudioRecorderBase:
    """Create recorder when ENABLE_BACKEND_RECORDING is true. Disabled by default."""
    if get_settings().ENABLE_BACKEND_RECORDING:
        return AudioRecorder(session_id)
    return NoOpAudioRecorder()
