"""
AudioRebuffer: turns variable-size media packets into fixed-size frames for streaming STT.

- Input: raw PCM 16-bit mono packets of any size (RTMS sends ~20ms, sometimes more).
- Output: frames of exactly TARGET_FRAME_MS (default 100ms = 3200 bytes), one per push
  that crosses the threshold; the remainder stays for the next push.
- flush() on session end sends the remainder only if it is >= MIN_FLUSH_MS (default 50ms);
  shorter tails are discarded.
- Forwarding errors are logged and the frame dropped: audio ingestion never raises
  because the transcription side is down.
"""
from __future__ import annotations

import logging
from typing import Callable

from insight_relay.config import get_settings

logger = logging.getLogger(__name__)

# Log packet stats every N packets (debug)
STATS_LOG_EVERY = 100


def frame_bytes_for(duration_ms: int, sample_rate: int, channels: int, sample_width: int) -> int:
    """Bytes in duration_ms of PCM audio (e.g. 100ms @ 16kHz mono 16-bit = 3200)."""
    return (sample_rate * channels * sample_width * duration_ms) // 1000


class AudioRebuffer:
    """
    Accumulates packets into a bytearray and emits fixed frames in push order.
    One instance per meeting; not shared.
    """

    def __init__(
        self,
        on_frame: Callable[[bytes], None],
        frame_bytes: int | None = None,
        min_flush_bytes: int | None = None,
    ) -> None:
        settings = get_settings()
        self._frame_bytes = frame_bytes or frame_bytes_for(
            settings.TARGET_FRAME_MS, settings.SAMPLE_RATE, settings.CHANNELS, settings.SAMPLE_WIDTH
        )
        self._min_flush_bytes = (
            min_flush_bytes
            if min_flush_bytes is not None
            else frame_bytes_for(settings.MIN_FLUSH_MS, settings.SAMPLE_RATE, settings.CHANNELS, settings.SAMPLE_WIDTH)
        )
        self._on_frame = on_frame
        self._buffer = bytearray()
        self._stop_requested = False

        self._packets = 0
        self._bytes_in = 0
        self._frames_out = 0
        self._dropped_frames = 0

    def push(self, data: bytes, speaker_id: int) -> bytes | None:
        """
        Append one packet. Returns the emitted frame when this push crossed the
        threshold (exactly frame_bytes long), else None. Dropped silently after request_stop().
        """
        if self._stop_requested:
            return None
        self._packets += 1
        self._bytes_in += len(data)
        self._buffer.extend(data)
        if self._packets % STATS_LOG_EVERY == 0:
            logger.debug(
                "Rebuffer: %d packets, %d bytes in, %d frames out (last speaker %s)",
                self._packets,
                self._bytes_in,
                self._frames_out,
                speaker_id,
            )

        if len(self._buffer) < self._frame_bytes:
            return None
        frame = bytes(self._buffer[: self._frame_bytes])
        del self._buffer[: self._frame_bytes]
        self._forward(frame)
        return frame

    def flush(self) -> bytes | None:
        """
        On session end: forward the remainder if >= min_flush_bytes.
        Returns the flushed bytes or None (nothing buffered, or too short → discarded).
        """
        if not self._buffer:
            return None
        remainder = bytes(self._buffer)
        self._buffer.clear()
        if len(remainder) < self._min_flush_bytes:
            logger.debug("Rebuffer: discarded %d-byte tail (< %d)", len(remainder), self._min_flush_bytes)
            return None
        self._forward(remainder)
        return remainder

    def request_stop(self) -> None:
        """Stop accepting packets (session ending or STT failed). flush() still works."""
        self._stop_requested = True

    def _forward(self, frame: bytes) -> None:
        try:
            self._on_frame(frame)
            self._frames_out += 1
        except Exception as e:
            self._dropped_frames += 1
            logger.warning("Rebuffer: dropped %d-byte frame, forward failed: %s", len(frame), e)

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    @property
    def frame_bytes(self) -> int:
        return self._frame_bytes

    def remaining_bytes(self) -> int:
        """Bytes left in buffer (incomplete frame)."""
        return len(self._buffer)

    def stats(self) -> dict[str, int]:
        return {
            "packets": self._packets,
            "bytes_in": self._bytes_in,
            "frames_out": self._frames_out,
            "dropped_frames": self._dropped_frames,
            "buffered_bytes": len(self._buffer),
        }
