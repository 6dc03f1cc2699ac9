"""
TranscriptWriter: per-meeting, append-only persistence of FINAL transcript turns.

- One line per final turn, in arrival order; the file is never truncated.
- Partial text is never written: it is revised by the next STT message.
- Line format: "[Consultant] text", optionally prefixed by [MM:SS.ss] (elapsed since meeting start).
"""
from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Optional

from insight_relay.config import get_settings

logger = logging.getLogger(__name__)


def format_transcript_line(
    text: str,
    role: Optional[str],
    timestamp: Optional[float],
    started_at: float,
    add_timestamps: bool,
) -> str:
    """Format one line with optional [MM:SS.ss] and [Role] prefix."""
    parts: list[str] = []
    if add_timestamps and timestamp is not None:
        elapsed_sec = max(0.0, timestamp - started_at)
        mm = int(elapsed_sec // 60)
        ss = elapsed_sec % 60
        parts.append(f"[{mm:02d}:{ss:05.2f}]")
    if role:
        parts.append(f"[{role}]")
    parts.append(text.strip())
    return " ".join(parts)


class TranscriptWriterBase(ABC):
    """Base for meeting transcript writer. Only final turns are appended."""

    @abstractmethod
    async def start(self) -> None:
        """Open file when the meeting starts. Call once."""
        ...

    @abstractmethod
    def append_final(self, text: str, role: Optional[str] = None, timestamp: Optional[float] = None) -> None:
        """Append one final turn (one line). Non-blocking; queues write."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Flush and close file. Safe to call from finally."""
        ...


class NoOpTranscriptWriter(TranscriptWriterBase):
    """When transcript saving is disabled. No file I/O."""

    async def start(self) -> None:
        pass

    def append_final(self, text: str, role: Optional[str] = None, timestamp: Optional[float] = None) -> None:
        pass

    async def close(self) -> None:
        pass


class TranscriptWriter(TranscriptWriterBase):
    """
    One file per meeting: transcripts/{session_id}.txt.
    Worker task drains the queue so the event consumer never blocks on disk.
    """

    def __init__(
        self,
        session_id: str,
        started_at: float,
        transcript_dir: Optional[str] = None,
        add_timestamps: Optional[bool] = None,
    ) -> None:
        settings = get_settings()
        self._session_id = session_id
        self._started_at = started_at
        self._transcript_dir = transcript_dir or settings.TRANSCRIPT_DIR
        self._add_timestamps = add_timestamps if add_timestamps is not None else settings.TRANSCRIPT_ADD_TIMESTAMPS
        self.path = os.path.join(self._transcript_dir, f"{session_id}.txt")
        self._file = None
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None
        self._started = False

    async def _worker(self) -> None:
        """Drain queue: append line + newline + flush. None = close. Log errors, never crash."""
        while True:
            line = await self._queue.get()
            if line is None:
                break
            if self._file is None:
                continue
            try:
                self._file.write(line + "\n")
                self._file.flush()
            except OSError as e:
                logger.warning("Transcript write failed for %s: %s", self.path, e)
        try:
            if self._file is not None:
                self._file.close()
        except OSError as e:
            logger.warning("Transcript close failed for %s: %s", self.path, e)
        finally:
            self._file = None

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        try:
            os.makedirs(self._transcript_dir, exist_ok=True)
            self._file = open(self.path, "a", encoding="utf-8")
        except OSError as e:
            logger.warning("Transcript file open failed for %s: %s", self.path, e)
        self._worker_task = asyncio.create_task(self._worker())

    def append_final(self, text: str, role: Optional[str] = None, timestamp: Optional[float] = None) -> None:
        text = (text or "").strip()
        if not text:
            return
        line = format_transcript_line(text, role, timestamp, self._started_at, self._add_timestamps)
        self._queue.put_nowait(line)

    async def close(self) -> None:
        """Signal worker to stop and close file."""
        if not self._started or self._worker_task is None:
            return
        try:
            self._queue.put_nowait(None)
            await asyncio.wait_for(self._worker_task, timeout=5.0)
        except asyncio.TimeoutError:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
        self._worker_task = None


def create_transcript_writer(session_id: str, started_at: float) -> TranscriptWriterBase:
    """Create writer when TRANSCRIPT_SAVE_ENABLED is true; else no-op."""
    settings = get_settings()
    if not settings.TRANSCRIPT_SAVE_ENABLED:
        return NoOpTranscriptWriter()
    return TranscriptWriter(session_id=session_id, started_at=started_at)
