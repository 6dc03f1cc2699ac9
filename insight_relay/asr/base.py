"""
TranscriptionSession: abstract interface for one streaming STT connection per meeting.

Implementations: AssemblyAIStreamingSession (v3 realtime websocket).
Remote messages are mapped to neutral TranscriptEvent objects and put on the
session's events queue; the meeting pipeline consumes that queue in order.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Union


class SessionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    STREAMING = "streaming"
    TERMINATING = "terminating"
    CLOSED = "closed"
    ERROR = "error"


# send_frame() is accepted only in these states
SENDABLE_STATES = (SessionState.OPEN, SessionState.STREAMING)
TERMINAL_STATES = (SessionState.CLOSED, SessionState.ERROR)


@dataclass(frozen=True)
class SessionBegan:
    id: str
    expires_at: int | None = None


@dataclass(frozen=True)
class PartialTurn:
    """Interim text for the current turn; superseded by the next partial or final. UI only."""

    text: str


@dataclass(frozen=True)
class FinalTurn:
    """
    Turn closed by the remote turn detection. Exactly one per spoken turn.
    speaker_id is the active speaker at the moment the turn was finalized.
    """

    text: str
    speaker_id: int | None = None


@dataclass(frozen=True)
class SessionTerminated:
    audio_duration_sec: float | None = None
    session_duration_sec: float | None = None


@dataclass(frozen=True)
class TranscriptionFailed:
    """Transport error; the meeting pipeline tears itself down on this."""

    reason: str


TranscriptEvent = Union[SessionBegan, PartialTurn, FinalTurn, SessionTerminated, TranscriptionFailed]


class TranscriptionSession(ABC):
    """
    One connection per meeting. open() → send_frame()* → close().
    close() must be idempotent and bounded.
    """

    def __init__(
        self,
        events: "asyncio.Queue[TranscriptEvent]",
        on_stop_requested: Callable[[], None] | None = None,
        speaker_provider: Callable[[], int | None] | None = None,
    ) -> None:
        self.events = events
        self._on_stop_requested = on_stop_requested
        self._speaker_provider = speaker_provider
        self._state = SessionState.CONNECTING

    @property
    def state(self) -> SessionState:
        return self._state

    def _emit(self, event: TranscriptEvent) -> None:
        """Put one event on the queue; a FinalTurn is stamped with the current speaker first."""
        if isinstance(event, FinalTurn) and event.speaker_id is None and self._speaker_provider is not None:
            event = replace(event, speaker_id=self._speaker_provider())
        self.events.put_nowait(event)

    @abstractmethod
    async def open(self) -> None:
        """Connect and move to OPEN. Raises TranscriptionError on failure (state ERROR)."""
        ...

    @abstractmethod
    def send_frame(self, frame: bytes) -> None:
        """Queue one audio frame. No-op (logged) outside OPEN/STREAMING. Never blocks."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Terminate gracefully if possible, then force-close. Idempotent, bounded."""
        ...
