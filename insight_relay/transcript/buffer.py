"""
TranscriptBuffer: finalized turns for one meeting, in arrival order.

Only FinalTurn events become TranscriptTurns; partial text is kept separately
(latest only) for the dashboard and never enters the buffer.
"""
from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class TranscriptTurn:
    text: str
    role: str
    speaker_id: Optional[int] = None
    timestamp: float = field(default_factory=time.time)

    def labeled(self) -> str:
        """'Role: text' as sent to the extraction model."""
        return f"{self.role}: {self.text}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class TranscriptBuffer:
    """Append-only list of turns plus the latest partial text."""

    def __init__(self) -> None:
        self._turns: list[TranscriptTurn] = []
        self._partial = ""
        self._lock = threading.Lock()

    def append(self, turn: TranscriptTurn) -> None:
        with self._lock:
            self._turns.append(turn)
            self._partial = ""

    def set_partial(self, text: str) -> None:
        with self._lock:
            self._partial = text

    @property
    def partial(self) -> str:
        with self._lock:
            return self._partial

    def __len__(self) -> int:
        with self._lock:
            return len(self._turns)

    def all(self) -> list[TranscriptTurn]:
        with self._lock:
            return list(self._turns)

    def recent(self, limit: int) -> list[TranscriptTurn]:
        """Last `limit` turns, oldest first. limit <= 0 → empty."""
        if limit <= 0:
            return []
        with self._lock:
            return list(self._turns[-limit:])
