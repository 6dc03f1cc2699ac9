"""
Speaker attribution: raw RTMS speaker ids → consultation roles.

- Auto-assignment by order of first appearance: 1st id → RoleA, 2nd → RoleB,
  every later id stays Unassigned until someone assigns it from the dashboard.
  Arrival order decides, not the numeric id.
- Manual override via assign(); works for ids that were never heard (registers them).
- Single holder per role is not enforced; two ids may both be mapped to RoleA.

Two writers touch one tracker (audio path and dashboard assignment); both go through
the same lock.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any

from insight_relay.config import get_settings
from insight_relay.diarization.models import Role, SpeakerEntry
from insight_relay.errors import InvalidRole

logger = logging.getLogger(__name__)

# Auto roles by order of first appearance
_AUTO_ROLES = (Role.ROLE_A, Role.ROLE_B)

UNKNOWN_SPEAKER_LABEL = "Unknown speaker"


def fallback_label(speaker_id: int | None) -> str:
    """Label for an unmapped speaker (or no packet seen yet)."""
    if speaker_id is None:
        return UNKNOWN_SPEAKER_LABEL
    return f"Speaker {speaker_id}"


class SpeakerTracker:
    """One per meeting. No I/O."""

    def __init__(self, role_a_label: str | None = None, role_b_label: str | None = None) -> None:
        settings = get_settings()
        self._labels = {
            Role.ROLE_A: role_a_label or settings.ROLE_A_LABEL,
            Role.ROLE_B: role_b_label or settings.ROLE_B_LABEL,
            Role.UNASSIGNED: "Unassigned",
        }
        self._entries: dict[int, SpeakerEntry] = {}
        self._auto_assigned = 0
        self._current: int | None = None
        self._lock = threading.Lock()

    def parse_role(self, role: Role | str) -> Role:
        """Accept a Role, its value ("role_a"), or a display label ("Consultant"). Raises InvalidRole."""
        if isinstance(role, Role):
            return role
        value = (role or "").strip()
        for r, label in self._labels.items():
            if value.lower() == label.lower() or value.lower() == r.value:
                return r
        raise InvalidRole(
            f"Role must be one of {', '.join(self._labels.values())} (got {role!r})"
        )

    def observe(self, speaker_id: int) -> str:
        """Register a packet from speaker_id; auto-assign on first sight; return current label."""
        now = time.time()
        with self._lock:
            entry = self._entries.get(speaker_id)
            if entry is None:
                role = Role.UNASSIGNED
                if self._auto_assigned < len(_AUTO_ROLES):
                    role = _AUTO_ROLES[self._auto_assigned]
                self._auto_assigned += 1
                entry = SpeakerEntry(speaker_id=speaker_id, role=role, first_seen_at=now, last_seen_at=now)
                self._entries[speaker_id] = entry
                logger.info("New speaker detected: %s → %s", speaker_id, self._label(entry))
            entry.last_seen_at = now
            entry.packet_count += 1
            if self._current != speaker_id:
                self._current = speaker_id
                logger.debug("Speaker changed to %s (id %s)", self._label(entry), speaker_id)
            return self._label(entry)

    def assign(self, speaker_id: int, role: Role | str) -> Role:
        """Manual override. Idempotent; registers unseen ids. Raises InvalidRole."""
        parsed = self.parse_role(role)
        now = time.time()
        with self._lock:
            entry = self._entries.get(speaker_id)
            if entry is None:
                entry = SpeakerEntry(speaker_id=speaker_id, role=parsed, first_seen_at=now, last_seen_at=now)
                self._entries[speaker_id] = entry
                logger.info("Speaker %s not detected yet, registered as %s", speaker_id, self._labels[parsed])
                return parsed
            if entry.role != parsed:
                logger.info("Speaker %s assigned as %s", speaker_id, self._labels[parsed])
                entry.role = parsed
            return parsed

    def current(self) -> int | None:
        """Speaker id of the most recent packet."""
        with self._lock:
            return self._current

    def label_for(self, speaker_id: int | None) -> str:
        with self._lock:
            entry = self._entries.get(speaker_id) if speaker_id is not None else None
            if entry is None:
                return fallback_label(speaker_id)
            return self._label(entry)

    def role_of(self, speaker_id: int) -> Role | None:
        with self._lock:
            entry = self._entries.get(speaker_id)
            return entry.role if entry else None

    def _label(self, entry: SpeakerEntry) -> str:
        if entry.role == Role.UNASSIGNED:
            return fallback_label(entry.speaker_id)
        return self._labels[entry.role]

    def snapshot(self) -> list[dict[str, Any]]:
        """Copy of the speaker map for dashboard / final report, in first-seen order."""
        with self._lock:
            return [
                {
                    "speaker_id": e.speaker_id,
                    "role": self._labels[e.role],
                    "label": self._label(e),
                    "first_seen_at": e.first_seen_at,
                    "last_seen_at": e.last_seen_at,
                    "packet_count": e.packet_count,
                    "is_active": e.speaker_id == self._current,
                }
                for e in self._entries.values()
            ]

    @property
    def role_labels(self) -> list[str]:
        return list(self._labels.values())

    def role_label(self, role: Role) -> str:
        return self._labels[role]
