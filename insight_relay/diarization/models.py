"""
Speaker map structures.

Speaker ids come from the media transport (RTMS user_id, int). They are stable within one
meeting only; the same id in another meeting is a different person.

Roles:
- ROLE_A / ROLE_B: the two sides of the consultation (display labels from config,
  default "Consultant" / "Client").
- UNASSIGNED: seen but not mapped; turns are labeled "Speaker {id}".
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    ROLE_A = "role_a"
    ROLE_B = "role_b"
    UNASSIGNED = "unassigned"


@dataclass
class SpeakerEntry:
    """
    One raw speaker id in the meeting.

    first_seen_at / last_seen_at: unix seconds.
    packet_count: audio packets attributed to this id.
    """

    speaker_id: int
    role: Role
    first_seen_at: float
    last_seen_at: float
    packet_count: int = 0
