"""
Speaker attribution for meeting audio.

- RTMS tags every audio packet with the speaking participant's user_id.
- SpeakerTracker maps those ids to consultation roles (RoleA / RoleB), auto-assigning
  by order of first appearance; the dashboard can override.

Limitations (see speaker_tracker.py):
- First-come role assignment is a heuristic for one-on-one calls; third and later
  participants stay Unassigned until mapped by hand.
- The label attached to a turn is the speaker of the latest packet when the turn is
  finalized; cross-talk near turn boundaries can be mislabeled.
"""
from __future__ import annotations

from insight_relay.diarization.models import Role, SpeakerEntry
from insight_relay.diarization.speaker_tracker import SpeakerTracker, fallback_label

__all__ = ["Role", "SpeakerEntry", "SpeakerTracker", "fallback_label"]
