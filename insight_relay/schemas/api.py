"""Schemas for the webhook and dashboard HTTP API."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class WebhookEvent(BaseModel):
    """Request body for POST /webhook (Zoom event notification)."""

    event: str = Field(..., description="e.g. endpoint.url_validation, meeting.rtms_started, meeting.rtms_stopped")
    payload: dict[str, Any] = Field(default_factory=dict)


class UrlValidationResponse(BaseModel):
    plainToken: str
    encryptedToken: str


class SpeakerAssignRequest(BaseModel):
    """Request body for POST /api/speakers/assign."""

    speaker_id: int = Field(..., description="Raw speaker id from the audio stream")
    role: str = Field(..., description="Role label (e.g. Consultant / Client / Unassigned) or role_a / role_b / unassigned")
    meeting_id: str | None = Field(None, description="Meeting; defaults to the most recently started one")


class SpeakerAssignResponse(BaseModel):
    success: bool = True
    meeting_id: str
    speaker_id: int
    role: str
    speakers: list[dict[str, Any]] = Field(default_factory=list)


class StatusResponse(BaseModel):
    """Response body for GET /api/status."""

    status: str = Field(..., description="idle when no meeting has started, else the meeting lifecycle state")
    meeting_id: str | None = None
    session_id: str | None = None
    active_meetings: list[str] = Field(default_factory=list)
    stt_state: str | None = None
    turns: int = 0
    started_at: float | None = None
    ended_at: float | None = None
    error: str | None = None
