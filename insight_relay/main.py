"""
FastAPI app: Zoom webhook (meeting lifecycle) + polled dashboard JSON API.

POST /webhook                 endpoint.url_validation | meeting.rtms_started | meeting.rtms_stopped
GET  /api/dashboard           session record + speakers + recent transcript + status
GET  /api/transcript          recent final turns (+ latest partial)
GET  /api/speakers            speaker map
POST /api/speakers/assign     manual role override
GET  /api/status              lifecycle status
GET  /api/report/{session_id} final report of a stopped meeting
GET  /health

Every read endpoint takes an optional meeting_id; default = most recently started meeting.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request

from insight_relay.config import get_settings
from insight_relay.errors import AudioTransportError, InvalidRole, SessionNotFound, TranscriptionError, UnknownMeeting
from insight_relay.logging_config import configure_logging
from insight_relay.meeting_manager import MeetingOrchestrator
from insight_relay.schemas.api import (
    SpeakerAssignRequest,
    SpeakerAssignResponse,
    StatusResponse,
    UrlValidationResponse,
    WebhookEvent,
)
from insight_relay.schemas.record import FinalReport

logger = logging.getLogger(__name__)

START_EVENTS = ("meeting.rtms_started", "rtms_started")
STOP_EVENTS = ("meeting.rtms_stopped", "rtms_stopped")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    app.state.orchestrator = MeetingOrchestrator()
    logger.info("Insight relay started")
    yield
    # Shutdown: best-effort teardown of every active meeting
    await app.state.orchestrator.shutdown()


app = FastAPI(
    title="Meeting Insight Relay",
    description="Zoom RTMS audio → streaming STT → incremental tool-calling extraction → dashboard API",
    lifespan=lifespan,
)


def _orchestrator(request: Request) -> MeetingOrchestrator:
    return request.app.state.orchestrator


def url_validation_response(plain_token: str, secret_token: str) -> UrlValidationResponse:
    encrypted = hmac.new(secret_token.encode("utf-8"), plain_token.encode("utf-8"), hashlib.sha256).hexdigest()
    return UrlValidationResponse(plainToken=plain_token, encryptedToken=encrypted)


async def _start_meeting(
    orchestrator: MeetingOrchestrator, meeting_id: str, stream_id: Optional[str], server_urls: Optional[str]
) -> None:
    try:
        await orchestrator.on_meeting_start(meeting_id, stream_id, server_urls)
    except (TranscriptionError, AudioTransportError, ValueError) as e:
        logger.error("Meeting %s could not start: %s", meeting_id, e)


async def _stop_meeting(orchestrator: MeetingOrchestrator, meeting_id: str) -> None:
    try:
        await orchestrator.on_meeting_stop(meeting_id)
    except UnknownMeeting as e:
        logger.warning("Stop ignored: %s", e)


@app.post("/webhook")
async def webhook(event: WebhookEvent, request: Request, background_tasks: BackgroundTasks) -> Any:
    """Zoom webhook. Meeting start/stop run after the response so Zoom gets its 200 right away."""
    payload = event.payload
    logger.info("Webhook event: %s", event.event)
    if event.event == "endpoint.url_validation":
        plain_token = payload.get("plainToken")
        if not plain_token:
            raise HTTPException(status_code=400, detail="payload.plainToken is required")
        return url_validation_response(str(plain_token), get_settings().ZOOM_SECRET_TOKEN)

    orchestrator = _orchestrator(request)
    if event.event in START_EVENTS:
        meeting_id = payload.get("meeting_uuid")
        if not meeting_id:
            raise HTTPException(status_code=400, detail="payload.meeting_uuid is required")
        background_tasks.add_task(
            _start_meeting, orchestrator, meeting_id, payload.get("rtms_stream_id"), payload.get("server_urls")
        )
        return {"status": "starting", "meeting_id": meeting_id}
    if event.event in STOP_EVENTS:
        meeting_id = payload.get("meeting_uuid")
        if not meeting_id:
            raise HTTPException(status_code=400, detail="payload.meeting_uuid is required")
        background_tasks.add_task(_stop_meeting, orchestrator, meeting_id)
        return {"status": "stopping", "meeting_id": meeting_id}
    return {"status": "ignored", "event": event.event}


def _snapshot_or_404(orchestrator: MeetingOrchestrator, meeting_id: Optional[str]) -> dict[str, Any]:
    try:
        return orchestrator.snapshot(meeting_id)
    except UnknownMeeting as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@app.get("/api/dashboard")
async def dashboard(request: Request, meeting_id: Optional[str] = None) -> dict[str, Any]:
    try:
        return _orchestrator(request).snapshot(meeting_id)
    except UnknownMeeting as e:
        if meeting_id is None:
            return {"status": "idle", "session_record": None, "speakers": [], "recent_transcript": []}
        raise HTTPException(status_code=404, detail=str(e)) from e


@app.get("/api/transcript")
async def transcript(request: Request, meeting_id: Optional[str] = None, limit: Optional[int] = None) -> dict[str, Any]:
    snap = _snapshot_or_404(_orchestrator(request), meeting_id)
    turns = snap["recent_transcript"]
    if limit is not None:
        if limit < 0:
            raise HTTPException(status_code=400, detail="limit must be >= 0")
        turns = turns[-limit:] if limit else []
    return {
        "meeting_id": snap["meeting_id"],
        "transcripts": turns,
        "partial": snap["partial"],
        "count": snap["turns"],
    }


@app.get("/api/speakers")
async def speakers(request: Request, meeting_id: Optional[str] = None) -> dict[str, Any]:
    snap = _snapshot_or_404(_orchestrator(request), meeting_id)
    current = next((s["speaker_id"] for s in snap["speakers"] if s["is_active"]), None)
    return {
        "meeting_id": snap["meeting_id"],
        "speakers": snap["speakers"],
        "current_speaker": current,
        "roles": snap["roles"],
    }


@app.post("/api/speakers/assign", response_model=SpeakerAssignResponse)
async def assign_speaker(body: SpeakerAssignRequest, request: Request) -> SpeakerAssignResponse:
    orchestrator = _orchestrator(request)
    try:
        meeting_id, role = orchestrator.assign_speaker(body.speaker_id, body.role, body.meeting_id)
    except InvalidRole as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except UnknownMeeting as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    pipeline = orchestrator.pipeline(meeting_id)
    return SpeakerAssignResponse(
        meeting_id=meeting_id,
        speaker_id=body.speaker_id,
        role=pipeline.tracker.role_label(role),
        speakers=pipeline.tracker.snapshot(),
    )


@app.get("/api/status", response_model=StatusResponse)
async def status(request: Request, meeting_id: Optional[str] = None) -> StatusResponse:
    try:
        return StatusResponse(**_orchestrator(request).status(meeting_id))
    except UnknownMeeting as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@app.get("/api/report/{session_id}", response_model=FinalReport)
async def final_report(session_id: str, request: Request) -> FinalReport:
    store = _orchestrator(request).store
    try:
        return store.load_final_report(session_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@app.get("/health")
async def health(request: Request) -> dict:
    return {"status": "ok", "active_meetings": len(_orchestrator(request).active_meetings())}
