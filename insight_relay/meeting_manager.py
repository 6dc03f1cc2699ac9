"""
Meeting lifecycle: one MeetingPipeline per meeting, owned by the MeetingOrchestrator registry.

MeetingPipeline wires the per-meeting components:

  transport (RTMS) ──on_audio_packet──▶ recorder (optional WAV backup)
                                      ▶ SpeakerTracker.observe
                                      ▶ AudioRebuffer ──frame──▶ TranscriptionSession
  TranscriptionSession ──events queue──▶ consumer task (strictly in order)
      PartialTurn → latest partial text (dashboard only)
      FinalTurn   → label with the speaker captured at finalization → TranscriptBuffer + transcript file
                  → InsightExtractor.process_turn (all tool rounds finish before the next turn)
      TranscriptionFailed → orchestrator tears the meeting down

Stop: rebuffer stop + flush → transcription close → transport close → drain queued turns
(bounded) → extractor close → transcript file close → recording finalize → backup
transcription of the recording (if any) → final report.

State per meeting: STARTING → ACTIVE → STOPPING → STOPPED.
"""
from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional

from insight_relay.asr import (
    BatchTranscriberBase,
    FinalTurn,
    PartialTurn,
    SessionBegan,
    SessionTerminated,
    TranscriptEvent,
    TranscriptionFailed,
    TranscriptionSession,
    create_batch_transcriber,
    create_transcription_session,
)
from insight_relay.audio import AudioRebuffer, AudioRecorderBase, create_audio_recorder
from insight_relay.config import get_settings
from insight_relay.diarization import Role, SpeakerTracker
from insight_relay.errors import (
    AlreadyFinalized,
    AudioTransportError,
    EmptyAudioPacket,
    SessionNotFound,
    TranscriptionError,
    UnknownMeeting,
)
from insight_relay.rtms import AudioTransport, create_audio_transport
from insight_relay.schemas.record import FinalReport
from insight_relay.services.conversation import ConversationContext
from insight_relay.services.extractor import InsightExtractor
from insight_relay.services.llm_client import ExtractionModelClient
from insight_relay.session_store import SessionStateStore
from insight_relay.transcript import TranscriptBuffer, TranscriptTurn, TranscriptWriterBase, create_transcript_writer

logger = logging.getLogger(__name__)

FailureCallback = Callable[["MeetingPipeline", str], None]


def sanitize_meeting_id(meeting_id: str) -> str:
    """External meeting id → session id: every non-alphanumeric char becomes '_'."""
    if not meeting_id:
        raise ValueError("meeting_id is required")
    return re.sub(r"[^A-Za-z0-9]", "_", meeting_id)


class MeetingState(str, Enum):
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"
    STOPPED = "stopped"


class MeetingPipeline:
    """All per-meeting state. Nothing here is shared with other meetings."""

    def __init__(
        self,
        meeting_id: str,
        session_id: Optional[str] = None,
        stream_id: Optional[str] = None,
        server_urls: Optional[str] = None,
        store: Optional[SessionStateStore] = None,
        client: Optional[ExtractionModelClient] = None,
        transcription_factory: Callable[..., TranscriptionSession] = create_transcription_session,
        transport_factory: Callable[..., AudioTransport] = create_audio_transport,
        on_failure: Optional[FailureCallback] = None,
        batch_transcriber: Optional[BatchTranscriberBase] = None,
    ) -> None:
        settings = get_settings()
        self.meeting_id = meeting_id
        self.session_id = session_id or sanitize_meeting_id(meeting_id)
        self.stream_id = stream_id
        self.state = MeetingState.STARTING
        self.started_at = time.time()
        self.ended_at: Optional[float] = None
        self.error: Optional[str] = None
        self.final_report: Optional[FinalReport] = None
        self.recording_path: Optional[str] = None
        self._recent_limit = settings.RECENT_TRANSCRIPT_LIMIT
        self._drain_timeout = settings.MEETING_DRAIN_TIMEOUT_SEC
        self._resume = settings.RESUME_PERSISTED_SESSIONS
        self._on_failure = on_failure
        self._client = client

        self.store = store or SessionStateStore()
        self.events: asyncio.Queue[Optional[TranscriptEvent]] = asyncio.Queue()
        self.tracker = SpeakerTracker()
        self.transcript = TranscriptBuffer()
        self.rebuffer = AudioRebuffer(on_frame=self._forward_frame)
        self.transcription = transcription_factory(
            self.events,
            on_stop_requested=self._on_stop_requested,
            label=self.session_id,
            speaker_provider=self.tracker.current,
        )
        self.extractor = InsightExtractor(self.session_id, client=client, store=self.store)
        self.recorder: AudioRecorderBase = create_audio_recorder(self.session_id)
        self.batch_transcriber = batch_transcriber or create_batch_transcriber()
        self.writer: TranscriptWriterBase = create_transcript_writer(self.session_id, self.started_at)
        self.transport = transport_factory(
            meeting_id, stream_id, server_urls, self.on_audio_packet, self._on_transport_closed
        )
        self._consumer_task: Optional[asyncio.Task] = None

    # --- audio path ---

    def _forward_frame(self, frame: bytes) -> None:
        self.transcription.send_frame(frame)

    def on_audio_packet(self, speaker_id: int, data: bytes) -> None:
        """One raw PCM packet from the media source. Raises EmptyAudioPacket."""
        if not data:
            raise EmptyAudioPacket(f"Empty audio packet from speaker {speaker_id}")
        if self.state not in (MeetingState.STARTING, MeetingState.ACTIVE):
            return
        self.recorder.append(data)
        self.tracker.observe(speaker_id)
        self.rebuffer.push(data, speaker_id)

    def _on_stop_requested(self) -> None:
        self.rebuffer.request_stop()

    def _on_transport_closed(self, reason: str) -> None:
        if self.state not in (MeetingState.STARTING, MeetingState.ACTIVE):
            return
        self.error = reason
        if self._on_failure is not None:
            self._on_failure(self, reason)

    # --- lifecycle ---

    async def _restore(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            record = await loop.run_in_executor(None, self.store.load, self.session_id)
            history = await loop.run_in_executor(None, self.store.load_history, self.session_id)
        except SessionNotFound:
            return
        context = ConversationContext.from_history(history, get_settings().EXTRACTION_CONTEXT_MAX_ENTRIES)
        self.extractor = InsightExtractor(
            self.session_id, client=self._client, store=self.store, record=record, context=context
        )
        logger.info("Meeting %s: restored session %s (%s)", self.meeting_id, self.session_id, record.counts())

    async def start(self) -> None:
        """Open transcription, start the consumer, open the media transport. Raises on failure (meeting STOPPED)."""
        logger.info("Meeting %s: starting (session %s)", self.meeting_id, self.session_id)
        if self._resume:
            await self._restore()
        await self.writer.start()
        try:
            await self.transcription.open()
        except TranscriptionError as e:
            self.error = str(e)
            logger.error("Meeting %s: %s", self.meeting_id, e)
            await self.writer.close()
            self.ended_at = time.time()
            self.state = MeetingState.STOPPED
            raise
        self._consumer_task = asyncio.create_task(self._consume())
        try:
            await self.transport.open()
        except AudioTransportError as e:
            self.error = str(e)
            logger.error("Meeting %s: %s", self.meeting_id, e)
            await self.stop()
            raise
        self.state = MeetingState.ACTIVE
        logger.info("Meeting %s: active", self.meeting_id)

    async def _consume(self) -> None:
        """Process transcript events strictly in order. None = stop."""
        while True:
            event = await self.events.get()
            if event is None:
                break
            try:
                await self._handle_event(event)
            except Exception:
                logger.exception("Meeting %s: failed to handle %s", self.meeting_id, type(event).__name__)

    async def _handle_event(self, event: TranscriptEvent) -> None:
        if isinstance(event, PartialTurn):
            self.transcript.set_partial(event.text)
        elif isinstance(event, FinalTurn):
            # Speaker was captured when the turn was finalized, not when it is dequeued
            speaker_id = event.speaker_id
            turn = TranscriptTurn(text=event.text, role=self.tracker.label_for(speaker_id), speaker_id=speaker_id)
            self.transcript.append(turn)
            self.writer.append_final(turn.text, turn.role, turn.timestamp)
            logger.info("Meeting %s: [%s] %s", self.meeting_id, turn.role, turn.text)
            await self.extractor.process_turn(turn.labeled())
        elif isinstance(event, SessionBegan):
            logger.info("Meeting %s: transcription session %s began", self.meeting_id, event.id)
        elif isinstance(event, SessionTerminated):
            logger.info("Meeting %s: transcription session terminated", self.meeting_id)
        elif isinstance(event, TranscriptionFailed):
            self.error = event.reason
            if self._on_failure is not None and self.state in (MeetingState.STARTING, MeetingState.ACTIVE):
                self._on_failure(self, event.reason)

    async def _drain(self) -> None:
        if self._consumer_task is None:
            return
        self.events.put_nowait(None)
        try:
            await asyncio.wait_for(self._consumer_task, timeout=self._drain_timeout)
        except asyncio.TimeoutError:
            logger.warning("Meeting %s: drain timed out after %ss; pending turns dropped", self.meeting_id, self._drain_timeout)
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass
        self._consumer_task = None

    async def _backup_transcript(self) -> Optional[str]:
        if self.recording_path is None:
            return None
        try:
            return await self.batch_transcriber.transcribe(self.recording_path)
        except TranscriptionError as e:
            logger.error("Meeting %s: backup transcription failed: %s", self.meeting_id, e)
            return None

    async def stop(self) -> Optional[FinalReport]:
        """Idempotent teardown; returns the final report (None if it could not be written)."""
        if self.state in (MeetingState.STOPPING, MeetingState.STOPPED):
            return self.final_report
        self.state = MeetingState.STOPPING
        logger.info("Meeting %s: stopping", self.meeting_id)
        self.rebuffer.request_stop()
        self.rebuffer.flush()
        await self.transcription.close()
        await self.transport.close()
        await self._drain()
        record = self.extractor.close()
        await self.writer.close()

        loop = asyncio.get_running_loop()
        try:
            self.recording_path = await loop.run_in_executor(None, self.recorder.finalize)
        except OSError as e:
            logger.warning("Meeting %s: recording not saved: %s", self.meeting_id, e)
        batch_transcript = await self._backup_transcript()

        finalize = functools.partial(
            self.store.finalize,
            self.session_id,
            record,
            [t.to_dict() for t in self.transcript.all()],
            self.tracker.snapshot(),
            batch_transcript,
        )
        try:
            self.final_report = await loop.run_in_executor(None, finalize)
        except (AlreadyFinalized, OSError) as e:
            logger.error("Meeting %s: final report not written: %s", self.meeting_id, e)
        self.ended_at = time.time()
        self.state = MeetingState.STOPPED
        logger.info(
            "Meeting %s: stopped (%d turns, %s)",
            self.meeting_id,
            len(self.transcript),
            self.extractor.stats(),
        )
        return self.final_report

    # --- dashboard reads (copies only) ---

    def status(self) -> dict[str, Any]:
        return {
            "status": self.state.value,
            "meeting_id": self.meeting_id,
            "session_id": self.session_id,
            "stt_state": self.transcription.state.value,
            "turns": len(self.transcript),
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "error": self.error,
        }

    def recent_transcript(self, limit: Optional[int] = None) -> list[dict[str, Any]]:
        return [t.to_dict() for t in self.transcript.recent(limit or self._recent_limit)]

    def snapshot(self) -> dict[str, Any]:
        return {
            **self.status(),
            "session_record": self.extractor.snapshot().model_dump(mode="json"),
            "speakers": self.tracker.snapshot(),
            "roles": self.tracker.role_labels,
            "recent_transcript": self.recent_transcript(),
            "partial": self.transcript.partial,
            "extraction": self.extractor.stats(),
            "audio": self.rebuffer.stats(),
        }


@dataclass
class _MeetingLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Holders plus waiters
    users: int = 0


class MeetingOrchestrator:
    """
    Registry of meetings keyed by raw meeting id. Start/stop for one meeting are serialized
    by a per-meeting asyncio.Lock; different meetings never wait on each other.
    Stopped meetings are released; the last FINISHED_MEETINGS_KEEP snapshots stay readable
    for the dashboard. A meeting's lock is dropped once it is stopped and nobody waits on it.
    """

    def __init__(
        self,
        store: Optional[SessionStateStore] = None,
        pipeline_factory: Callable[..., MeetingPipeline] = MeetingPipeline,
    ) -> None:
        self.store = store or SessionStateStore()
        self._pipeline_factory = pipeline_factory
        self._pipelines: dict[str, MeetingPipeline] = {}
        self._finished: dict[str, dict[str, Any]] = {}
        self._locks: dict[str, _MeetingLock] = {}
        self._finished_keep = get_settings().FINISHED_MEETINGS_KEEP
        self._latest: Optional[str] = None
        self._background: set[asyncio.Task] = set()

    @contextlib.asynccontextmanager
    async def _lock_for(self, meeting_id: str) -> AsyncIterator[None]:
        entry = self._locks.get(meeting_id)
        if entry is None:
            entry = self._locks[meeting_id] = _MeetingLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and meeting_id not in self._pipelines:
                del self._locks[meeting_id]

    def _remember_finished(self, meeting_id: str, snapshot: dict[str, Any]) -> None:
        self._finished.pop(meeting_id, None)
        self._finished[meeting_id] = snapshot
        while len(self._finished) > self._finished_keep:
            del self._finished[next(iter(self._finished))]

    def active_meetings(self) -> list[str]:
        return list(self._pipelines)

    def resolve(self, meeting_id: Optional[str] = None) -> str:
        """Explicit id, or the most recently started meeting. Raises UnknownMeeting."""
        mid = meeting_id or self._latest
        if mid is None or (mid not in self._pipelines and mid not in self._finished):
            raise UnknownMeeting(f"No meeting {meeting_id!r}" if meeting_id else "No meeting has started yet")
        return mid

    def pipeline(self, meeting_id: Optional[str] = None) -> MeetingPipeline:
        """Active pipeline only. Raises UnknownMeeting."""
        mid = self.resolve(meeting_id)
        pipeline = self._pipelines.get(mid)
        if pipeline is None:
            raise UnknownMeeting(f"Meeting {mid} is not active")
        return pipeline

    async def on_meeting_start(
        self,
        meeting_id: str,
        stream_id: Optional[str] = None,
        server_urls: Optional[str] = None,
    ) -> MeetingPipeline:
        async with self._lock_for(meeting_id):
            if meeting_id in self._pipelines:
                logger.info("Meeting %s already running; restarting", meeting_id)
                await self._stop_locked(meeting_id)
            session_id = self.store.available_session_id(sanitize_meeting_id(meeting_id))
            pipeline = self._pipeline_factory(
                meeting_id,
                session_id=session_id,
                stream_id=stream_id,
                server_urls=server_urls,
                store=self.store,
                on_failure=self._on_pipeline_failure,
            )
            self._pipelines[meeting_id] = pipeline
            self._finished.pop(meeting_id, None)
            self._latest = meeting_id
            try:
                await pipeline.start()
            except (TranscriptionError, AudioTransportError):
                self._pipelines.pop(meeting_id, None)
                self._remember_finished(meeting_id, pipeline.snapshot())
                raise
            return pipeline

    async def on_meeting_stop(self, meeting_id: str) -> Optional[FinalReport]:
        async with self._lock_for(meeting_id):
            return await self._stop_locked(meeting_id)

    async def _stop_locked(self, meeting_id: str) -> Optional[FinalReport]:
        pipeline = self._pipelines.get(meeting_id)
        if pipeline is None:
            raise UnknownMeeting(f"Meeting {meeting_id} is not active")
        try:
            return await pipeline.stop()
        finally:
            self._pipelines.pop(meeting_id, None)
            self._remember_finished(meeting_id, pipeline.snapshot())

    def _on_pipeline_failure(self, pipeline: MeetingPipeline, reason: str) -> None:
        logger.error("Meeting %s failed: %s; tearing down", pipeline.meeting_id, reason)
        task = asyncio.create_task(self._stop_failed(pipeline))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _stop_failed(self, pipeline: MeetingPipeline) -> None:
        async with self._lock_for(pipeline.meeting_id):
            # A restart may already have replaced this pipeline
            if self._pipelines.get(pipeline.meeting_id) is pipeline:
                await self._stop_locked(pipeline.meeting_id)

    def on_audio_packet(self, meeting_id: str, speaker_id: int, data: bytes) -> None:
        pipeline = self._pipelines.get(meeting_id)
        if pipeline is None:
            raise UnknownMeeting(f"Meeting {meeting_id} is not active")
        pipeline.on_audio_packet(speaker_id, data)

    def assign_speaker(self, speaker_id: int, role: Role | str, meeting_id: Optional[str] = None) -> tuple[str, Role]:
        """Manual role override on an active meeting. Raises UnknownMeeting / InvalidRole."""
        pipeline = self.pipeline(meeting_id)
        return pipeline.meeting_id, pipeline.tracker.assign(speaker_id, role)

    def snapshot(self, meeting_id: Optional[str] = None) -> dict[str, Any]:
        mid = self.resolve(meeting_id)
        pipeline = self._pipelines.get(mid)
        if pipeline is not None:
            return pipeline.snapshot()
        return self._finished[mid]

    def status(self, meeting_id: Optional[str] = None) -> dict[str, Any]:
        if meeting_id is None and self._latest is None:
            return {"status": "idle", "active_meetings": []}
        snap = self.snapshot(meeting_id)
        keys = ("status", "meeting_id", "session_id", "stt_state", "turns", "started_at", "ended_at", "error")
        result = {k: snap.get(k) for k in keys}
        result["active_meetings"] = self.active_meetings()
        return result

    async def shutdown(self) -> None:
        """Stop every active meeting (process teardown)."""
        for meeting_id in list(self._pipelines):
            try:
                await self.on_meeting_stop(meeting_id)
            except UnknownMeeting:
                continue
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        logger.info("All meetings stopped")
