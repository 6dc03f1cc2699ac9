"""Tests for MeetingPipeline / MeetingOrchestrator (fake STT session + fake extraction model)."""

import asyncio
import functools
import os

import pytest

from insight_relay.asr import BatchTranscriberBase, FinalTurn, PartialTurn, SessionState, TranscriptionFailed
from insight_relay.diarization import Role
from insight_relay.errors import EmptyAudioPacket, ExtractionError, InvalidRole, TranscriptionError, UnknownMeeting
from insight_relay.meeting_manager import MeetingOrchestrator, MeetingPipeline, MeetingState, sanitize_meeting_id
from insight_relay.services.llm_client import ModelResponse

FRAME = b"\x00\x01" * 1600  # 100ms @ 16kHz


async def wait_until(condition, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class Harness:
    def __init__(self, transcription_class, client) -> None:
        self.sessions = []
        self.client = client
        self.fail_open = None
        self._transcription_class = transcription_class
        factory = functools.partial(MeetingPipeline, client=client, transcription_factory=self._transcription)
        self.orchestrator = MeetingOrchestrator(pipeline_factory=factory)

    def _transcription(self, events, on_stop_requested=None, label="", speaker_provider=None):
        session = self._transcription_class(
            events, on_stop_requested, label, fail_open=self.fail_open, speaker_provider=speaker_provider
        )
        self.sessions.append(session)
        return session

    @property
    def session(self):
        return self.sessions[-1]


@pytest.fixture
def harness(fake_transcription_class, fake_model_client, responses):
    client = fake_model_client(
        [
            responses.tool(responses.tool_use("t1", "append_summary_point", {"point": "Client plans early retirement"})),
            responses.text(),
        ]
    )
    return Harness(fake_transcription_class, client)


def test_sanitize_meeting_id():
    assert sanitize_meeting_id("abc/DEF+==") == "abc_DEF___"
    with pytest.raises(ValueError):
        sanitize_meeting_id("")


async def test_final_turn_is_labeled_stored_and_extracted(harness):
    pipeline = await harness.orchestrator.on_meeting_start("meeting/1==")
    assert pipeline.session_id == "meeting_1__"
    assert pipeline.state == MeetingState.ACTIVE

    harness.orchestrator.on_audio_packet("meeting/1==", 101, FRAME)
    assert harness.session.frames == [FRAME]

    harness.session.emit(PartialTurn(text="I want to"))
    harness.session.emit(FinalTurn(text="I want to retire at 55."))
    await wait_until(lambda: pipeline.extractor.stats()["turns_processed"] == 1)

    snap = harness.orchestrator.snapshot()
    assert snap["recent_transcript"][0]["role"] == "Consultant"
    assert snap["recent_transcript"][0]["speaker_id"] == 101
    assert snap["partial"] == ""
    assert snap["session_record"]["summary"] == ["Client plans early retirement"]
    assert "Consultant: I want to retire at 55." in harness.client.calls[0]["messages"][0]["content"]
    await harness.orchestrator.shutdown()


class GatedModelClient:
    """Holds the first extraction call open until gate is set."""

    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.calls = []

    async def create_message(self, system, tools, messages):
        self.calls.append(messages)
        if len(self.calls) == 1:
            await self.gate.wait()
        return ModelResponse(content=[{"type": "text", "text": "Noted."}], stop_reason="end_turn")


async def test_queued_turn_keeps_speaker_from_finalization(fake_transcription_class):
    client = GatedModelClient()
    harness = Harness(fake_transcription_class, client)
    pipeline = await harness.orchestrator.on_meeting_start("m1")

    pipeline.on_audio_packet(7, FRAME)
    harness.session.emit(FinalTurn(text="turn one"))
    await wait_until(lambda: len(client.calls) == 1)

    # Turn two is finalized while turn one is still being extracted
    harness.session.emit(FinalTurn(text="turn two by consultant"))
    pipeline.on_audio_packet(3, FRAME)
    client.gate.set()
    await wait_until(lambda: pipeline.extractor.stats()["turns_processed"] == 2)

    assert [t.role for t in pipeline.transcript.all()] == ["Consultant", "Consultant"]
    assert [t.speaker_id for t in pipeline.transcript.all()] == [7, 7]
    assert "Consultant: turn two by consultant" in client.calls[1][-1]["content"]
    await harness.orchestrator.shutdown()


async def test_partial_turn_visible_until_final(harness):
    await harness.orchestrator.on_meeting_start("m1")
    harness.session.emit(PartialTurn(text="I have"))
    await wait_until(lambda: harness.orchestrator.snapshot()["partial"] == "I have")
    assert harness.orchestrator.snapshot()["turns"] == 0
    await harness.orchestrator.shutdown()


async def test_unknown_speaker_labels_turn_with_id(harness):
    pipeline = await harness.orchestrator.on_meeting_start("m1")
    for speaker_id in (1, 2, 3):
        pipeline.on_audio_packet(speaker_id, b"\x00\x00" * 10)
    harness.session.emit(FinalTurn(text="Hi, I'm the spouse."))
    await wait_until(lambda: len(pipeline.transcript) == 1)
    assert pipeline.transcript.all()[0].role == "Speaker 3"
    await harness.orchestrator.shutdown()


async def test_stop_writes_final_report_and_releases_meeting(harness):
    pipeline = await harness.orchestrator.on_meeting_start("m1")
    pipeline.on_audio_packet(7, FRAME)
    harness.session.emit(FinalTurn(text="Hello."))

    report = await harness.orchestrator.on_meeting_stop("m1")

    assert report is not None and report.session_id == "m1"
    assert [t["text"] for t in report.full_transcript] == ["Hello."]
    assert report.speaker_map[0]["speaker_id"] == 7
    assert report.session_record.summary == ["Client plans early retirement"]
    assert harness.orchestrator.store.load_final_report("m1").model_dump() == report.model_dump()
    assert harness.session.close_calls == 1
    assert harness.orchestrator.active_meetings() == []

    status = harness.orchestrator.status("m1")
    assert status["status"] == "stopped" and status["turns"] == 1
    with open(pipeline.writer.path, encoding="utf-8") as f:
        assert f.read() == "[Consultant] Hello.\n"


async def test_stop_is_idempotent_on_pipeline(harness):
    pipeline = await harness.orchestrator.on_meeting_start("m1")
    first = await pipeline.stop()
    second = await pipeline.stop()
    assert first is second
    assert harness.session.close_calls == 1


async def test_audio_after_stop_is_ignored(harness):
    pipeline = await harness.orchestrator.on_meeting_start("m1")
    await harness.orchestrator.on_meeting_stop("m1")
    pipeline.on_audio_packet(1, FRAME)
    assert harness.session.frames == []
    with pytest.raises(UnknownMeeting):
        harness.orchestrator.on_audio_packet("m1", 1, FRAME)


async def test_restart_after_stop_gets_fresh_session(harness):
    await harness.orchestrator.on_meeting_start("m1")
    await harness.orchestrator.on_meeting_stop("m1")
    pipeline = await harness.orchestrator.on_meeting_start("m1")
    assert pipeline.session_id == "m1_2"
    assert pipeline.extractor.snapshot().summary == []
    assert pipeline.transcript.all() == []
    await harness.orchestrator.shutdown()


async def test_start_while_running_restarts(harness):
    first = await harness.orchestrator.on_meeting_start("m1")
    second = await harness.orchestrator.on_meeting_start("m1")
    assert first.state == MeetingState.STOPPED
    assert second.state == MeetingState.ACTIVE
    assert second.session_id == "m1_2"
    assert harness.orchestrator.store.is_finalized("m1")
    await harness.orchestrator.shutdown()


async def test_transcription_failure_tears_meeting_down(harness):
    pipeline = await harness.orchestrator.on_meeting_start("m1")
    harness.session.emit(TranscriptionFailed(reason="connection closed by remote"))
    await wait_until(lambda: pipeline.state == MeetingState.STOPPED)
    await wait_until(lambda: harness.orchestrator.active_meetings() == [])
    status = harness.orchestrator.status("m1")
    assert status["status"] == "stopped"
    assert status["error"] == "connection closed by remote"
    assert harness.orchestrator.store.is_finalized("m1")


async def test_transcription_open_failure(harness):
    harness.fail_open = TranscriptionError("401 unauthorized")
    with pytest.raises(TranscriptionError):
        await harness.orchestrator.on_meeting_start("m1")
    assert harness.orchestrator.active_meetings() == []
    status = harness.orchestrator.status("m1")
    assert status["status"] == "stopped"
    assert status["stt_state"] == SessionState.ERROR.value


async def test_model_failure_keeps_meeting_running(fake_transcription_class, fake_model_client):
    harness = Harness(fake_transcription_class, fake_model_client([ExtractionError("503")]))
    pipeline = await harness.orchestrator.on_meeting_start("m1")
    harness.session.emit(FinalTurn(text="First."))
    harness.session.emit(FinalTurn(text="Second."))
    await wait_until(lambda: pipeline.extractor.stats()["turns_processed"] == 1)
    assert pipeline.state == MeetingState.ACTIVE
    assert len(pipeline.transcript) == 2
    assert pipeline.extractor.stats()["turns_dropped"] == 1
    await harness.orchestrator.shutdown()


async def test_meetings_are_isolated(harness):
    a = await harness.orchestrator.on_meeting_start("a")
    session_a = harness.session
    b = await harness.orchestrator.on_meeting_start("b")
    session_b = harness.session
    session_a.emit(FinalTurn(text="Only in A."))
    await wait_until(lambda: len(a.transcript) == 1)
    await harness.orchestrator.on_meeting_stop("a")
    assert b.state == MeetingState.ACTIVE
    assert len(b.transcript) == 0
    assert session_b.close_calls == 0
    assert harness.orchestrator.status()["meeting_id"] == "b"
    await harness.orchestrator.shutdown()


async def test_empty_audio_packet_rejected(harness):
    await harness.orchestrator.on_meeting_start("m1")
    with pytest.raises(EmptyAudioPacket):
        harness.orchestrator.on_audio_packet("m1", 1, b"")
    await harness.orchestrator.shutdown()


async def test_assign_speaker(harness):
    pipeline = await harness.orchestrator.on_meeting_start("m1")
    pipeline.on_audio_packet(10, b"\x00\x00")
    pipeline.on_audio_packet(20, b"\x00\x00")
    assert harness.orchestrator.assign_speaker(10, "Client") == ("m1", Role.ROLE_B)
    assert harness.orchestrator.assign_speaker(99, "role_a", "m1") == ("m1", Role.ROLE_A)
    with pytest.raises(InvalidRole):
        harness.orchestrator.assign_speaker(10, "Auditor")
    harness.session.emit(FinalTurn(text="Hello."))
    await wait_until(lambda: len(pipeline.transcript) == 1)
    assert pipeline.transcript.all()[0].role == "Client"
    await harness.orchestrator.shutdown()


async def test_unknown_meeting(harness):
    assert harness.orchestrator.status() == {"status": "idle", "active_meetings": []}
    with pytest.raises(UnknownMeeting):
        await harness.orchestrator.on_meeting_stop("nope")
    with pytest.raises(UnknownMeeting):
        harness.orchestrator.snapshot("nope")
    with pytest.raises(UnknownMeeting):
        harness.orchestrator.assign_speaker(1, "Client")


async def test_transcript_file_written_per_session(harness):
    pipeline = await harness.orchestrator.on_meeting_start("m1")
    harness.session.emit(FinalTurn(text="One."))
    harness.session.emit(FinalTurn(text="Two."))
    await harness.orchestrator.on_meeting_stop("m1")
    assert os.path.basename(pipeline.writer.path) == "m1.txt"
    with open(pipeline.writer.path, encoding="utf-8") as f:
        assert f.read().splitlines() == ["[Unknown speaker] One.", "[Unknown speaker] Two."]


class FakeBatchTranscriber(BatchTranscriberBase):
    def __init__(self, result=None, error=None) -> None:
        self.paths = []
        self._result = result
        self._error = error

    async def transcribe(self, path):
        self.paths.append(path)
        if self._error is not None:
            raise self._error
        return self._result


def _recording_orchestrator(fake_transcription_class, fake_model_client, batch):
    factory = functools.partial(
        MeetingPipeline,
        client=fake_model_client(),
        transcription_factory=fake_transcription_class,
        batch_transcriber=batch,
    )
    return MeetingOrchestrator(pipeline_factory=factory)


async def test_recording_is_transcribed_into_final_report(monkeypatch, fake_transcription_class, fake_model_client):
    monkeypatch.setenv("ENABLE_BACKEND_RECORDING", "true")
    batch = FakeBatchTranscriber(result="Hello, full backup text.")
    orchestrator = _recording_orchestrator(fake_transcription_class, fake_model_client, batch)
    pipeline = await orchestrator.on_meeting_start("m1")
    pipeline.on_audio_packet(7, FRAME)

    report = await orchestrator.on_meeting_stop("m1")

    assert batch.paths == [pipeline.recording_path]
    assert os.path.basename(pipeline.recording_path) == "recording_m1.wav"
    assert report.batch_transcript == "Hello, full backup text."
    assert orchestrator.store.load_final_report("m1").batch_transcript == "Hello, full backup text."


async def test_failed_backup_transcription_still_writes_report(monkeypatch, fake_transcription_class, fake_model_client):
    monkeypatch.setenv("ENABLE_BACKEND_RECORDING", "true")
    batch = FakeBatchTranscriber(error=TranscriptionError("backup transcription failed: 500"))
    orchestrator = _recording_orchestrator(fake_transcription_class, fake_model_client, batch)
    pipeline = await orchestrator.on_meeting_start("m1")
    pipeline.on_audio_packet(7, FRAME)

    report = await orchestrator.on_meeting_stop("m1")

    assert len(batch.paths) == 1
    assert report is not None and report.batch_transcript is None


async def test_no_backup_transcription_without_recording(fake_transcription_class, fake_model_client):
    batch = FakeBatchTranscriber(result="unused")
    orchestrator = _recording_orchestrator(fake_transcription_class, fake_model_client, batch)
    pipeline = await orchestrator.on_meeting_start("m1")
    pipeline.on_audio_packet(7, FRAME)
    report = await orchestrator.on_meeting_stop("m1")
    assert batch.paths == []
    assert report.batch_transcript is None


async def test_only_recent_finished_meetings_are_kept(monkeypatch, fake_transcription_class, fake_model_client):
    monkeypatch.setenv("FINISHED_MEETINGS_KEEP", "2")
    harness = Harness(fake_transcription_class, fake_model_client())
    for meeting_id in ("a", "b", "c"):
        await harness.orchestrator.on_meeting_start(meeting_id)
        await harness.orchestrator.on_meeting_stop(meeting_id)

    with pytest.raises(UnknownMeeting):
        harness.orchestrator.status("a")
    assert harness.orchestrator.status("b")["status"] == "stopped"
    assert harness.orchestrator.status()["meeting_id"] == "c"


async def test_meeting_lock_released_after_stop(harness):
    await harness.orchestrator.on_meeting_start("m1")
    assert list(harness.orchestrator._locks) == ["m1"]
    await harness.orchestrator.on_meeting_stop("m1")
    assert harness.orchestrator._locks == {}

    harness.fail_open = TranscriptionError("401 unauthorized")
    with pytest.raises(TranscriptionError):
        await harness.orchestrator.on_meeting_start("m2")
    assert harness.orchestrator._locks == {}
