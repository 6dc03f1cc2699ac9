"""Pytest configuration and fixtures."""

import asyncio
import copy
from pathlib import Path
from typing import Any

import pytest

from insight_relay.asr.base import SessionState, TranscriptionSession
from insight_relay.services.llm_client import ModelResponse


@pytest.fixture(autouse=True)
def settings_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point every file-writing setting at tmp_path; fake API keys."""
    monkeypatch.setenv("SESSION_LOG_DIR", str(tmp_path / "consultation_logs"))
    monkeypatch.setenv("TRANSCRIPT_DIR", str(tmp_path / "transcripts"))
    monkeypatch.setenv("BACKEND_RECORD_DIR", str(tmp_path / "recordings"))
    monkeypatch.delenv("ANTHROPIC_BASE_URL", raising=False)
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-anthropic-key")
    monkeypatch.setenv("ASSEMBLYAI_API_KEY", "test-assemblyai-key")
    monkeypatch.setenv("ZOOM_SECRET_TOKEN", "zoom-secret")
    monkeypatch.setenv("ZM_CLIENT_ID", "client-id")
    monkeypatch.setenv("ZM_CLIENT_SECRET", "client-secret")
    monkeypatch.setenv("MEETING_DRAIN_TIMEOUT_SEC", "5")
    monkeypatch.setenv("TRANSCRIPTION_CLOSE_TIMEOUT_SEC", "0.2")
    monkeypatch.setenv("RESUME_PERSISTED_SESSIONS", "false")
    return tmp_path


class FakeWebSocket:
    """Stands in for a websockets client connection: records sends, replays queued inbound messages."""

    def __init__(self, on_send=None) -> None:
        self.sent: list[Any] = []
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self._on_send = on_send

    async def send(self, message: Any) -> None:
        self.sent.append(message)
        if self._on_send is not None:
            self._on_send(self, message)

    def feed(self, message: Any) -> None:
        """Queue an inbound message. None ends iteration (clean close); an exception is raised."""
        self.inbound.put_nowait(message)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        item = await self.inbound.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbound.put_nowait(None)


class FakeModelClient:
    """Scripted extraction model: returns (or raises) the queued items in order."""

    def __init__(self, script: list[Any] | None = None) -> None:
        self.script = list(script or [])
        self.calls: list[dict[str, Any]] = []

    async def create_message(self, system: str, tools: list[dict[str, Any]], messages: list[dict[str, Any]]) -> ModelResponse:
        self.calls.append({"system": system, "tools": tools, "messages": copy.deepcopy(messages)})
        if not self.script:
            return ModelResponse(content=[{"type": "text", "text": "Noted."}], stop_reason="end_turn")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class FakeTranscription(TranscriptionSession):
    """In-memory transcription session; tests push events with emit()."""

    def __init__(
        self, events, on_stop_requested=None, label: str = "", fail_open: Exception | None = None, speaker_provider=None
    ) -> None:
        super().__init__(events, on_stop_requested, speaker_provider)
        self.frames: list[bytes] = []
        self.close_calls = 0
        self._fail_open = fail_open

    async def open(self) -> None:
        if self._fail_open is not None:
            self._state = SessionState.ERROR
            raise self._fail_open
        self._state = SessionState.OPEN

    def send_frame(self, frame: bytes) -> None:
        if self._state in (SessionState.OPEN, SessionState.STREAMING):
            self.frames.append(frame)
            self._state = SessionState.STREAMING

    async def close(self) -> None:
        self.close_calls += 1
        if self._state != SessionState.ERROR:
            self._state = SessionState.CLOSED

    def emit(self, event) -> None:
        self._emit(event)


def tool_use(tool_id: str, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
    return {"type": "tool_use", "id": tool_id, "name": name, "input": arguments}


def tool_response(*blocks: dict[str, Any]) -> ModelResponse:
    return ModelResponse(content=list(blocks), stop_reason="tool_use")


def text_response(text: str = "Done.") -> ModelResponse:
    return ModelResponse(content=[{"type": "text", "text": text}], stop_reason="end_turn")


@pytest.fixture
def fake_ws_class():
    return FakeWebSocket


@pytest.fixture
def fake_model_client():
    return FakeModelClient


@pytest.fixture
def fake_transcription_class():
    return FakeTranscription


@pytest.fixture
def responses():
    """Builders for scripted model responses: responses.tool_use / .tool / .text."""

    class _Responses:
        pass

    r = _Responses()
    r.tool_use = tool_use
    r.tool = tool_response
    r.text = text_response
    return r
