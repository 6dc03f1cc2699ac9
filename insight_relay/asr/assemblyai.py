"""
AssemblyAIStreamingSession: AssemblyAI v3 realtime STT over one websocket per meeting.

Connection parameters go in the query string (sample_rate, format_turns); the API key in
the Authorization header. We send raw PCM frames as binary messages and receive JSON:

    {"type": "Begin", "id": "...", "expires_at": 1700000000}
    {"type": "Turn", "transcript": "...", "end_of_turn": bool, "turn_is_formatted": bool, ...}
    {"type": "Termination", "audio_duration_seconds": 12.3, "session_duration_seconds": 14.0}

With format_turns=true every turn arrives first as unformatted partials, then exactly once
with turn_is_formatted=true; that formatted message is the FinalTurn.

Frames are queued by send_frame() (sync, called from the audio path) and written by a single
sender task, so order is arrival order and the audio path never awaits the network.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable
from urllib.parse import urlencode

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from insight_relay.asr.base import (
    SENDABLE_STATES,
    TERMINAL_STATES,
    FinalTurn,
    PartialTurn,
    SessionBegan,
    SessionState,
    SessionTerminated,
    TranscriptEvent,
    TranscriptionFailed,
    TranscriptionSession,
)
from insight_relay.config import get_settings
from insight_relay.errors import TranscriptionError

logger = logging.getLogger(__name__)

ConnectFn = Callable[..., Awaitable[Any]]

# Bound for draining queued frames during close()
_SENDER_DRAIN_TIMEOUT_SEC = 2.0


def build_streaming_url(base_url: str, sample_rate: int, format_turns: bool) -> str:
    params = {"sample_rate": sample_rate, "format_turns": "true" if format_turns else "false"}
    return f"{base_url}?{urlencode(params)}"


class AssemblyAIStreamingSession(TranscriptionSession):
    """One per meeting. State machine: CONNECTING → OPEN → STREAMING → TERMINATING → CLOSED (ERROR from any)."""

    def __init__(
        self,
        events: "asyncio.Queue[TranscriptEvent]",
        on_stop_requested: Callable[[], None] | None = None,
        api_key: str | None = None,
        url: str | None = None,
        connect: ConnectFn | None = None,
        close_timeout: float | None = None,
        label: str = "",
        speaker_provider: Callable[[], int | None] | None = None,
    ) -> None:
        super().__init__(events, on_stop_requested, speaker_provider)
        settings = get_settings()
        self._api_key = api_key if api_key is not None else settings.ASSEMBLYAI_API_KEY
        self._format_turns = settings.ASSEMBLYAI_FORMAT_TURNS
        self._url = url or build_streaming_url(
            settings.ASSEMBLYAI_STREAMING_URL, settings.SAMPLE_RATE, self._format_turns
        )
        self._connect = connect or ws_connect
        self._close_timeout = (
            close_timeout if close_timeout is not None else settings.TRANSCRIPTION_CLOSE_TIMEOUT_SEC
        )
        self._label = label
        self._ws: Any = None
        self._frames: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._sender_task: asyncio.Task[None] | None = None
        self._receiver_task: asyncio.Task[None] | None = None
        self._closing = False
        self._closed = False
        self.session_id: str | None = None
        self.frames_sent = 0

    async def open(self) -> None:
        if self._state != SessionState.CONNECTING:
            logger.warning("STT %s: open() in state %s ignored", self._label, self._state.value)
            return
        logger.info("STT %s: connecting to %s", self._label, self._url)
        try:
            self._ws = await self._connect(self._url, additional_headers={"Authorization": self._api_key})
        except Exception as e:
            self._state = SessionState.ERROR
            raise TranscriptionError(f"streaming STT connect failed: {e}") from e
        self._state = SessionState.OPEN
        logger.info("STT %s: connected", self._label)
        self._sender_task = asyncio.create_task(self._sender())
        self._receiver_task = asyncio.create_task(self._receiver())

    def send_frame(self, frame: bytes) -> None:
        if self._closing or self._state not in SENDABLE_STATES:
            logger.debug("STT %s: frame dropped in state %s", self._label, self._state.value)
            return
        self._frames.put_nowait(frame)

    async def _sender(self) -> None:
        """Drain frame queue in order. None = stop."""
        while True:
            frame = await self._frames.get()
            if frame is None:
                break
            if self._state in TERMINAL_STATES:
                continue
            try:
                await self._ws.send(frame)
            except (ConnectionClosed, OSError) as e:
                self._fail(f"send failed: {e}")
                break
            self.frames_sent += 1
            if self._state == SessionState.OPEN:
                self._state = SessionState.STREAMING

    async def _receiver(self) -> None:
        try:
            async for message in self._ws:
                self._handle_message(message)
        except ConnectionClosed as e:
            if not self._closing:
                self._fail(f"connection closed: {e}")
            return
        except OSError as e:
            self._fail(f"receive failed: {e}")
            return
        if not self._closing:
            self._fail("connection closed by remote")

    def _handle_message(self, message: str | bytes) -> None:
        """Map one remote message to a TranscriptEvent. Malformed / unknown → logged and ignored."""
        if isinstance(message, bytes):
            logger.debug("STT %s: ignored %d-byte binary message", self._label, len(message))
            return
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.warning("STT %s: non-JSON message ignored: %.80s", self._label, message)
            return
        if not isinstance(data, dict):
            return
        msg_type = data.get("type")
        event: TranscriptEvent | None = None
        if msg_type == "Begin":
            self.session_id = str(data.get("id") or "")
            event = SessionBegan(id=self.session_id, expires_at=data.get("expires_at"))
            logger.info("STT %s: session started %s", self._label, self.session_id)
        elif msg_type == "Turn":
            text = (data.get("transcript") or "").strip()
            if not text:
                return
            if self._format_turns:
                is_final = bool(data.get("turn_is_formatted"))
            else:
                is_final = bool(data.get("end_of_turn"))
            event = FinalTurn(text=text) if is_final else PartialTurn(text=text)
        elif msg_type == "Termination":
            event = SessionTerminated(
                audio_duration_sec=data.get("audio_duration_seconds"),
                session_duration_sec=data.get("session_duration_seconds"),
            )
            logger.info(
                "STT %s: session terminated (audio %ss, session %ss)",
                self._label,
                event.audio_duration_sec,
                event.session_duration_sec,
            )
        else:
            logger.debug("STT %s: unknown message type %r ignored", self._label, msg_type)
            return
        self._emit(event)

    def _fail(self, reason: str) -> None:
        if self._state in TERMINAL_STATES:
            return
        self._state = SessionState.ERROR
        logger.error("STT %s: %s", self._label, reason)
        if self._on_stop_requested is not None:
            try:
                self._on_stop_requested()
            except Exception as e:
                logger.warning("STT %s: stop callback failed: %s", self._label, e)
        self._emit(TranscriptionFailed(reason=reason))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._closing = True
        was_open = self._state in SENDABLE_STATES

        # Frames queued before close (e.g. the rebuffer flush) go out before Terminate
        if self._sender_task is not None:
            self._frames.put_nowait(None)
            await asyncio.wait({self._sender_task}, timeout=_SENDER_DRAIN_TIMEOUT_SEC)

        if was_open and self._ws is not None and self._state in SENDABLE_STATES:
            self._state = SessionState.TERMINATING
            try:
                await self._ws.send(json.dumps({"type": "Terminate"}))
            except (ConnectionClosed, OSError) as e:
                logger.warning("STT %s: Terminate not sent: %s", self._label, e)
            if self._receiver_task is not None:
                # Remote sends Termination then closes; don't wait longer than close_timeout
                await asyncio.wait({self._receiver_task}, timeout=self._close_timeout)

        if self._ws is not None:
            try:
                await asyncio.wait_for(self._ws.close(), timeout=self._close_timeout)
            except (asyncio.TimeoutError, ConnectionClosed, OSError) as e:
                logger.warning("STT %s: force close: %s", self._label, e)

        for task in (self._sender_task, self._receiver_task):
            if task is not None and not task.done():
                task.cancel()
        await asyncio.gather(
            *(t for t in (self._sender_task, self._receiver_task) if t is not None),
            return_exceptions=True,
        )
        if self._state != SessionState.ERROR:
            self._state = SessionState.CLOSED
        logger.info("STT %s: closed (%d frames sent)", self._label, self.frames_sent)


def create_transcription_session(
    events: "asyncio.Queue[TranscriptEvent]",
    on_stop_requested: Callable[[], None] | None = None,
    label: str = "",
    speaker_provider: Callable[[], int | None] | None = None,
) -> TranscriptionSession:
    """Return STT session based on config (TRANSCRIPTION_BACKEND)."""
    settings = get_settings()
    if settings.TRANSCRIPTION_BACKEND == "assemblyai":
        return AssemblyAIStreamingSession(
            events, on_stop_requested=on_stop_requested, label=label, speaker_provider=speaker_provider
        )
    raise ValueError(f"Unknown TRANSCRIPTION_BACKEND={settings.TRANSCRIPTION_BACKEND}")
