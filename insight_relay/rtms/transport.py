"""
Audio transport: Zoom RTMS signaling + media websockets for one meeting.

Signaling:
  → {msg_type: 1, protocol_version: 1, meeting_uuid, rtms_stream_id, sequence, signature}
  ← {msg_type: 2, status_code: 0, media_server: {server_urls: {audio | all}}}  → connect media
  ← {msg_type: 12, timestamp}  → {msg_type: 13, timestamp}   (keep-alive)
Media:
  → {msg_type: 3, ..., media_type: 1, payload_encryption: false}
  ← {msg_type: 4, status_code: 0}  → on signaling: {msg_type: 7, rtms_stream_id}  (start streaming)
  ← {msg_type: 12, timestamp}  → {msg_type: 13, timestamp}
  ← {msg_type: 14, content: {user_id, data: base64 PCM}}  → on_audio(user_id, bytes)

signature = hex HMAC-SHA256(client_secret, "{client_id},{meeting_uuid},{rtms_stream_id}")

Errors stay inside the meeting: logged, then on_closed(reason) lets the owner tear down.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import hmac
import json
import logging
import random
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import WebSocketException

from insight_relay.config import get_settings
from insight_relay.errors import AudioTransportError

logger = logging.getLogger(__name__)

AudioCallback = Callable[[int, bytes], None]
ClosedCallback = Callable[[str], None]
ConnectFn = Callable[..., Awaitable[Any]]

MSG_SIGNALING_HANDSHAKE = 1
MSG_SIGNALING_HANDSHAKE_RESP = 2
MSG_MEDIA_HANDSHAKE = 3
MSG_MEDIA_HANDSHAKE_RESP = 4
MSG_CLIENT_READY_ACK = 7
MSG_KEEP_ALIVE_REQ = 12
MSG_KEEP_ALIVE_RESP = 13
MSG_MEDIA_DATA_AUDIO = 14

MEDIA_TYPE_AUDIO = 1

_CLOSE_TIMEOUT_SEC = 2.0


def generate_signature(client_id: str, meeting_uuid: str, stream_id: str, client_secret: str) -> str:
    message = f"{client_id},{meeting_uuid},{stream_id}"
    return hmac.new(client_secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def media_url_from(msg: dict[str, Any]) -> Optional[str]:
    server = msg.get("media_server")
    urls = server.get("server_urls") if isinstance(server, dict) else None
    if not isinstance(urls, dict):
        return None
    url = urls.get("audio") or urls.get("all")
    return url if isinstance(url, str) else None


class AudioTransport(ABC):
    """Delivers (speaker_id, pcm bytes) packets for one meeting."""

    def __init__(self, on_audio: AudioCallback, on_closed: Optional[ClosedCallback] = None) -> None:
        self._on_audio = on_audio
        self._on_closed = on_closed

    @abstractmethod
    async def open(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        """Idempotent."""
        ...


class NoOpAudioTransport(AudioTransport):
    """No media source (meeting started without server URLs). Audio can still be pushed directly."""

    async def open(self) -> None:
        pass

    async def close(self) -> None:
        pass


class RTMSAudioTransport(AudioTransport):
    def __init__(
        self,
        meeting_uuid: str,
        stream_id: str,
        server_urls: str,
        on_audio: AudioCallback,
        on_closed: Optional[ClosedCallback] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        connect: Optional[ConnectFn] = None,
    ) -> None:
        super().__init__(on_audio, on_closed)
        settings = get_settings()
        self.meeting_uuid = meeting_uuid
        self.stream_id = stream_id
        self.server_urls = server_urls
        self._client_id = client_id if client_id is not None else settings.ZM_CLIENT_ID
        self._client_secret = client_secret if client_secret is not None else settings.ZM_CLIENT_SECRET
        self._connect = connect or ws_connect
        self._signaling: Any = None
        self._media: Any = None
        self._signaling_task: Optional[asyncio.Task] = None
        self._media_task: Optional[asyncio.Task] = None
        self._closing = False
        self._closed = False
        self.packets_received = 0

    def _signature(self) -> str:
        return generate_signature(self._client_id, self.meeting_uuid, self.stream_id, self._client_secret)

    async def open(self) -> None:
        logger.info("RTMS %s: connecting to signaling %s", self.meeting_uuid, self.server_urls)
        try:
            self._signaling = await self._connect(self.server_urls)
            await self._signaling.send(
                json.dumps(
                    {
                        "msg_type": MSG_SIGNALING_HANDSHAKE,
                        "protocol_version": 1,
                        "meeting_uuid": self.meeting_uuid,
                        "rtms_stream_id": self.stream_id,
                        "sequence": random.randint(0, 10**9),
                        "signature": self._signature(),
                    }
                )
            )
        except (WebSocketException, OSError, asyncio.TimeoutError) as e:
            raise AudioTransportError(f"signaling connect failed: {e}") from e
        self._signaling_task = asyncio.create_task(self._signaling_loop())

    async def _signaling_loop(self) -> None:
        try:
            async for message in self._signaling:
                msg = self._decode(message, "signaling")
                if msg is None:
                    continue
                msg_type = msg.get("msg_type")
                if msg_type == MSG_SIGNALING_HANDSHAKE_RESP:
                    if msg.get("status_code") != 0:
                        self._closed_by(f"signaling handshake rejected: status {msg.get('status_code')}")
                        return
                    url = media_url_from(msg)
                    if url and self._media_task is None:
                        self._media_task = asyncio.create_task(self._media_loop(url))
                    elif not url:
                        logger.warning("RTMS %s: handshake response without media URL", self.meeting_uuid)
                elif msg_type == MSG_KEEP_ALIVE_REQ:
                    await self._signaling.send(
                        json.dumps({"msg_type": MSG_KEEP_ALIVE_RESP, "timestamp": msg.get("timestamp")})
                    )
                else:
                    logger.debug("RTMS %s: signaling msg_type %s", self.meeting_uuid, msg_type)
        except (WebSocketException, OSError) as e:
            self._closed_by(f"signaling socket error: {e}")
            return
        except Exception as e:
            logger.exception("RTMS %s: signaling loop failed", self.meeting_uuid)
            self._closed_by(f"signaling loop failed: {e}")
            return
        self._closed_by("signaling socket closed")

    async def _media_loop(self, url: str) -> None:
        logger.info("RTMS %s: connecting to media %s", self.meeting_uuid, url)
        try:
            self._media = await self._connect(url)
            await self._media.send(
                json.dumps(
                    {
                        "msg_type": MSG_MEDIA_HANDSHAKE,
                        "protocol_version": 1,
                        "meeting_uuid": self.meeting_uuid,
                        "rtms_stream_id": self.stream_id,
                        "signature": self._signature(),
                        "media_type": MEDIA_TYPE_AUDIO,
                        "payload_encryption": False,
                    }
                )
            )
            async for message in self._media:
                msg = self._decode(message, "media")
                if msg is None:
                    continue
                msg_type = msg.get("msg_type")
                if msg_type == MSG_MEDIA_HANDSHAKE_RESP and msg.get("status_code") == 0:
                    await self._signaling.send(
                        json.dumps({"msg_type": MSG_CLIENT_READY_ACK, "rtms_stream_id": self.stream_id})
                    )
                    logger.info("RTMS %s: audio streaming started", self.meeting_uuid)
                elif msg_type == MSG_KEEP_ALIVE_REQ:
                    await self._media.send(
                        json.dumps({"msg_type": MSG_KEEP_ALIVE_RESP, "timestamp": msg.get("timestamp")})
                    )
                elif msg_type == MSG_MEDIA_DATA_AUDIO:
                    content = msg.get("content")
                    if isinstance(content, dict):
                        self._deliver(content)
                    else:
                        logger.warning("RTMS %s: audio message without content object ignored", self.meeting_uuid)
        except (WebSocketException, OSError, asyncio.TimeoutError) as e:
            self._closed_by(f"media socket error: {e}")
            return
        except Exception as e:
            logger.exception("RTMS %s: media loop failed", self.meeting_uuid)
            self._closed_by(f"media loop failed: {e}")
            return
        self._closed_by("media socket closed")

    def _decode(self, message: str | bytes, channel: str) -> Optional[dict[str, Any]]:
        try:
            msg = json.loads(message)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.debug("RTMS %s: non-JSON %s frame ignored", self.meeting_uuid, channel)
            return None
        return msg if isinstance(msg, dict) else None

    def _deliver(self, content: dict[str, Any]) -> None:
        data = content.get("data")
        if not data:
            return
        try:
            pcm = base64.b64decode(data)
        except (binascii.Error, TypeError, ValueError) as e:
            logger.warning("RTMS %s: bad audio payload: %s", self.meeting_uuid, e)
            return
        if not pcm:
            return
        user_id = content.get("user_id")
        try:
            speaker_id = int(user_id) if user_id is not None else 0
        except (TypeError, ValueError):
            logger.warning("RTMS %s: bad user_id %r; packet ignored", self.meeting_uuid, user_id)
            return
        self.packets_received += 1
        try:
            self._on_audio(speaker_id, pcm)
        except Exception as e:
            logger.warning("RTMS %s: audio callback failed: %s", self.meeting_uuid, e)

    def _closed_by(self, reason: str) -> None:
        if self._closing:
            return
        self._closing = True
        logger.warning("RTMS %s: %s", self.meeting_uuid, reason)
        if self._on_closed is not None:
            self._on_closed(reason)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._closing = True
        for ws in (self._media, self._signaling):
            if ws is None:
                continue
            try:
                await asyncio.wait_for(ws.close(), timeout=_CLOSE_TIMEOUT_SEC)
            except (WebSocketException, OSError, asyncio.TimeoutError) as e:
                logger.warning("RTMS %s: close: %s", self.meeting_uuid, e)
        tasks = [t for t in (self._media_task, self._signaling_task) if t is not None]
        current = asyncio.current_task()
        for t in tasks:
            if t is not current and not t.done():
                t.cancel()
        await asyncio.gather(*(t for t in tasks if t is not current), return_exceptions=True)
        logger.info("RTMS %s: closed (%d audio packets)", self.meeting_uuid, self.packets_received)


def create_audio_transport(
    meeting_uuid: str,
    stream_id: Optional[str],
    server_urls: Optional[str],
    on_audio: AudioCallback,
    on_closed: Optional[ClosedCallback] = None,
) -> AudioTransport:
    """RTMS transport when the start event carries a signaling URL; else no-op."""
    if not server_urls:
        logger.warning("Meeting %s started without server_urls; no media source attached", meeting_uuid)
        return NoOpAudioTransport(on_audio, on_closed)
    return RTMSAudioTransport(meeting_uuid, stream_id or "", server_urls, on_audio, on_closed)
