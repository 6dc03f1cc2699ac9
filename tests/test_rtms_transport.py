"""Tests for the RTMS audio transport (fake signaling + media websockets)."""

import asyncio
import base64
import hashlib
import hmac
import json

import pytest

from insight_relay.errors import AudioTransportError
from insight_relay.rtms import NoOpAudioTransport, RTMSAudioTransport, create_audio_transport, generate_signature

SIGNALING_URL = "wss://rtms.example/signaling"
MEDIA_URL = "wss://rtms.example/media"


@pytest.fixture
def sockets(fake_ws_class):
    return {SIGNALING_URL: fake_ws_class(), MEDIA_URL: fake_ws_class()}


@pytest.fixture
def connect(sockets):
    async def _connect(url, **kwargs):
        return sockets[url]

    return _connect


@pytest.fixture
def received():
    return {"audio": [], "closed": []}


@pytest.fixture
def transport(connect, received):
    return RTMSAudioTransport(
        "meeting-uuid",
        "stream-1",
        SIGNALING_URL,
        on_audio=lambda speaker_id, data: received["audio"].append((speaker_id, data)),
        on_closed=received["closed"].append,
        connect=connect,
    )


def _sent_json(ws) -> list[dict]:
    return [json.loads(m) for m in ws.sent]


def test_signature_is_hmac_of_ids():
    expected = hmac.new(b"secret", b"cid,uuid,sid", hashlib.sha256).hexdigest()
    assert generate_signature("cid", "uuid", "sid", "secret") == expected


async def test_handshake_media_and_audio_delivery(transport, sockets, received):
    signaling, media = sockets[SIGNALING_URL], sockets[MEDIA_URL]
    await transport.open()
    hello = _sent_json(signaling)[0]
    assert hello["msg_type"] == 1
    assert hello["meeting_uuid"] == "meeting-uuid" and hello["rtms_stream_id"] == "stream-1"
    assert hello["signature"] == generate_signature("client-id", "meeting-uuid", "stream-1", "client-secret")

    signaling.feed(json.dumps({"msg_type": 2, "status_code": 0, "media_server": {"server_urls": {"audio": MEDIA_URL}}}))
    await asyncio.sleep(0.01)
    media_hello = _sent_json(media)[0]
    assert media_hello["msg_type"] == 3 and media_hello["media_type"] == 1

    media.feed(json.dumps({"msg_type": 4, "status_code": 0}))
    await asyncio.sleep(0.01)
    assert _sent_json(signaling)[-1] == {"msg_type": 7, "rtms_stream_id": "stream-1"}

    pcm = b"\x01\x02" * 160
    media.feed(json.dumps({"msg_type": 14, "content": {"user_id": 16778240, "data": base64.b64encode(pcm).decode()}}))
    media.feed(json.dumps({"msg_type": 14, "content": {"data": base64.b64encode(pcm).decode()}}))
    await asyncio.sleep(0.01)
    assert received["audio"] == [(16778240, pcm), (0, pcm)]

    await transport.close()
    assert signaling.closed and media.closed
    assert received["closed"] == []


async def test_keep_alive_answered_on_both_sockets(transport, sockets):
    signaling, media = sockets[SIGNALING_URL], sockets[MEDIA_URL]
    await transport.open()
    signaling.feed(json.dumps({"msg_type": 12, "timestamp": 111}))
    signaling.feed(json.dumps({"msg_type": 2, "status_code": 0, "media_server": {"server_urls": {"all": MEDIA_URL}}}))
    await asyncio.sleep(0.01)
    media.feed(json.dumps({"msg_type": 12, "timestamp": 222}))
    await asyncio.sleep(0.01)
    assert {"msg_type": 13, "timestamp": 111} in _sent_json(signaling)
    assert {"msg_type": 13, "timestamp": 222} in _sent_json(media)
    await transport.close()


async def test_rejected_handshake_reports_closed(transport, sockets, received):
    await transport.open()
    sockets[SIGNALING_URL].feed(json.dumps({"msg_type": 2, "status_code": 3}))
    await asyncio.sleep(0.01)
    assert len(received["closed"]) == 1
    assert "status 3" in received["closed"][0]
    await transport.close()


async def test_remote_close_reports_once(transport, sockets, received):
    await transport.open()
    sockets[SIGNALING_URL].feed(None)
    await asyncio.sleep(0.01)
    await transport.close()
    await transport.close()
    assert received["closed"] == ["signaling socket closed"]


async def test_bad_audio_payload_is_ignored(transport, sockets, received):
    await transport.open()
    sockets[SIGNALING_URL].feed(json.dumps({"msg_type": 2, "status_code": 0, "media_server": {"server_urls": {"audio": MEDIA_URL}}}))
    await asyncio.sleep(0.01)
    sockets[MEDIA_URL].feed("not json")
    sockets[MEDIA_URL].feed(json.dumps({"msg_type": 14, "content": {"user_id": 5, "data": "!!!"}}))
    await asyncio.sleep(0.01)
    assert received["audio"] == []
    await transport.close()


async def test_malformed_audio_message_does_not_stop_media(transport, sockets, received):
    await transport.open()
    sockets[SIGNALING_URL].feed(json.dumps({"msg_type": 2, "status_code": 0, "media_server": {"server_urls": {"audio": MEDIA_URL}}}))
    await asyncio.sleep(0.01)
    pcm = base64.b64encode(b"\x01\x02" * 160).decode()
    sockets[MEDIA_URL].feed(json.dumps({"msg_type": 14, "content": {"user_id": "abc", "data": "AAAA"}}))
    sockets[MEDIA_URL].feed(json.dumps({"msg_type": 14, "content": "not an object"}))
    sockets[MEDIA_URL].feed(json.dumps({"msg_type": 14, "content": {"user_id": 5, "data": pcm}}))
    await asyncio.sleep(0.01)
    assert received["audio"] == [(5, b"\x01\x02" * 160)]
    assert received["closed"] == []
    await transport.close()


async def test_malformed_media_server_is_ignored(transport, sockets, received):
    await transport.open()
    sockets[SIGNALING_URL].feed(json.dumps({"msg_type": 2, "status_code": 0, "media_server": "wss://nope"}))
    sockets[SIGNALING_URL].feed(json.dumps({"msg_type": 2, "status_code": 0, "media_server": {"server_urls": ["x"]}}))
    sockets[SIGNALING_URL].feed(json.dumps({"msg_type": 2, "status_code": 0, "media_server": {"server_urls": {"audio": MEDIA_URL}}}))
    await asyncio.sleep(0.01)
    assert _sent_json(sockets[MEDIA_URL])[0]["msg_type"] == 3
    assert received["closed"] == []
    await transport.close()


async def test_unexpected_media_failure_reports_closed(transport, sockets, received, fake_ws_class):
    def explode(ws, message):
        raise RuntimeError("boom")

    sockets[MEDIA_URL] = fake_ws_class(on_send=explode)
    await transport.open()
    sockets[SIGNALING_URL].feed(json.dumps({"msg_type": 2, "status_code": 0, "media_server": {"server_urls": {"audio": MEDIA_URL}}}))
    await asyncio.sleep(0.01)
    assert received["closed"] == ["media loop failed: boom"]
    await transport.close()


async def test_connect_failure_raises(received):
    async def refuse(url, **kwargs):
        raise OSError("unreachable")

    transport = RTMSAudioTransport("m", "s", SIGNALING_URL, on_audio=lambda s, d: None, connect=refuse)
    with pytest.raises(AudioTransportError):
        await transport.open()


def test_factory_without_server_urls_is_noop():
    transport = create_audio_transport("m", None, None, on_audio=lambda s, d: None)
    assert isinstance(transport, NoOpAudioTransport)
