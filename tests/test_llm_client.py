"""Tests for ExtractionModelClient (httpx mock transport)."""

import json

import httpx
import pytest

from insight_relay.errors import ExtractionError, ExtractionProtocolError
from insight_relay.services.llm_client import ExtractionModelClient, is_pairing_error


def _client(handler, **kwargs) -> ExtractionModelClient:
    return ExtractionModelClient(transport=httpx.MockTransport(handler), **kwargs)


async def test_request_shape_and_response_parsing():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "content": [
                    {"type": "text", "text": "Recording funds."},
                    {"type": "tool_use", "id": "t1", "name": "update_qualification", "input": {"funds": "$2M"}},
                ],
                "stop_reason": "tool_use",
                "usage": {"input_tokens": 10, "output_tokens": 5},
            },
        )

    client = _client(handler, model="test-model", max_tokens=256)
    response = await client.create_message("system prompt", [{"name": "x"}], [{"role": "user", "content": "hi"}])

    assert seen["url"] == "https://api.anthropic.com/v1/messages"
    assert seen["headers"]["x-api-key"] == "test-anthropic-key"
    assert seen["headers"]["anthropic-version"] == "2023-06-01"
    assert seen["body"]["model"] == "test-model" and seen["body"]["max_tokens"] == 256
    assert seen["body"]["system"] == "system prompt"
    assert response.wants_tools
    assert response.tool_uses[0]["id"] == "t1"
    assert response.text == "Recording funds."


async def test_pairing_error_is_protocol_error():
    def handler(request):
        return httpx.Response(400, json={"error": {"message": "tool_result block(s) provided without tool_use"}})

    with pytest.raises(ExtractionProtocolError):
        await _client(handler).create_message("s", [], [])


async def test_other_http_errors():
    def handler(request):
        return httpx.Response(529, text="overloaded")

    with pytest.raises(ExtractionError) as exc_info:
        await _client(handler).create_message("s", [], [])
    assert not isinstance(exc_info.value, ExtractionProtocolError)


async def test_transport_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ExtractionError):
        await _client(handler).create_message("s", [], [])


async def test_missing_api_key(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "")
    with pytest.raises(ExtractionError):
        await _client(lambda r: httpx.Response(200, json={})).create_message("s", [], [])


def test_is_pairing_error():
    assert is_pairing_error(400, "messages.3: `tool_use` ids were found without `tool_result` blocks")
    assert not is_pairing_error(400, "max_tokens too large")
    assert not is_pairing_error(500, "tool_use")
