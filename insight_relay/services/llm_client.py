"""
Extraction model client: Anthropic Messages API with tool use, over httpx.

POST {ANTHROPIC_BASE_URL}/v1/messages
  headers: x-api-key, anthropic-version
  body: {model, max_tokens, system, tools, messages}
Response: {content: [{type: text|tool_use, ...}], stop_reason: end_turn|tool_use|max_tokens, usage}

Errors:
- 400 whose body mentions tool_use / tool_result → ExtractionProtocolError (context pairing broken).
- Any other HTTP error, transport error, timeout, or non-JSON body → ExtractionError.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from insight_relay.config import get_settings
from insight_relay.errors import ExtractionError, ExtractionProtocolError

logger = logging.getLogger(__name__)


def is_pairing_error(status_code: int, body: str) -> bool:
    if status_code != 400:
        return False
    text = (body or "").lower()
    return "tool_use" in text or "tool_result" in text


@dataclass
class ModelResponse:
    content: list[dict[str, Any]] = field(default_factory=list)
    stop_reason: Optional[str] = None
    usage: dict[str, Any] = field(default_factory=dict)

    @property
    def tool_uses(self) -> list[dict[str, Any]]:
        return [b for b in self.content if b.get("type") == "tool_use"]

    @property
    def wants_tools(self) -> bool:
        return self.stop_reason == "tool_use" and bool(self.tool_uses)

    @property
    def text(self) -> str:
        return "".join(b.get("text", "") for b in self.content if b.get("type") == "text").strip()


class ExtractionModelClient:
    """Thin async client. One request per call; no retries here (the extractor decides)."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.ANTHROPIC_API_KEY
        self.base_url = (base_url or settings.ANTHROPIC_BASE_URL).rstrip("/")
        self.model = model or settings.EXTRACTION_MODEL
        self.max_tokens = max_tokens or settings.EXTRACTION_MAX_TOKENS
        self.timeout = timeout if timeout is not None else settings.EXTRACTION_TIMEOUT_SEC
        self.anthropic_version = settings.ANTHROPIC_VERSION
        self._transport = transport

    async def create_message(
        self,
        system: str,
        tools: list[dict[str, Any]],
        messages: list[dict[str, Any]],
    ) -> ModelResponse:
        if not self.api_key:
            raise ExtractionError("ANTHROPIC_API_KEY is required for extraction")
        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": system,
            "tools": tools,
            "messages": messages,
        }
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": self.anthropic_version,
            "content-type": "application/json",
        }
        logger.debug("Extraction request: model=%s messages=%d tools=%d", self.model, len(messages), len(tools))
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post("/v1/messages", json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise ExtractionError(f"extraction request timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise ExtractionError(f"extraction request failed: {e}") from e

        if resp.status_code >= 400:
            body = resp.text
            if is_pairing_error(resp.status_code, body):
                raise ExtractionProtocolError(f"tool_use/tool_result pairing rejected: {body[:300]}")
            raise ExtractionError(f"extraction API returned {resp.status_code}: {body[:300]}")
        try:
            data = resp.json()
        except ValueError as e:
            raise ExtractionError("extraction API returned non-JSON body") from e

        content = data.get("content") or []
        return ModelResponse(
            content=[b for b in content if isinstance(b, dict)],
            stop_reason=data.get("stop_reason"),
            usage=data.get("usage") or {},
        )
