"""
Backup transcription of a finished meeting's recording (AssemblyAI pre-recorded API, over httpx).

  POST {ASSEMBLYAI_BASE_URL}/v2/upload            raw WAV bytes  → {upload_url}
  POST {ASSEMBLYAI_BASE_URL}/v2/transcript        {audio_url}    → {id, status}
  GET  {ASSEMBLYAI_BASE_URL}/v2/transcript/{id}   until status is "completed" (text) or "error"

Runs once per meeting, after stop, only when the WAV backup was written.
Any failure raises TranscriptionError; the final report is then written without backup text.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from insight_relay.config import get_settings
from insight_relay.errors import TranscriptionError

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT_SEC = 60.0


def _read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


class BatchTranscriberBase(ABC):
    @abstractmethod
    async def transcribe(self, path: str) -> Optional[str]:
        """Full text of the audio file at path, or None when backup transcription is off."""
        ...


class NoOpBatchTranscriber(BatchTranscriberBase):
    async def transcribe(self, path: str) -> Optional[str]:
        return None


class AssemblyAIBatchTranscriber(BatchTranscriberBase):
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.ASSEMBLYAI_API_KEY
        self.base_url = (base_url or settings.ASSEMBLYAI_BASE_URL).rstrip("/")
        self.poll_interval = poll_interval if poll_interval is not None else settings.BATCH_TRANSCRIPTION_POLL_SEC
        self.timeout = timeout if timeout is not None else settings.BATCH_TRANSCRIPTION_TIMEOUT_SEC
        self._transport = transport

    async def transcribe(self, path: str) -> Optional[str]:
        if not self.api_key:
            raise TranscriptionError("ASSEMBLYAI_API_KEY is required for backup transcription")
        loop = asyncio.get_running_loop()
        try:
            audio = await loop.run_in_executor(None, _read_file, path)
        except OSError as e:
            raise TranscriptionError(f"recording not readable: {e}") from e
        logger.info("Backup transcription: %s (%d bytes)", path, len(audio))
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=_REQUEST_TIMEOUT_SEC,
                headers={"authorization": self.api_key},
                transport=self._transport,
            ) as client:
                text = await asyncio.wait_for(self._run(client, audio), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TranscriptionError(f"backup transcription not done after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise TranscriptionError(f"backup transcription request failed: {e}") from e
        logger.info("Backup transcription completed: %d chars", len(text))
        return text

    async def _run(self, client: httpx.AsyncClient, audio: bytes) -> str:
        upload = self._json(
            await client.post("/v2/upload", content=audio, headers={"content-type": "application/octet-stream"}),
            "upload",
        )
        upload_url = upload.get("upload_url")
        if not upload_url:
            raise TranscriptionError("upload response without upload_url")
        job = self._json(await client.post("/v2/transcript", json={"audio_url": upload_url}), "transcript")
        job_id = job.get("id")
        if not job_id:
            raise TranscriptionError("transcript response without id")
        while True:
            status = job.get("status")
            if status == "completed":
                return job.get("text") or ""
            if status == "error":
                raise TranscriptionError(f"backup transcription failed: {job.get('error')}")
            await asyncio.sleep(self.poll_interval)
            job = self._json(await client.get(f"/v2/transcript/{job_id}"), "poll")

    @staticmethod
    def _json(resp: httpx.Response, step: str) -> dict[str, Any]:
        if resp.status_code >= 400:
            raise TranscriptionError(f"backup transcription {step} returned {resp.status_code}: {resp.text[:300]}")
        try:
            data = resp.json()
        except ValueError as e:
            raise TranscriptionError(f"backup transcription {step} returned non-JSON body") from e
        if not isinstance(data, dict):
            raise TranscriptionError(f"backup transcription {step} returned unexpected body")
        return data


def create_batch_transcriber() -> BatchTranscriberBase:
    """AssemblyAI backup transcription when recording and BATCH_TRANSCRIPTION_ENABLED are both on."""
    settings = get_settings()
    if settings.ENABLE_BACKEND_RECORDING and settings.BATCH_TRANSCRIPTION_ENABLED:
        return AssemblyAIBatchTranscriber()
    return NoOpBatchTranscriber()
