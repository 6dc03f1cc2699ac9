"""
File-based session state store (one JSON per session under SESSION_LOG_DIR).

  {session_id}.json               {conversation_history, session_record, timestamp}   overwritten on every save
  {session_id}_final_report.json  {session_id, timestamp, session_record, speaker_map, full_transcript, batch_transcript}

Finalize is write-once: a second finalize raises AlreadyFinalized, and so does save()
after finalize. All writes go to a temp file first and are moved into place with
os.replace, so readers never see a half-written file.

Blocking I/O: callers on the event loop run these methods in an executor.
"""
from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from insight_relay.config import get_settings
from insight_relay.errors import AlreadyFinalized, SessionNotFound
from insight_relay.schemas.record import FinalReport, SessionRecord

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_]+$")


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _check_session_id(session_id: str) -> str:
    if not session_id or not _SESSION_ID_RE.match(session_id):
        raise ValueError(f"Invalid session id {session_id!r} (sanitize the meeting id first)")
    return session_id


class SessionStateStore:
    def __init__(self, log_dir: str | None = None) -> None:
        self.log_dir = log_dir or get_settings().SESSION_LOG_DIR
        self._lock = threading.Lock()

    def _state_path(self, session_id: str) -> str:
        return os.path.join(self.log_dir, f"{_check_session_id(session_id)}.json")

    def _final_path(self, session_id: str) -> str:
        return os.path.join(self.log_dir, f"{_check_session_id(session_id)}_final_report.json")

    def _write_json(self, path: str, data: dict[str, Any]) -> None:
        os.makedirs(self.log_dir, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.log_dir, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def _read_json(self, path: str) -> dict[str, Any] | None:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read %s: %s", path, e)
            return None
        return data if isinstance(data, dict) else None

    def is_finalized(self, session_id: str) -> bool:
        return os.path.exists(self._final_path(session_id))

    def save(
        self,
        session_id: str,
        record: SessionRecord,
        conversation_history: list[dict[str, Any]] | None = None,
    ) -> None:
        """Overwrite the session state file. Raises AlreadyFinalized after finalize()."""
        path = self._state_path(session_id)
        with self._lock:
            if self.is_finalized(session_id):
                raise AlreadyFinalized(f"Session {session_id} is finalized; state is read-only")
            self._write_json(
                path,
                {
                    "conversation_history": conversation_history or [],
                    "session_record": record.model_dump(mode="json"),
                    "timestamp": utc_timestamp(),
                },
            )
        logger.debug("Session state saved: %s", path)

    def load(self, session_id: str) -> SessionRecord:
        data = self._read_json(self._state_path(session_id))
        if data is None or "session_record" not in data:
            raise SessionNotFound(f"No saved state for session {session_id}")
        try:
            return SessionRecord.model_validate(data["session_record"])
        except ValidationError as e:
            raise SessionNotFound(f"Saved state for session {session_id} is invalid: {e}") from e

    def load_history(self, session_id: str) -> list[dict[str, Any]]:
        data = self._read_json(self._state_path(session_id))
        if data is None:
            raise SessionNotFound(f"No saved state for session {session_id}")
        history = data.get("conversation_history") or []
        return history if isinstance(history, list) else []

    def finalize(
        self,
        session_id: str,
        record: SessionRecord,
        full_transcript: list[dict[str, Any]] | None = None,
        speaker_map: list[dict[str, Any]] | None = None,
        batch_transcript: str | None = None,
    ) -> FinalReport:
        """Write the final report once. Raises AlreadyFinalized on a second call."""
        path = self._final_path(session_id)
        report = FinalReport(
            session_id=session_id,
            timestamp=utc_timestamp(),
            session_record=record.model_copy(deep=True),
            speaker_map=list(speaker_map or []),
            full_transcript=list(full_transcript or []),
            batch_transcript=batch_transcript,
        )
        with self._lock:
            if os.path.exists(path):
                raise AlreadyFinalized(f"Session {session_id} already has a final report")
            self._write_json(path, report.model_dump(mode="json"))
        logger.info("Final report saved: %s", path)
        return report

    def load_final_report(self, session_id: str) -> FinalReport:
        data = self._read_json(self._final_path(session_id))
        if data is None:
            raise SessionNotFound(f"No final report for session {session_id}")
        try:
            return FinalReport.model_validate(data)
        except ValidationError as e:
            raise SessionNotFound(f"Final report for session {session_id} is invalid: {e}") from e

    def available_session_id(self, base_id: str) -> str:
        """base_id, or base_id_2, base_id_3, ... if earlier runs of the meeting were finalized."""
        session_id = _check_session_id(base_id)
        n = 1
        while self.is_finalized(session_id):
            n += 1
            session_id = f"{base_id}_{n}"
        return session_id
