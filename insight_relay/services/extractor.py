"""
InsightExtractor: turns labeled transcript turns into SessionRecord mutations via model tool calls.

Per turn:
1. Append UserTurn to the conversation context.
2. Call the model (system instruction + tool declarations + pruned context).
3. While stop_reason == "tool_use": apply every tool call to a WORKING COPY of the record,
   store assistant tool_use blocks + tool_results as one ToolExchange, call again.
   Safety cap: EXTRACTION_MAX_TOOL_ROUNDS.
4. Append the final text reply (if any).
5. Commit: the published record and context are replaced wholesale; persist.

A failed model call drops the turn: no mutation is committed, the published record is
untouched. A tool_use/tool_result pairing error resets the context to the last few user
turns and retries once.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Optional

from insight_relay.config import get_settings
from insight_relay.errors import AlreadyFinalized, ExtractionError, ExtractionProtocolError, SessionClosed
from insight_relay.schemas.record import QualificationFramework, SessionRecord, get_framework
from insight_relay.schemas.tools import ToolArgumentError, ToolCall, parse_tool_call, tool_declarations
from insight_relay.services.conversation import ConversationContext
from insight_relay.services.llm_client import ExtractionModelClient, ModelResponse
from insight_relay.session_store import SessionStateStore

logger = logging.getLogger(__name__)


def build_system_prompt(
    framework: QualificationFramework,
    role_a_label: str,
    role_b_label: str,
    call_context: str = "",
) -> str:
    field_lines = "\n".join(f"    - {f.description} ({f.name})" for f in framework.fields)
    prompt = f"""You are an expert {framework.domain} analyst monitoring an ongoing conversation in real time.
Your role is to give the {framework.advisor} useful insights by analyzing the conversation as it unfolds.
The insights should be about the {framework.subject}.

Each segment is usually labeled with the speaker ({role_a_label}: or {role_b_label}:). A label may be
missing or be a generic "Speaker N"; in that case infer who is speaking from the content.

Rules:
- Call a tool only when the segment contains genuinely new or changed information.
- update_qualification: include ONLY the fields this segment gives new data for. Omitted fields
  keep their current value; never send a field just to repeat or clear it.
- Add concerns, reminders, and questions only on a clear new signal. Do not restate earlier ones.
- If nothing new was said, do not call any tool.

Pay special attention to:
{field_lines}
    - {framework.subject.capitalize()} concerns, fears, or hesitations
    - Opportunities for the {framework.advisor} to provide value
"""
    if framework.with_questions:
        prompt += "    - Information gaps where strategic questions could help\n"
    if call_context.strip():
        prompt += f"\nAdditional context for this specific conversation: {call_context.strip()}\n"
    return prompt


def _tool_result(tool_use_id: str, content: str, is_error: bool = False) -> dict[str, Any]:
    result: dict[str, Any] = {"type": "tool_result", "tool_use_id": tool_use_id, "content": content}
    if is_error:
        result["is_error"] = True
    return result


class InsightExtractor:
    """One per meeting. process_turn() calls are serialized."""

    def __init__(
        self,
        session_id: str,
        client: Optional[ExtractionModelClient] = None,
        store: Optional[SessionStateStore] = None,
        framework: Optional[QualificationFramework] = None,
        record: Optional[SessionRecord] = None,
        context: Optional[ConversationContext] = None,
        role_a_label: Optional[str] = None,
        role_b_label: Optional[str] = None,
        call_context: Optional[str] = None,
    ) -> None:
        settings = get_settings()
        self.session_id = session_id
        self.framework = framework or get_framework(settings.QUALIFICATION_FRAMEWORK)
        self._client = client or ExtractionModelClient()
        self._store = store
        self._record = record.model_copy(deep=True) if record is not None else SessionRecord.empty(self.framework)
        if context is None:
            context = ConversationContext(max_entries=settings.EXTRACTION_CONTEXT_MAX_ENTRIES)
        self._context = context
        if self._context.max_entries is None:
            self._context.max_entries = settings.EXTRACTION_CONTEXT_MAX_ENTRIES
        self._max_rounds = settings.EXTRACTION_MAX_TOOL_ROUNDS
        self._timeout = settings.EXTRACTION_TIMEOUT_SEC
        self._recovery_keep = settings.EXTRACTION_RECOVERY_KEEP_TURNS
        self._system = build_system_prompt(
            self.framework,
            role_a_label or settings.ROLE_A_LABEL,
            role_b_label or settings.ROLE_B_LABEL,
            call_context if call_context is not None else settings.EXTRACTION_CALL_CONTEXT,
        )
        self._tools = tool_declarations(self.framework)
        self._lock = asyncio.Lock()
        self._closed = False
        self.turns_processed = 0
        self.turns_dropped = 0
        self.tool_calls_applied = 0
        self.tool_calls_rejected = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def context(self) -> ConversationContext:
        return self._context

    def snapshot(self) -> SessionRecord:
        """Deep copy of the last committed record."""
        return self._record.model_copy(deep=True)

    def stats(self) -> dict[str, int]:
        return {
            "turns_processed": self.turns_processed,
            "turns_dropped": self.turns_dropped,
            "tool_calls_applied": self.tool_calls_applied,
            "tool_calls_rejected": self.tool_calls_rejected,
        }

    def apply(self, call: ToolCall) -> str:
        """Apply one parsed tool call to the published record (working copy + wholesale replace)."""
        if self._closed:
            raise SessionClosed(f"Session {self.session_id} is closed")
        working = self._record.model_copy(deep=True)
        message = call.apply(working)
        self._record = working
        self._log_update(call)
        return message

    async def process_turn(self, labeled_text: str) -> bool:
        """Run the extraction protocol for one turn. Returns True if committed, False if dropped."""
        text = (labeled_text or "").strip()
        if not text:
            return False
        async with self._lock:
            if self._closed:
                raise SessionClosed(f"Session {self.session_id} is closed")
            self._context.add_user_turn(text)
            try:
                record, context, applied, rejected = await self._run()
            except ExtractionProtocolError as e:
                logger.warning("Session %s: %s; resetting context and retrying once", self.session_id, e)
                self._context.reset_to_recent_user_turns(self._recovery_keep)
                try:
                    record, context, applied, rejected = await self._run()
                except ExtractionError as e2:
                    return self._drop(e2)
            except ExtractionError as e:
                return self._drop(e)
            self._record = record
            self._context = context
            self.turns_processed += 1
            self.tool_calls_applied += len(applied)
            self.tool_calls_rejected += rejected
            for call in applied:
                self._log_update(call)
            await self._persist()
            return True

    def _drop(self, error: Exception) -> bool:
        self.turns_dropped += 1
        logger.error("Session %s: extraction failed, turn dropped: %s", self.session_id, error)
        return False

    async def _call(self, context: ConversationContext) -> ModelResponse:
        try:
            return await asyncio.wait_for(
                self._client.create_message(self._system, self._tools, context.to_messages()),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise ExtractionError(f"extraction call exceeded {self._timeout}s") from e

    async def _run(self) -> tuple[SessionRecord, ConversationContext, list[ToolCall], int]:
        """One attempt on working copies. Returns (record, context, applied calls, rejected count)."""
        working = self._record.model_copy(deep=True)
        context = self._context.copy()
        context.prune()
        applied: list[ToolCall] = []
        rejected = 0
        response = await self._call(context)
        rounds = 0
        while response.wants_tools:
            if rounds >= self._max_rounds:
                # Unanswered tool_use blocks are not kept in the context
                logger.warning("Session %s: tool round cap (%d) reached", self.session_id, self._max_rounds)
                return working, context, applied, rejected
            rounds += 1
            results = []
            for block in response.tool_uses:
                result, call = self._apply_tool_use(block, working)
                results.append(result)
                if call is None:
                    rejected += 1
                else:
                    applied.append(call)
            context.add_tool_exchange(response.content, results)
            response = await self._call(context)
        reply = [b for b in response.content if b.get("type") == "text" and (b.get("text") or "").strip()]
        context.add_reply(reply)
        return working, context, applied, rejected

    def _apply_tool_use(
        self, block: dict[str, Any], record: SessionRecord
    ) -> tuple[dict[str, Any], Optional[ToolCall]]:
        """Apply one tool_use block to the working record. The call is None when it was rejected."""
        tool_use_id = str(block.get("id", ""))
        name = str(block.get("name", ""))
        try:
            call = parse_tool_call(name, block.get("input"), self.framework)
        except ToolArgumentError as e:
            logger.warning("Session %s: rejected tool call: %s", self.session_id, e)
            return _tool_result(tool_use_id, str(e), is_error=True), None
        message = call.apply(record)
        return _tool_result(tool_use_id, message), call

    def _log_update(self, call: ToolCall) -> None:
        args = call.model_dump(exclude={"name"})
        logger.info("Session %s: %s %s", self.session_id, call.name.upper(), args)

    async def _persist(self) -> None:
        if self._store is None:
            return
        loop = asyncio.get_running_loop()
        save = functools.partial(
            self._store.save, self.session_id, self._record.model_copy(deep=True), self._context.to_history()
        )
        try:
            await loop.run_in_executor(None, save)
        except (OSError, AlreadyFinalized) as e:
            logger.warning("Session %s: state not saved: %s", self.session_id, e)

    def close(self) -> SessionRecord:
        """Stop accepting turns; returns the final record."""
        self._closed = True
        return self.snapshot()
