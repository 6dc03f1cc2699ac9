"""
Conversation context for the extraction model: a log of atomic entries.

- UserTurn: one labeled transcript turn ("Client: ...").
- ToolExchange: the assistant message with tool_use blocks AND the user message with
  the matching tool_result blocks. Stored and pruned as ONE entry, so a tool_result can
  never be kept without its tool_use (the API rejects that with a 400).
- AssistantReply: final text reply after the tool rounds.

prune() cuts whole entries and always leaves the log starting at a UserTurn.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Union

logger = logging.getLogger(__name__)

USER_TURN_PREFIX = "New consultation segment: "


@dataclass(frozen=True)
class UserTurn:
    text: str

    def to_messages(self) -> list[dict[str, Any]]:
        return [{"role": "user", "content": USER_TURN_PREFIX + self.text}]


@dataclass(frozen=True)
class ToolExchange:
    assistant_blocks: list[dict[str, Any]]
    tool_results: list[dict[str, Any]]

    def to_messages(self) -> list[dict[str, Any]]:
        return [
            {"role": "assistant", "content": list(self.assistant_blocks)},
            {"role": "user", "content": list(self.tool_results)},
        ]


@dataclass(frozen=True)
class AssistantReply:
    blocks: list[dict[str, Any]] = field(default_factory=list)

    def to_messages(self) -> list[dict[str, Any]]:
        return [{"role": "assistant", "content": list(self.blocks)}]


ContextEntry = Union[UserTurn, ToolExchange, AssistantReply]


def _as_blocks(content: Any) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    return list(content)


class ConversationContext:
    """Entries in causal order. Not thread-safe; owned by one meeting's extractor."""

    def __init__(self, entries: list[ContextEntry] | None = None, max_entries: int | None = None) -> None:
        self._entries: list[ContextEntry] = list(entries or [])
        self.max_entries = max_entries

    @property
    def entries(self) -> list[ContextEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def copy(self) -> "ConversationContext":
        return ConversationContext(self._entries, self.max_entries)

    def append(self, entry: ContextEntry) -> None:
        self._entries.append(entry)

    def add_user_turn(self, text: str) -> None:
        self.append(UserTurn(text))

    def add_tool_exchange(self, assistant_blocks: list[dict[str, Any]], tool_results: list[dict[str, Any]]) -> None:
        self.append(ToolExchange(list(assistant_blocks), list(tool_results)))

    def add_reply(self, blocks: list[dict[str, Any]]) -> None:
        if blocks:
            self.append(AssistantReply(list(blocks)))

    def prune(self, max_entries: int | None = None) -> int:
        """Keep at most max_entries whole entries, starting at a UserTurn. Returns number dropped."""
        limit = max_entries if max_entries is not None else self.max_entries
        if not limit or len(self._entries) <= limit:
            start = 0
        else:
            start = len(self._entries) - limit
        first_user = next(
            (i for i in range(start, len(self._entries)) if isinstance(self._entries[i], UserTurn)),
            None,
        )
        if first_user is None:
            # Window holds no UserTurn; widen back to the latest one
            first_user = next(
                (i for i in range(start - 1, -1, -1) if isinstance(self._entries[i], UserTurn)),
                len(self._entries),
            )
        if first_user:
            logger.debug("Context pruned: %d of %d entries dropped", first_user, len(self._entries))
            self._entries = self._entries[first_user:]
        return first_user

    def reset_to_recent_user_turns(self, keep: int) -> None:
        """Recovery: drop everything except the last `keep` plain user turns."""
        users = [e for e in self._entries if isinstance(e, UserTurn)]
        self._entries = users[-keep:] if keep > 0 else []
        logger.info("Context reset to %d recent user turns", len(self._entries))

    def to_messages(self) -> list[dict[str, Any]]:
        """Messages for the API; consecutive same-role messages are merged into one."""
        messages: list[dict[str, Any]] = []
        for entry in self._entries:
            for msg in entry.to_messages():
                if messages and messages[-1]["role"] == msg["role"]:
                    prev = messages[-1]
                    prev["content"] = _as_blocks(prev["content"]) + _as_blocks(msg["content"])
                else:
                    messages.append(dict(msg))
        return messages

    def to_history(self) -> list[dict[str, Any]]:
        """JSON-serializable form for the session store."""
        history: list[dict[str, Any]] = []
        for entry in self._entries:
            if isinstance(entry, UserTurn):
                history.append({"kind": "user_turn", "text": entry.text})
            elif isinstance(entry, ToolExchange):
                history.append(
                    {
                        "kind": "tool_exchange",
                        "assistant_blocks": list(entry.assistant_blocks),
                        "tool_results": list(entry.tool_results),
                    }
                )
            else:
                history.append({"kind": "assistant_reply", "blocks": list(entry.blocks)})
        return history

    @classmethod
    def from_history(cls, history: list[dict[str, Any]], max_entries: int | None = None) -> "ConversationContext":
        """Inverse of to_history(). Unknown kinds are skipped; result is pruned to start at a UserTurn."""
        entries: list[ContextEntry] = []
        for item in history or []:
            kind = item.get("kind") if isinstance(item, dict) else None
            if kind == "user_turn":
                entries.append(UserTurn(str(item.get("text", ""))))
            elif kind == "tool_exchange":
                entries.append(ToolExchange(list(item.get("assistant_blocks", [])), list(item.get("tool_results", []))))
            elif kind == "assistant_reply":
                entries.append(AssistantReply(list(item.get("blocks", []))))
            else:
                logger.warning("Skipping unknown history entry: %r", kind)
        ctx = cls(entries, max_entries)
        ctx.prune()
        return ctx
