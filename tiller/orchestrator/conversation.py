# ==============================
# Conversation
# ==============================
"""
In-memory view of a session's message history for one agent turn.

Rules:
- Rebuilt from persisted MessageRecords at turn start; the store stays authoritative.
- Token counts are a rough estimate (chars / 4), used only for trimming.
- Trimming drops the oldest whole turns. A turn starts at a user message that
  carries text (not tool results), so a tool use is never split from its result.
"""

from __future__ import annotations

import json
from typing import Iterable, List, Optional

from tiller.contracts.llm_schema import Message, Role, TextBlock, ToolResultBlock, ToolUseBlock
from tiller.contracts.session_schema import MessageRecord

CHARS_PER_TOKEN = 4


def estimate_tokens(message: Message) -> int:
    chars = 0
    for block in message.content:
        if isinstance(block, TextBlock):
            chars += len(block.text)
        elif isinstance(block, ToolUseBlock):
            chars += len(block.name) + len(json.dumps(block.input))
        elif isinstance(block, ToolResultBlock):
            chars += len(block.content)
    return max(1, chars // CHARS_PER_TOKEN)


class Conversation:
    def __init__(self, messages: Optional[Iterable[Message]] = None) -> None:
        self.messages: List[Message] = list(messages or [])

    @classmethod
    def from_records(cls, records: Iterable[MessageRecord]) -> "Conversation":
        ordered = sorted(records, key=lambda r: r.sequence)
        return cls(r.to_message() for r in ordered)

    def append(self, message: Message) -> None:
        self.messages.append(message)

    def __len__(self) -> int:
        return len(self.messages)

    def estimate_tokens(self) -> int:
        return sum(estimate_tokens(m) for m in self.messages)

    def turn_starts(self) -> List[int]:
        return [
            i
            for i, m in enumerate(self.messages)
            if m.role == Role.USER and not m.tool_results()
        ]

    def trimmed(self, max_tokens: Optional[int]) -> List[Message]:
        """
        Messages to send, dropping the oldest whole turns while over budget.

        The most recent turn is always kept, even if it alone exceeds the budget.
        """
        if not max_tokens or self.estimate_tokens() <= max_tokens:
            return list(self.messages)
        starts = self.turn_starts()
        if not starts:
            return list(self.messages)
        for start in starts:
            window = self.messages[start:]
            if sum(estimate_tokens(m) for m in window) <= max_tokens:
                return list(window)
        return list(self.messages[starts[-1]:])
