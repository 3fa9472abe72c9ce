# ==============================
# Session Contracts
# ==============================
"""
Persisted conversation records.

A session owns an ordered list of messages. Every message is persisted as soon as it
is produced, with its own token and cost accounting.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from tiller.contracts.llm_schema import ContentBlock, Message, Role


class SessionRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str = Field(default_factory=lambda: str(uuid4()))
    title: Optional[str] = None
    model: Optional[str] = None
    working_directory: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    total_tokens: int = 0
    total_cost: float = 0.0


class MessageRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    message_id: str = Field(default_factory=lambda: str(uuid4()))
    session_id: str
    sequence: int = Field(..., ge=0)
    role: Role
    content: List[ContentBlock] = Field(default_factory=list)

    model: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0

    created_at: datetime = Field(default_factory=datetime.utcnow)

    def to_message(self) -> Message:
        return Message(role=self.role, content=list(self.content))
