# ==============================
# LLM Contracts
# ==============================
"""
Provider-neutral conversation contracts.

The orchestrator only ever speaks these shapes. Providers translate them to and
from their own wire formats inside tiller/models/providers/.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ==============================
# Enums
# ==============================
class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class StopReason(str, Enum):
    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"


# ==============================
# Content Blocks
# ==============================
class TextBlock(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = Annotated[Union[TextBlock, ToolUseBlock, ToolResultBlock], Field(discriminator="type")]


class Message(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: Role
    content: List[ContentBlock] = Field(default_factory=list)

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role=Role.USER, content=[TextBlock(text=text)])

    @classmethod
    def assistant(cls, text: str) -> "Message":
        return cls(role=Role.ASSISTANT, content=[TextBlock(text=text)])

    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    def tool_uses(self) -> List[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    def tool_results(self) -> List[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]


# ==============================
# Requests / Responses
# ==============================
class TokenUsage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class ToolDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    description: str
    input_schema: Dict[str, Any] = Field(default_factory=dict)


class LLMRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    model: str
    messages: List[Message] = Field(default_factory=list)
    system: Optional[str] = None
    tools: List[ToolDefinition] = Field(default_factory=list)
    max_tokens: int = 4096
    temperature: float = 0.2
    stream: bool = False


class LLMResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = ""
    model: str
    content: List[ContentBlock] = Field(default_factory=list)
    stop_reason: Optional[StopReason] = None
    usage: TokenUsage = Field(default_factory=TokenUsage)

    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    def tool_uses(self) -> List[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    def to_message(self) -> Message:
        return Message(role=Role.ASSISTANT, content=list(self.content))


# ==============================
# Streaming
# ==============================
class StreamEventKind(str, Enum):
    TEXT_DELTA = "text_delta"
    TOOL_USE = "tool_use"
    USAGE = "usage"
    STOP = "stop"


class StreamEvent(BaseModel):
    """
    A single streamed increment.

    Tool uses are delivered whole (providers buffer partial JSON arguments).
    """
    model_config = ConfigDict(extra="forbid")

    kind: StreamEventKind
    text: Optional[str] = None
    tool_use: Optional[ToolUseBlock] = None
    usage: Optional[TokenUsage] = None
    stop_reason: Optional[StopReason] = None
    response_id: Optional[str] = None


class StreamAccumulator:
    """Folds StreamEvents back into an LLMResponse."""

    def __init__(self, *, model: str) -> None:
        self.model = model
        self.response_id = ""
        self._text: List[str] = []
        self._blocks: List[Any] = []
        self.usage = TokenUsage()
        self.stop_reason: Optional[StopReason] = None

    def add(self, event: StreamEvent) -> None:
        if event.response_id:
            self.response_id = event.response_id
        if event.kind == StreamEventKind.TEXT_DELTA and event.text:
            self._text.append(event.text)
        elif event.kind == StreamEventKind.TOOL_USE and event.tool_use is not None:
            self._flush_text()
            self._blocks.append(event.tool_use)
        elif event.kind == StreamEventKind.USAGE and event.usage is not None:
            self.usage = TokenUsage(
                input_tokens=self.usage.input_tokens + event.usage.input_tokens,
                output_tokens=self.usage.output_tokens + event.usage.output_tokens,
            )
        elif event.kind == StreamEventKind.STOP:
            self.stop_reason = event.stop_reason

    def _flush_text(self) -> None:
        if self._text:
            self._blocks.append(TextBlock(text="".join(self._text)))
            self._text = []

    def build(self) -> LLMResponse:
        self._flush_text()
        stop = self.stop_reason
        if stop is None:
            has_tools = any(isinstance(b, ToolUseBlock) for b in self._blocks)
            stop = StopReason.TOOL_USE if has_tools else StopReason.END_TURN
        return LLMResponse(
            id=self.response_id,
            model=self.model,
            content=list(self._blocks),
            stop_reason=stop,
            usage=self.usage,
        )
