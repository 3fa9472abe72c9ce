# ==============================
# Tool Contracts
# ==============================
"""
Tool contracts for tiller/.

These models define the stable envelope and metadata for tool execution.
No module should invent its own tool result shape; use ToolResult.

Intended usage:
- Tool implementations return ToolResult
- ToolRegistry.execute wraps every failure path in ToolResult.fail(...)
- The agent folds ToolResult into the conversation as a tool-result block
"""

# ==============================
# Imports
# ==============================
from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Generic, Iterable, List, Optional, TypeVar
from uuid import uuid4

from pydantic import BaseModel, Field, ConfigDict, model_validator

# ==============================
# Typing
# ==============================
T = TypeVar("T")


# ==============================
# Enums
# ==============================
class Capability(str, Enum):
    """Permission classes a tool declares."""
    READ_FILES = "read_files"
    WRITE_FILES = "write_files"
    EXECUTE_SHELL = "execute_shell"
    NETWORK = "network"
    SYSTEM_MODIFICATION = "system_modification"
    PLAN_MANAGEMENT = "plan_management"


# Capabilities that mutate state. Tools holding any of them need approval by default
# and are refused in Plan mode.
MUTATING_CAPABILITIES: FrozenSet[Capability] = frozenset(
    {
        Capability.WRITE_FILES,
        Capability.EXECUTE_SHELL,
        Capability.SYSTEM_MODIFICATION,
    }
)


class ToolErrorCode(str, Enum):
    """Standard error codes for tool failures."""
    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"
    PERMISSION_DENIED = "permission_denied"
    APPROVAL_DENIED = "approval_denied"
    TIMEOUT = "timeout"
    EXECUTION_FAILED = "execution_failed"


# ==============================
# Models
# ==============================
class ToolMeta(BaseModel):
    """Metadata describing a tool call and its execution context."""
    model_config = ConfigDict(extra="forbid")

    tool_name: str = Field(..., description="Registered tool name.")
    request_id: str = Field(default_factory=lambda: str(uuid4()), description="Unique id for this tool call.")
    started_at: datetime = Field(default_factory=datetime.utcnow, description="Tool call start timestamp (UTC).")
    ended_at: Optional[datetime] = Field(default=None, description="Tool call end timestamp (UTC).")

    latency_ms: Optional[int] = Field(default=None, description="Measured latency in milliseconds.")
    approved_by: Optional[str] = Field(default=None, description="auto|human when the call passed the approval gate.")

    tags: Dict[str, str] = Field(default_factory=dict, description="Arbitrary tags (session, plan, task, etc.).")


class ToolError(BaseModel):
    """Structured error for tool failures. Errors are data, not control flow."""
    model_config = ConfigDict(extra="forbid")

    code: ToolErrorCode = Field(..., description="Standard tool error code.")
    message: str = Field(..., description="Human readable message.")
    recoverable: bool = Field(default=False, description="Whether the model may succeed with a different call.")
    details: Dict[str, Any] = Field(default_factory=dict, description="Optional structured details (sanitized).")


class ToolEnvelope(BaseModel, Generic[T]):
    """
    Standard envelope for tool results.

    Pattern:
      ok: bool
      data: T | None
      error: ToolError | None
      meta: ToolMeta
    """
    model_config = ConfigDict(extra="forbid")

    ok: bool = Field(..., description="True if tool succeeded.")
    data: Optional[T] = Field(default=None, description="Tool output payload.")
    error: Optional[ToolError] = Field(default=None, description="Tool error if ok=False.")
    meta: ToolMeta = Field(..., description="Tool execution metadata.")

    @model_validator(mode="after")
    def _enforce_error_contract(self) -> "ToolEnvelope[T]":
        if self.ok and self.error is not None:
            raise ValueError("Tool error must be None when ok=True")
        if not self.ok and self.error is None:
            raise ValueError("Tool error is required when ok=False")
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Stable serialization wrapper."""
        return self.model_dump(mode="python")


class ToolResult(ToolEnvelope[Dict[str, Any]]):
    """Concrete envelope used throughout tiller (dict payload)."""

    @classmethod
    def success(cls, data: Optional[Dict[str, Any]] = None, meta: Optional[ToolMeta] = None) -> "ToolResult":
        return cls(ok=True, data=data or {}, error=None, meta=meta or ToolMeta(tool_name="unknown"))

    @classmethod
    def failure(
        cls,
        *,
        code: ToolErrorCode,
        message: str,
        meta: ToolMeta,
        recoverable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ) -> "ToolResult":
        error = ToolError(code=code, message=message, recoverable=recoverable, details=details or {})
        return cls(ok=False, data=None, error=error, meta=meta)

    def to_model_text(self) -> str:
        """
        Render the result as the text the model sees in a tool-result block.

        Success: the "output" text when the tool produced one, otherwise the JSON payload.
        Failure: "<code>: <message>".
        """
        if not self.ok:
            if self.error is None:
                return f"{ToolErrorCode.EXECUTION_FAILED.value}: tool failed without an error record"
            return f"{self.error.code.value}: {self.error.message}"
        data = self.data or {}
        output = data.get("output")
        if isinstance(output, str):
            return output
        return json.dumps(data, ensure_ascii=False, default=str)


class ToolSpec(BaseModel):
    """
    Tool descriptor used for registration and discovery.

    This is not the runtime result; it is metadata about a tool and its contract.
    Immutable once registered.
    """
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(..., description="Unique tool name in registry.")
    description: str = Field(..., description="Short description of what the tool does.")
    input_schema: Dict[str, Any] = Field(default_factory=dict, description="JSON schema of the tool input.")
    capabilities: FrozenSet[Capability] = Field(default_factory=frozenset)
    requires_approval: bool = Field(default=False)

    def mutates(self) -> bool:
        return bool(self.capabilities & MUTATING_CAPABILITIES)

    def to_dict(self) -> Dict[str, Any]:
        """Stable serialization wrapper."""
        data = self.model_dump(mode="json")
        data["capabilities"] = sorted(data["capabilities"])
        return data


def capability_names(capabilities: Iterable[Capability]) -> List[str]:
    return sorted(c.value for c in capabilities)
