# ==============================
# Base Tool Contract
# ==============================
"""
Base tool contract for tiller/.

Rules:
- Tools are executed ONLY through ToolRegistry.execute (gates, approval, timeout).
- Tools do not read env vars directly. Config is injected.
- Tools return ToolResult from tiller/contracts/tool_schema.py (standard envelope).
- Input is validated with the tool's pydantic Params model; its JSON schema is what the
  model sees.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, FrozenSet, Optional, Type

from pydantic import BaseModel, ValidationError

from tiller.contracts.tool_schema import (
    MUTATING_CAPABILITIES,
    Capability,
    ToolErrorCode,
    ToolMeta,
    ToolResult,
    ToolSpec,
)
from tiller.orchestrator.context import ToolExecutionContext


class BaseTool(ABC):
    """
    Base class for all tools.

    Naming:
    - Each concrete tool must provide a stable 'name' the model calls it by.
    """

    name: str
    description: str = ""
    capabilities: FrozenSet[Capability] = frozenset()
    Params: Optional[Type[BaseModel]] = None

    def __init__(self, *, config: Optional[Dict[str, Any]] = None) -> None:
        self.config = config or {}

    def requires_approval(self) -> bool:
        """Default: anything that can mutate state needs a human."""
        return bool(self.capabilities & MUTATING_CAPABILITIES)

    def input_schema(self) -> Dict[str, Any]:
        if self.Params is None:
            return {"type": "object", "properties": {}}
        schema = self.Params.model_json_schema()
        schema.pop("title", None)
        return schema

    def spec(self) -> ToolSpec:
        return ToolSpec(
            name=self.name,
            description=self.description,
            input_schema=self.input_schema(),
            capabilities=frozenset(self.capabilities),
            requires_approval=self.requires_approval(),
        )

    def shell_command(self, params: Dict[str, Any]) -> Optional[str]:
        """Shell-executing tools return the raw command so Plan mode can classify it."""
        return None

    def describe_call(self, params: Dict[str, Any]) -> str:
        """One-line human description used in approval prompts."""
        return self.description

    def meta(self) -> ToolMeta:
        return ToolMeta(tool_name=self.name)

    def invalid(self, message: str, **details: Any) -> ToolResult:
        return ToolResult.failure(
            code=ToolErrorCode.INVALID_INPUT,
            message=message,
            meta=self.meta(),
            recoverable=True,
            details=details,
        )

    def failed(self, message: str, **details: Any) -> ToolResult:
        return ToolResult.failure(
            code=ToolErrorCode.EXECUTION_FAILED,
            message=message,
            meta=self.meta(),
            recoverable=True,
            details=details,
        )

    def parse(self, params: Dict[str, Any]) -> BaseModel:
        """Validate params; raises pydantic.ValidationError."""
        if self.Params is None:
            raise TypeError(f"{type(self).__name__} declares no Params model")
        return self.Params.model_validate(params or {})

    @abstractmethod
    async def run(self, params: Dict[str, Any], ctx: ToolExecutionContext) -> ToolResult:
        """
        Execute the tool.

        params:
        - raw model-supplied input; validate with self.parse(...)

        ctx:
        - session, working directory, mode, timeout
        """
        raise NotImplementedError


def validation_message(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(x) for x in err.get("loc", ())) or "input"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts) or "invalid input"
