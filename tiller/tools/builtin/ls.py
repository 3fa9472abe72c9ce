# ==============================
# Tool: ls
# ==============================
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tiller.contracts.tool_schema import Capability, ToolResult
from tiller.orchestrator.context import ToolExecutionContext
from tiller.tools.base import BaseTool, validation_message

MAX_ENTRIES = 1000


class LsParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = Field(default=".", description="Directory to list.")
    all: bool = Field(default=False, description="Include hidden entries.")
    recursive: bool = Field(default=False)


class LsTool(BaseTool):
    name = "ls"
    description = "List directory contents. Directories are suffixed with '/'."
    capabilities = frozenset({Capability.READ_FILES})
    Params = LsParams

    async def run(self, params: Dict[str, Any], ctx: ToolExecutionContext) -> ToolResult:
        try:
            p = LsParams.model_validate(params)
        except ValidationError as exc:
            return self.invalid(validation_message(exc))

        root = ctx.resolve_path(p.path)
        if not root.exists():
            return self.failed(f"Path not found: {p.path}")
        if not root.is_dir():
            return self.invalid(f"Not a directory: {p.path}")

        entries = await asyncio.to_thread(_list, root, p.all, p.recursive)
        truncated = len(entries) > MAX_ENTRIES
        entries = entries[:MAX_ENTRIES]
        return ToolResult.success(
            data={
                "output": "\n".join(entries) if entries else "(empty)",
                "path": str(root),
                "count": len(entries),
                "truncated": truncated,
            },
            meta=self.meta(),
        )


def _list(root: Path, show_hidden: bool, recursive: bool) -> List[str]:
    out: List[str] = []
    iterator = root.rglob("*") if recursive else root.iterdir()
    for entry in sorted(iterator):
        rel = entry.relative_to(root)
        if not show_hidden and any(part.startswith(".") for part in rel.parts):
            continue
        out.append(f"{rel.as_posix()}/" if entry.is_dir() else rel.as_posix())
        if len(out) > MAX_ENTRIES:
            break
    return out


def build() -> LsTool:
    return LsTool()
