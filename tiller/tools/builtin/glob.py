# ==============================
# Tool: glob
# ==============================
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tiller.contracts.tool_schema import Capability, ToolResult
from tiller.orchestrator.context import ToolExecutionContext
from tiller.tools.base import BaseTool, validation_message


class GlobParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pattern: str = Field(..., min_length=1, description="Glob pattern, e.g. '**/*.py'.")
    path: str = Field(default=".", description="Directory to search from.")
    max_results: int = Field(default=200, ge=1, le=5000)
    include_hidden: bool = Field(default=False)


class GlobTool(BaseTool):
    name = "glob"
    description = "Find files by glob pattern, relative to a directory."
    capabilities = frozenset({Capability.READ_FILES})
    Params = GlobParams

    async def run(self, params: Dict[str, Any], ctx: ToolExecutionContext) -> ToolResult:
        try:
            p = GlobParams.model_validate(params)
        except ValidationError as exc:
            return self.invalid(validation_message(exc))

        root = ctx.resolve_path(p.path)
        if not root.is_dir():
            return self.failed(f"Directory not found: {p.path}")
        if Path(p.pattern).is_absolute():
            return self.invalid("pattern must be relative to path")

        matches = await asyncio.to_thread(_glob, root, p.pattern, p.include_hidden, p.max_results + 1)
        truncated = len(matches) > p.max_results
        matches = matches[: p.max_results]
        return ToolResult.success(
            data={
                "output": "\n".join(matches) if matches else "No files matched.",
                "matches": matches,
                "truncated": truncated,
            },
            meta=self.meta(),
        )


def _glob(root: Path, pattern: str, include_hidden: bool, limit: int) -> List[str]:
    out: List[str] = []
    for match in sorted(root.glob(pattern)):
        rel = match.relative_to(root)
        if not include_hidden and any(part.startswith(".") for part in rel.parts):
            continue
        out.append(rel.as_posix())
        if len(out) >= limit:
            break
    return out


def build() -> GlobTool:
    return GlobTool()
