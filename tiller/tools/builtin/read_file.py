# ==============================
# Tool: read_file
# ==============================
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tiller.contracts.tool_schema import Capability, ToolResult
from tiller.orchestrator.context import ToolExecutionContext
from tiller.tools.base import BaseTool, validation_message

MAX_FILE_BYTES = 10 * 1024 * 1024
DEFAULT_LINE_COUNT = 2000


class ReadFileParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = Field(..., min_length=1, description="File to read, relative to the working directory.")
    start_line: Optional[int] = Field(default=None, ge=1, description="1-based first line to return.")
    line_count: Optional[int] = Field(default=None, ge=1, description="Number of lines to return.")


class ReadFileTool(BaseTool):
    name = "read_file"
    description = "Read a text file. Returns numbered lines; use start_line/line_count for large files."
    capabilities = frozenset({Capability.READ_FILES})
    Params = ReadFileParams

    def describe_call(self, params: Dict[str, Any]) -> str:
        return f"Read {params.get('path', '?')}"

    async def run(self, params: Dict[str, Any], ctx: ToolExecutionContext) -> ToolResult:
        try:
            p = ReadFileParams.model_validate(params)
        except ValidationError as exc:
            return self.invalid(validation_message(exc))

        path = ctx.resolve_path(p.path)
        if not path.exists():
            return self.failed(f"File not found: {p.path}")
        if not path.is_file():
            return self.invalid(f"Not a file: {p.path}")
        if path.stat().st_size > MAX_FILE_BYTES:
            return self.invalid(f"File too large (> {MAX_FILE_BYTES} bytes): {p.path}")

        text = await asyncio.to_thread(_read_text, path)
        lines = text.splitlines()
        start = (p.start_line or 1) - 1
        count = p.line_count or DEFAULT_LINE_COUNT
        window = lines[start : start + count]
        numbered = "\n".join(f"{start + i + 1:6d}\t{line}" for i, line in enumerate(window))

        return ToolResult.success(
            data={
                "output": numbered,
                "path": str(path),
                "total_lines": len(lines),
                "start_line": start + 1,
                "returned_lines": len(window),
            },
            meta=self.meta(),
        )


def _read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="replace")


def build() -> ReadFileTool:
    return ReadFileTool()
