# ==============================
# Tool: write_file
# ==============================
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tiller.contracts.tool_schema import Capability, ToolResult
from tiller.orchestrator.context import ToolExecutionContext
from tiller.tools.base import BaseTool, validation_message


class WriteFileParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = Field(..., min_length=1, description="File to write, relative to the working directory.")
    content: str = Field(..., description="Full new file content.")
    create_dirs: bool = Field(default=True, description="Create missing parent directories.")


class WriteFileTool(BaseTool):
    name = "write_file"
    description = "Create or overwrite a file with the given content."
    capabilities = frozenset({Capability.WRITE_FILES, Capability.SYSTEM_MODIFICATION})
    Params = WriteFileParams

    def describe_call(self, params: Dict[str, Any]) -> str:
        content = params.get("content") or ""
        return f"Write {len(content)} chars to {params.get('path', '?')}"

    async def run(self, params: Dict[str, Any], ctx: ToolExecutionContext) -> ToolResult:
        try:
            p = WriteFileParams.model_validate(params)
        except ValidationError as exc:
            return self.invalid(validation_message(exc))

        path = ctx.resolve_path(p.path)
        if path.is_dir():
            return self.invalid(f"Path is a directory: {p.path}")
        if not path.parent.exists() and not p.create_dirs:
            return self.failed(f"Parent directory does not exist: {path.parent}")

        existed = path.exists()
        await asyncio.to_thread(_write_text, path, p.content, p.create_dirs)
        verb = "Overwrote" if existed else "Created"
        return ToolResult.success(
            data={
                "output": f"{verb} {path} ({len(p.content.encode('utf-8'))} bytes)",
                "path": str(path),
                "created": not existed,
            },
            meta=self.meta(),
        )


def _write_text(path: Path, content: str, create_dirs: bool) -> None:
    if create_dirs:
        path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def build() -> WriteFileTool:
    return WriteFileTool()
