# ==============================
# Tool: grep
# ==============================
"""
Text search across files under a directory (or a single file).

Output lines look like "<path>:<line>:<text>"; context lines use '-' instead of ':'.
Binary files and files over MAX_FILE_BYTES are skipped.
"""

from __future__ import annotations

import asyncio
import fnmatch
import re
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tiller.contracts.tool_schema import Capability, ToolResult
from tiller.orchestrator.context import ToolExecutionContext
from tiller.tools.base import BaseTool, validation_message

MAX_FILE_BYTES = 2 * 1024 * 1024
SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", "target", "dist", "build"}


class GrepParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pattern: str = Field(..., min_length=1)
    path: str = Field(default=".")
    regex: bool = Field(default=False, description="Treat pattern as a regular expression.")
    case_insensitive: bool = Field(default=False)
    file_pattern: Optional[str] = Field(default=None, description="Only search files matching this glob, e.g. '*.py'.")
    context: int = Field(default=0, ge=0, le=10, description="Lines of context around each match.")
    max_results: int = Field(default=100, ge=1, le=2000)


class GrepTool(BaseTool):
    name = "grep"
    description = "Search file contents for a literal string or regular expression."
    capabilities = frozenset({Capability.READ_FILES})
    Params = GrepParams

    async def run(self, params: Dict[str, Any], ctx: ToolExecutionContext) -> ToolResult:
        try:
            p = GrepParams.model_validate(params)
        except ValidationError as exc:
            return self.invalid(validation_message(exc))

        flags = re.IGNORECASE if p.case_insensitive else 0
        try:
            compiled = re.compile(p.pattern if p.regex else re.escape(p.pattern), flags)
        except re.error as exc:
            return self.invalid(f"Invalid regex: {exc}")

        root = ctx.resolve_path(p.path)
        if not root.exists():
            return self.failed(f"Path not found: {p.path}")

        lines, match_count, truncated = await asyncio.to_thread(_search, root, compiled, p)
        return ToolResult.success(
            data={
                "output": "\n".join(lines) if lines else "No matches found.",
                "matches": match_count,
                "truncated": truncated,
            },
            meta=self.meta(),
        )


def _files(root: Path, file_pattern: Optional[str]) -> Iterator[Path]:
    if root.is_file():
        yield root
        return
    for path in sorted(root.rglob("*")):
        if any(part in SKIP_DIRS for part in path.relative_to(root).parts):
            continue
        if not path.is_file():
            continue
        if file_pattern and not fnmatch.fnmatch(path.name, file_pattern):
            continue
        yield path


def _read(path: Path) -> Optional[str]:
    try:
        if path.stat().st_size > MAX_FILE_BYTES:
            return None
        raw = path.read_bytes()
    except OSError:
        return None
    if b"\x00" in raw[:8192]:
        return None
    return raw.decode("utf-8", errors="replace")


def _search(root: Path, compiled: "re.Pattern[str]", p: GrepParams) -> "tuple[List[str], int, bool]":
    out: List[str] = []
    matches = 0
    base = root if root.is_dir() else root.parent
    for path in _files(root, p.file_pattern):
        text = _read(path)
        if text is None:
            continue
        lines = text.splitlines()
        shown: set = set()
        rel = path.relative_to(base).as_posix()
        for idx, line in enumerate(lines):
            if not compiled.search(line):
                continue
            matches += 1
            if matches > p.max_results:
                return out, p.max_results, True
            lo, hi = max(0, idx - p.context), min(len(lines), idx + p.context + 1)
            for j in range(lo, hi):
                if j in shown:
                    continue
                shown.add(j)
                sep = ":" if j == idx else "-"
                out.append(f"{rel}{sep}{j + 1}{sep}{lines[j]}")
    return out, matches, False


def build() -> GrepTool:
    return GrepTool()
