# ==============================
# Tool: edit_file
# ==============================
"""
In-place edits of an existing text file.

Operations (field "operation"):
- replace         old_text -> new_text (first occurrence, or all with replace_all)
- replace_lines   start_line..end_line (1-based, inclusive) -> new_text
- insert_line     insert text before line (line = total + 1 appends)
- delete_lines    drop start_line..end_line
- regex_replace   pattern -> replacement over the whole file

A failed edit never touches the file. With create_backup the original is copied
to "<file>.backup" before writing.
"""

from __future__ import annotations

import asyncio
import re
import shutil
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from tiller.contracts.tool_schema import Capability, ToolResult
from tiller.orchestrator.context import ToolExecutionContext
from tiller.tools.base import BaseTool, validation_message

Operation = Literal["replace", "replace_lines", "insert_line", "delete_lines", "regex_replace"]

_REQUIRED: Dict[str, List[str]] = {
    "replace": ["old_text", "new_text"],
    "replace_lines": ["start_line", "end_line", "new_text"],
    "insert_line": ["line", "text"],
    "delete_lines": ["start_line", "end_line"],
    "regex_replace": ["pattern", "replacement"],
}


class EditFileParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = Field(..., min_length=1)
    operation: Operation
    old_text: Optional[str] = Field(default=None, description="replace: exact text to find.")
    new_text: Optional[str] = Field(default=None, description="replace / replace_lines: new text.")
    replace_all: bool = Field(default=False, description="replace: replace every occurrence.")
    start_line: Optional[int] = Field(default=None, ge=1)
    end_line: Optional[int] = Field(default=None, ge=1)
    line: Optional[int] = Field(default=None, ge=1, description="insert_line: 1-based position.")
    text: Optional[str] = Field(default=None, description="insert_line: text to insert.")
    pattern: Optional[str] = Field(default=None, description="regex_replace: Python regular expression.")
    replacement: Optional[str] = Field(default=None)
    create_backup: bool = Field(default=False)

    @model_validator(mode="after")
    def _check_operation_fields(self) -> "EditFileParams":
        missing = [f for f in _REQUIRED[self.operation] if getattr(self, f) is None]
        if missing:
            raise ValueError(f"operation '{self.operation}' requires: {', '.join(missing)}")
        if self.start_line is not None and self.end_line is not None and self.start_line > self.end_line:
            raise ValueError("start_line must be <= end_line")
        if self.operation == "replace" and self.old_text == "":
            raise ValueError("old_text must not be empty")
        return self


class EditError(Exception):
    pass


class EditFileTool(BaseTool):
    name = "edit_file"
    description = (
        "Edit an existing file in place: replace text, replace/insert/delete lines (1-based), "
        "or apply a regex replacement."
    )
    capabilities = frozenset({Capability.READ_FILES, Capability.WRITE_FILES})
    Params = EditFileParams

    def describe_call(self, params: Dict[str, Any]) -> str:
        return f"Edit {params.get('path', '?')} ({params.get('operation', '?')})"

    async def run(self, params: Dict[str, Any], ctx: ToolExecutionContext) -> ToolResult:
        try:
            p = EditFileParams.model_validate(params)
        except ValidationError as exc:
            return self.invalid(validation_message(exc))

        path = ctx.resolve_path(p.path)
        if not path.is_file():
            return self.failed(f"File not found: {p.path}")

        original = await asyncio.to_thread(path.read_text, encoding="utf-8")
        try:
            updated = apply_edit(original, p)
        except re.error as exc:
            return self.invalid(f"Invalid regex: {exc}")
        except EditError as exc:
            return self.failed(str(exc))

        backup: Optional[Path] = None
        if p.create_backup:
            backup = path.with_name(path.name + ".backup")
            await asyncio.to_thread(shutil.copy2, path, backup)
        await asyncio.to_thread(path.write_text, updated, encoding="utf-8")

        before, after = _line_count(original), _line_count(updated)
        return ToolResult.success(
            data={
                "output": f"Successfully edited {path}. Lines: {before} -> {after}",
                "path": str(path),
                "lines_before": before,
                "lines_after": after,
                "backup": str(backup) if backup else None,
            },
            meta=self.meta(),
        )


def apply_edit(content: str, p: EditFileParams) -> str:
    """Pure edit function; raises EditError (or re.error) and leaves content untouched."""
    if p.operation == "replace":
        _require(p, "old_text", "new_text")
        if p.old_text not in content:
            raise EditError("old_text not found in file")
        return content.replace(p.old_text, p.new_text, -1 if p.replace_all else 1)

    if p.operation == "regex_replace":
        _require(p, "pattern", "replacement")
        new, count = re.subn(p.pattern, p.replacement, content, flags=re.MULTILINE)
        if count == 0:
            raise EditError(f"pattern matched nothing: {p.pattern}")
        return new

    lines = content.splitlines(keepends=True)
    total = len(lines)

    if p.operation == "insert_line":
        _require(p, "line", "text")
        if p.line > total + 1:
            raise EditError(f"line {p.line} out of range (file has {total} lines)")
        if lines and not lines[-1].endswith("\n") and p.line == total + 1:
            lines[-1] += "\n"
        lines.insert(p.line - 1, _as_line(p.text))
        return "".join(lines)

    _require(p, "start_line", "end_line")
    if p.end_line > total:
        raise EditError(f"end_line {p.end_line} out of range (file has {total} lines)")
    replacement: List[str] = []
    if p.operation == "replace_lines":
        _require(p, "new_text")
        replacement = [_as_line(p.new_text)] if p.new_text else []
    lines[p.start_line - 1 : p.end_line] = replacement
    return "".join(lines)


def _require(p: EditFileParams, *fields: str) -> None:
    missing = [f for f in fields if getattr(p, f) is None]
    if missing:
        raise EditError(f"operation '{p.operation}' requires: {', '.join(missing)}")


def _as_line(text: str) -> str:
    return text if text.endswith("\n") else text + "\n"


def _line_count(text: str) -> int:
    return len(text.splitlines())


def build() -> EditFileTool:
    return EditFileTool()
