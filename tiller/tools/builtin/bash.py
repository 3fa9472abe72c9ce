# ==============================
# Tool: bash
# ==============================
"""
Run a shell command in the working directory.

Rules:
- Always requires approval (outside auto-approve).
- In Plan mode the registry hands the raw command to the read-only classifier
  before this tool is ever invoked.
- The subprocess is killed if its own timeout elapses or the call is cancelled.
"""

from __future__ import annotations

import asyncio
import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tiller.contracts.tool_schema import Capability, ToolErrorCode, ToolResult
from tiller.orchestrator.context import ToolExecutionContext
from tiller.tools.base import BaseTool, validation_message

MAX_OUTPUT_CHARS = 30_000


class BashParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    command: str = Field(..., min_length=1, description="Shell command to run.")
    timeout: Optional[float] = Field(default=None, gt=0, le=600, description="Seconds before the command is killed.")


class BashTool(BaseTool):
    name = "bash"
    description = "Execute a shell command in the working directory and return stdout, stderr and exit code."
    capabilities = frozenset({Capability.EXECUTE_SHELL, Capability.SYSTEM_MODIFICATION})
    Params = BashParams

    def requires_approval(self) -> bool:
        return True

    def shell_command(self, params: Dict[str, Any]) -> Optional[str]:
        command = (params or {}).get("command")
        return command if isinstance(command, str) else ""

    def describe_call(self, params: Dict[str, Any]) -> str:
        return f"Run: {params.get('command', '')}"

    async def run(self, params: Dict[str, Any], ctx: ToolExecutionContext) -> ToolResult:
        try:
            p = BashParams.model_validate(params)
        except ValidationError as exc:
            return self.invalid(validation_message(exc))

        env = {**os.environ, **ctx.env}
        proc = await asyncio.create_subprocess_shell(
            p.command,
            cwd=str(ctx.working_directory),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=p.timeout)
        except asyncio.TimeoutError:
            await _kill(proc)
            return ToolResult.failure(
                code=ToolErrorCode.TIMEOUT,
                message=f"Command timed out after {p.timeout:g}s",
                meta=self.meta(),
                recoverable=True,
            )
        except asyncio.CancelledError:
            await _kill(proc)
            raise

        out = _clip(stdout.decode("utf-8", errors="replace"))
        err = _clip(stderr.decode("utf-8", errors="replace"))
        code = proc.returncode
        data = {
            "output": _render(out, err, code),
            "stdout": out,
            "stderr": err,
            "exit_code": code,
        }
        if code != 0:
            return ToolResult.failure(
                code=ToolErrorCode.EXECUTION_FAILED,
                message=f"Command exited with code {code}\n{_render(out, err, code)}",
                meta=self.meta(),
                recoverable=True,
                details={"exit_code": code},
            )
        return ToolResult.success(data=data, meta=self.meta())


async def _kill(proc: "asyncio.subprocess.Process") -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()


def _clip(text: str) -> str:
    if len(text) <= MAX_OUTPUT_CHARS:
        return text
    return text[:MAX_OUTPUT_CHARS] + f"\n... [truncated {len(text) - MAX_OUTPUT_CHARS} chars]"


def _render(out: str, err: str, code: Optional[int]) -> str:
    parts = []
    if out:
        parts.append(out.rstrip("\n"))
    if err:
        parts.append(f"[stderr]\n{err.rstrip(chr(10))}")
    if not parts:
        parts.append(f"(no output, exit code {code})")
    return "\n".join(parts)


def build() -> BashTool:
    return BashTool()
