# ==============================
# Tool Registry
# ==============================
"""
Name-addressed tool registry and the single execution path for tool calls.

Design:
- Registry stores name -> tool instance; duplicate names are refused.
- execute(...) is the only way a tool body runs. Order of checks:
    1. unknown name                       -> not_found
    2. policy allow/deny lists            -> permission_denied
    3. Plan mode gate (capabilities, or the shell classifier for shell tools)
                                          -> permission_denied
    4. approval (requires_approval and not auto_approve)
                                          -> approval_denied
    5. tool body bounded by ctx.timeout_seconds
                                          -> timeout | execution_failed
- Every failure is returned as a ToolResult, never raised. Timeouts are not retried here.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from tiller.contracts.event_schema import ToolExecuted
from tiller.contracts.llm_schema import ToolDefinition
from tiller.contracts.tool_schema import ToolErrorCode, ToolMeta, ToolResult, ToolSpec
from tiller.events.bus import EventBus
from tiller.governance.policies import PLAN_MODE_DENIED, PolicyEngine
from tiller.governance.security import SecurityRedactor
from tiller.orchestrator.approval import ApprovalGate
from tiller.orchestrator.context import ToolExecutionContext
from tiller.tools.base import BaseTool

logger = logging.getLogger("tiller.tools")

APPROVAL_DENIED_MESSAGE = "User denied permission to execute this tool"
NO_APPROVAL_MECHANISM = "Tool requires approval but no approval mechanism configured"


class ToolRegistry:
    def __init__(
        self,
        *,
        policy: Optional[PolicyEngine] = None,
        gate: Optional[ApprovalGate] = None,
        bus: Optional[EventBus] = None,
        redactor: Optional[SecurityRedactor] = None,
    ) -> None:
        self.policy = policy or PolicyEngine()
        self.gate = gate
        self.bus = bus
        self.redactor = redactor or SecurityRedactor()
        self._tools: Dict[str, BaseTool] = {}

    # ------------------------------
    # Registration
    # ------------------------------

    def register(self, tool: BaseTool) -> None:
        norm = _norm(tool.name)
        if norm in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[norm] = tool

    def get(self, name: str) -> Optional[BaseTool]:
        return self._tools.get(_norm(name))

    def has(self, name: str) -> bool:
        return _norm(name) in self._tools

    def names(self) -> List[str]:
        return sorted(self._tools)

    def specs(self) -> List[ToolSpec]:
        return [self._tools[n].spec() for n in self.names()]

    def list(self) -> Dict[str, Dict[str, Any]]:
        return {s.name: s.to_dict() for s in self.specs()}

    def tool_definitions(self) -> List[ToolDefinition]:
        return [
            ToolDefinition(name=s.name, description=s.description, input_schema=s.input_schema)
            for s in self.specs()
        ]

    # ------------------------------
    # Execution
    # ------------------------------

    async def execute(self, name: str, tool_input: Dict[str, Any], ctx: ToolExecutionContext) -> ToolResult:
        tool = self.get(name)
        if tool is None:
            return self._finish(
                ctx,
                ToolResult.failure(
                    code=ToolErrorCode.NOT_FOUND,
                    message=f"Unknown tool: {name}",
                    meta=ToolMeta(tool_name=name, tags=_tags(ctx)),
                    recoverable=True,
                    details={"available": self.names()},
                ),
            )

        spec = tool.spec()
        meta = ToolMeta(tool_name=spec.name, tags=_tags(ctx))
        params = dict(tool_input or {})

        decision = self.policy.evaluate_tool_call(spec=spec)
        if not decision.allow:
            return self._finish(
                ctx,
                ToolResult.failure(
                    code=ToolErrorCode.PERMISSION_DENIED,
                    message=f"Tool '{spec.name}' is not allowed ({decision.reason})",
                    meta=meta,
                    details=decision.details,
                ),
            )

        decision = self.policy.evaluate_mode(spec=spec, mode=ctx.mode, shell_command=tool.shell_command(params))
        if not decision.allow:
            message = PLAN_MODE_DENIED
            if "command" in decision.details:
                message = f"{PLAN_MODE_DENIED}: only read-only commands without redirection or pipes may run"
            return self._finish(
                ctx,
                ToolResult.failure(
                    code=ToolErrorCode.PERMISSION_DENIED,
                    message=message,
                    meta=meta,
                    recoverable=True,
                    details={"reason": decision.reason, **decision.details},
                ),
            )

        if spec.requires_approval and not ctx.auto_approve:
            if self.gate is None:
                return self._finish(
                    ctx,
                    ToolResult.failure(code=ToolErrorCode.APPROVAL_DENIED, message=NO_APPROVAL_MECHANISM, meta=meta),
                )
            response = await self.gate.request_approval(
                ctx=ctx,
                spec=spec,
                tool_input=self.redactor.redact_dict(params),
                description=tool.describe_call(params),
            )
            if not response.approved:
                message = APPROVAL_DENIED_MESSAGE
                if response.reason:
                    message = f"{message}: {response.reason}"
                return self._finish(
                    ctx,
                    ToolResult.failure(
                        code=ToolErrorCode.APPROVAL_DENIED,
                        message=message,
                        meta=meta,
                        recoverable=True,
                        details={"decided_by": response.decided_by},
                    ),
                )
            meta = meta.model_copy(update={"approved_by": response.decided_by})
        elif spec.requires_approval:
            meta = meta.model_copy(update={"approved_by": "auto"})

        return self._finish(ctx, await self._run(tool, params, ctx, meta))

    async def _run(
        self,
        tool: BaseTool,
        params: Dict[str, Any],
        ctx: ToolExecutionContext,
        meta: ToolMeta,
    ) -> ToolResult:
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(tool.run(params, ctx), timeout=ctx.timeout_seconds)
        except asyncio.TimeoutError:
            result = ToolResult.failure(
                code=ToolErrorCode.TIMEOUT,
                message=f"Tool '{tool.name}' timed out after {ctx.timeout_seconds:g}s",
                meta=meta,
            )
        except Exception as exc:
            logger.exception("tool raised", extra={"session_id": ctx.session_id, "tool": tool.name})
            result = ToolResult.failure(
                code=ToolErrorCode.EXECUTION_FAILED,
                message=str(exc) or type(exc).__name__,
                meta=meta,
                details={"exception_type": type(exc).__name__},
            )

        latency_ms = int((time.perf_counter() - started) * 1000)
        merged = result.meta.model_copy(
            update={
                "request_id": meta.request_id,
                "started_at": meta.started_at,
                "ended_at": datetime.utcnow(),
                "latency_ms": latency_ms,
                "approved_by": meta.approved_by,
                "tags": {**meta.tags, **result.meta.tags},
            }
        )
        return result.model_copy(update={"meta": merged})

    def _finish(self, ctx: ToolExecutionContext, result: ToolResult) -> ToolResult:
        error_code = result.error.code.value if result.error else None
        logger.info(
            "tool %s %s",
            result.meta.tool_name,
            "ok" if result.ok else f"failed ({error_code})",
            extra={"session_id": ctx.session_id, "plan_id": ctx.plan_id, "task_id": ctx.task_id, "tool": result.meta.tool_name},
        )
        if self.bus is not None:
            self.bus.publish(
                ToolExecuted(
                    session_id=ctx.session_id,
                    tool_name=result.meta.tool_name,
                    ok=result.ok,
                    latency_ms=result.meta.latency_ms,
                    error_code=error_code,
                )
            )
        return result


def _tags(ctx: ToolExecutionContext) -> Dict[str, str]:
    tags = {"session_id": ctx.session_id, "mode": ctx.mode.value}
    if ctx.plan_id:
        tags["plan_id"] = ctx.plan_id
    if ctx.task_id:
        tags["task_id"] = ctx.task_id
    return tags


def _norm(name: str) -> str:
    return name.strip().lower().replace(" ", "_")
