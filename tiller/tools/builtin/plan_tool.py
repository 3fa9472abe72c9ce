# ==============================
# Tool: plan
# ==============================
"""
Lets the model build a structured plan for the user to review.

Operations:
- create       start a Draft plan for the session (replaces an older Draft)
- add_task     append a task; dependencies are earlier task orders (1-based)
- update_plan  change plan-level fields of the Draft
- finalize     validate and submit for approval (PendingApproval)
- status       plan status and task progress
- summary      rendered plan

Rules:
- Capability PlanManagement only, so it stays usable in Plan mode. No approval:
  approving the finalized plan is the human gate.
- Only Draft plans can be mutated; engine errors come back as tool errors.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from tiller.contracts.errors import PlanValidationError, TillerError
from tiller.contracts.plan_schema import PlanDocument, PlanStatus, TaskType
from tiller.contracts.tool_schema import Capability, ToolResult
from tiller.orchestrator.context import ToolExecutionContext
from tiller.orchestrator.plan_engine import PlanEngine
from tiller.tools.base import BaseTool, validation_message
from tiller.utils.formatters import render_plan

MAX_TITLE = 200
MAX_TEXT = 5000


class PlanToolParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    operation: Literal["create", "add_task", "update_plan", "finalize", "status", "summary"]
    title: Optional[str] = Field(default=None, min_length=1, max_length=MAX_TITLE)
    description: Optional[str] = Field(default=None, max_length=MAX_TEXT)
    context: Optional[str] = Field(default=None, max_length=MAX_TEXT)
    risks: Optional[List[str]] = None
    test_strategy: Optional[str] = Field(default=None, max_length=MAX_TEXT)
    technical_stack: Optional[List[str]] = None

    task_type: Optional[str] = Field(default=None, description="research|edit|create|delete|test|refactor|documentation|configuration|build|other")
    dependencies: List[int] = Field(default_factory=list, description="Orders (1-based) of earlier tasks.")
    complexity: Optional[int] = Field(default=None, description="1-5; clamped.")
    acceptance_criteria: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_required(self) -> "PlanToolParams":
        if self.operation in ("create", "add_task") and not self.title:
            raise ValueError(f"operation '{self.operation}' requires a title")
        return self


class PlanTool(BaseTool):
    name = "plan"
    description = (
        "Create and manage a structured implementation plan for user review. "
        "Use create, then add_task for each step (dependencies are earlier task numbers), "
        "then finalize to submit the plan for approval."
    )
    capabilities = frozenset({Capability.PLAN_MANAGEMENT})
    Params = PlanToolParams

    def __init__(self, engine: PlanEngine, *, config: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(config=config)
        self.engine = engine

    def requires_approval(self) -> bool:
        return False

    def describe_call(self, params: Dict[str, Any]) -> str:
        return f"plan.{params.get('operation', '?')}"

    async def run(self, params: Dict[str, Any], ctx: ToolExecutionContext) -> ToolResult:
        try:
            p = PlanToolParams.model_validate(params)
        except ValidationError as exc:
            return self.invalid(validation_message(exc))

        try:
            handler = getattr(self, f"_op_{p.operation}")
            return await handler(p, ctx)
        except PlanValidationError as exc:
            return self.failed(f"Plan validation failed: {exc}", kind=exc.kind.value, **exc.details)
        except (TillerError, ValueError) as exc:
            return self.failed(str(exc))

    # ------------------------------
    # Operations
    # ------------------------------

    async def _op_create(self, p: PlanToolParams, ctx: ToolExecutionContext) -> ToolResult:
        if not p.title:
            return self.invalid("operation 'create' requires a title")
        plan = await self.engine.create_draft(
            ctx.session_id,
            title=p.title,
            description=p.description or "",
            context=p.context or "",
            risks=p.risks,
            test_strategy=p.test_strategy or "",
            technical_stack=p.technical_stack,
        )
        return self._ok(f"Created draft plan '{plan.title}'. Add tasks with add_task, then finalize.", plan)

    async def _op_add_task(self, p: PlanToolParams, ctx: ToolExecutionContext) -> ToolResult:
        if not p.title:
            return self.invalid("operation 'add_task' requires a title")
        plan = await self._draft(ctx)
        if plan is None:
            return self.invalid("No draft plan. Call operation 'create' first.")

        order = len(plan.tasks) + 1
        dep_ids: List[str] = []
        for dep in p.dependencies:
            if dep < 1 or dep >= order:
                return self.invalid(
                    f"Invalid dependency {dep}: must reference an earlier task (1..{order - 1})",
                    dependency=dep,
                )
            target = plan.task_by_order(dep)
            if target is None:
                return self.invalid(f"Task {dep} does not exist", dependency=dep)
            dep_ids.append(target.id)

        try:
            task_type = TaskType((p.task_type or "other").strip().lower())
        except ValueError:
            return self.invalid(f"Unknown task_type: {p.task_type}", allowed=[t.value for t in TaskType])

        task = await self.engine.add_task(
            plan.id,
            title=p.title,
            description=p.description or "",
            task_type=task_type,
            dependencies=dep_ids,
            complexity=_clamp(p.complexity),
            acceptance_criteria=p.acceptance_criteria,
        )
        plan = await self.engine.get_plan(plan.id)
        return self._ok(f"Added task {task.order}: {task.title}", plan, task_id=task.id, task_order=task.order)

    async def _op_update_plan(self, p: PlanToolParams, ctx: ToolExecutionContext) -> ToolResult:
        plan = await self._draft(ctx)
        if plan is None:
            return self.invalid("No draft plan to update.")
        plan = await self.engine.update_draft(
            plan.id,
            title=p.title,
            description=p.description,
            context=p.context,
            risks=p.risks,
            test_strategy=p.test_strategy,
            technical_stack=p.technical_stack,
        )
        return self._ok("Plan updated.", plan)

    async def _op_finalize(self, p: PlanToolParams, ctx: ToolExecutionContext) -> ToolResult:
        plan = await self._draft(ctx)
        if plan is None:
            return self.invalid("No draft plan to finalize.")
        plan = await self.engine.finalize(plan.id)
        return self._ok(
            f"Plan '{plan.title}' with {len(plan.tasks)} task(s) submitted and awaiting user approval.",
            plan,
        )

    async def _op_status(self, p: PlanToolParams, ctx: ToolExecutionContext) -> ToolResult:
        plan = await self.engine.get_active_plan(ctx.session_id)
        if plan is None:
            return self.failed("No active plan for this session.")
        progress = plan.progress()
        return self._ok(
            f"Plan '{plan.title}' is {plan.status.value}: {progress['done']}/{progress['total']} tasks done.",
            plan,
        )

    async def _op_summary(self, p: PlanToolParams, ctx: ToolExecutionContext) -> ToolResult:
        plan = await self.engine.get_active_plan(ctx.session_id)
        if plan is None:
            return self.failed("No active plan for this session.")
        return self._ok(render_plan(plan), plan)

    # ------------------------------
    # Helpers
    # ------------------------------

    async def _draft(self, ctx: ToolExecutionContext) -> Optional[PlanDocument]:
        plan = await self.engine.get_active_plan(ctx.session_id)
        if plan is None or plan.status != PlanStatus.DRAFT:
            return None
        return plan

    def _ok(self, output: str, plan: PlanDocument, **extra: Any) -> ToolResult:
        return ToolResult.success(
            data={
                "output": output,
                "plan_id": plan.id,
                "status": plan.status.value,
                "progress": plan.progress(),
                **extra,
            },
            meta=self.meta(),
        )


def _clamp(complexity: Optional[int]) -> int:
    if complexity is None:
        return 3
    return max(1, min(5, complexity))


def build(engine: PlanEngine) -> PlanTool:
    return PlanTool(engine)
