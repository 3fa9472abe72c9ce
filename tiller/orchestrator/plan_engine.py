# ==============================
# Plan Engine
# ==============================
"""
Lifecycle owner for structured task plans.

Lifecycle:
  Draft --finalize--> PendingApproval --approve--> Approved -> InProgress --> Completed
                                      --reject---> Rejected
  Draft | PendingApproval | InProgress (idle) --cancel--> Cancelled

Rules:
- finalize validates the graph (plan_graph.validate_plan); on failure the plan stays Draft.
- At most one PendingApproval plan per session.
- approve applies Approved -> InProgress as a single persisted write, then runs the plan.
- Tasks run one at a time, lowest order first among the runnable set, each as a synthetic
  Chat-mode agent turn.
- A failed task is marked Failed and every transitive dependent Blocked; independent
  branches keep running. A skipped task blocks its dependents the same way, since only a
  Completed dependency releases a task. The plan completes only when every task is
  Completed or Skipped.
- Every status transition is persisted (store first, then the JSON snapshot) and
  published on the bus before the next step proceeds.
- One executing plan per session (PlanBusyError otherwise); sessions are independent.
- resume(...) re-runs tasks left InProgress by an interrupted process from Pending.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Set

from pydantic import ValidationError

from tiller.contracts.errors import PlanBusyError, PlanExecutionError, PlanNotFoundError, PlanStateError
from tiller.contracts.event_schema import PlanStatusChanged, TaskStatusChanged
from tiller.contracts.plan_schema import PlanDocument, PlanStatus, PlanTask, TaskStatus, TaskType
from tiller.events.bus import EventBus
from tiller.memory.router import MemoryRouter
from tiller.memory.snapshot import PlanSnapshotStore, SnapshotPathError
from tiller.orchestrator.agent import AgentOrchestrator
from tiller.orchestrator.context import AppMode
from tiller.orchestrator.plan_graph import dependents_closure, runnable_tasks, validate_plan

logger = logging.getLogger("tiller.plan")

NOTES_CHARS = 2000
DRAFT_FIELDS = frozenset({"title", "description", "context", "risks", "test_strategy", "technical_stack"})
CANCELLABLE = frozenset({PlanStatus.DRAFT, PlanStatus.PENDING_APPROVAL, PlanStatus.APPROVED, PlanStatus.IN_PROGRESS})
ACTIVE = frozenset({PlanStatus.DRAFT, PlanStatus.PENDING_APPROVAL, PlanStatus.APPROVED, PlanStatus.IN_PROGRESS})


class PlanEngine:
    def __init__(
        self,
        *,
        agent: AgentOrchestrator,
        memory: MemoryRouter,
        snapshots: Optional[PlanSnapshotStore] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.agent = agent
        self.memory = memory
        self.snapshots = snapshots
        self.bus = bus
        self._executing: Set[str] = set()

    # ------------------------------
    # Lookups
    # ------------------------------

    async def get_plan(self, plan_id: str) -> PlanDocument:
        plan = await self.memory.get_plan(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan not found: {plan_id}")
        return plan

    async def list_plans(self, session_id: str) -> List[PlanDocument]:
        return await self.memory.list_plans(session_id)

    async def get_active_plan(self, session_id: str) -> Optional[PlanDocument]:
        """Most recent plan of the session that is not Rejected/Completed/Cancelled."""
        for plan in await self.memory.list_plans(session_id):
            if plan.status in ACTIVE:
                return plan
        return None

    def is_executing(self, session_id: str) -> bool:
        return session_id in self._executing

    # ------------------------------
    # Drafting
    # ------------------------------

    async def create_draft(
        self,
        session_id: str,
        *,
        title: str,
        description: str = "",
        context: str = "",
        risks: Optional[List[str]] = None,
        test_strategy: str = "",
        technical_stack: Optional[List[str]] = None,
    ) -> PlanDocument:
        active = await self.get_active_plan(session_id)
        if active is not None and active.status != PlanStatus.DRAFT:
            raise PlanStateError(
                f"Session already has a plan in status {active.status.value}: {active.id}"
            )
        if active is not None:
            await self._set_status(active, PlanStatus.CANCELLED, "superseded by a new draft")

        plan = PlanDocument(
            session_id=session_id,
            title=title,
            description=description,
            context=context,
            risks=list(risks or []),
            test_strategy=test_strategy,
            technical_stack=list(technical_stack or []),
        )
        await self._persist(plan)
        self._publish_plan(plan, None, None)
        logger.info("plan drafted", extra={"session_id": session_id, "plan_id": plan.id})
        return plan

    async def add_task(
        self,
        plan_id: str,
        *,
        title: str,
        description: str = "",
        task_type: TaskType = TaskType.OTHER,
        dependencies: Optional[List[str]] = None,
        complexity: int = 3,
        acceptance_criteria: Optional[List[str]] = None,
    ) -> PlanTask:
        plan = await self._require(plan_id, PlanStatus.DRAFT, "add tasks to")
        deps = list(dependencies or [])
        unknown = [d for d in deps if plan.task_by_id(d) is None]
        if unknown:
            raise PlanStateError(f"Unknown dependency task id(s): {', '.join(unknown)}")

        task = PlanTask(
            order=len(plan.tasks) + 1,
            title=title,
            description=description,
            task_type=task_type,
            dependencies=deps,
            complexity=complexity,
            acceptance_criteria=list(acceptance_criteria or []),
        )
        plan.tasks.append(task)
        await self._persist(plan)
        return task

    async def update_draft(self, plan_id: str, **fields: Any) -> PlanDocument:
        unknown = set(fields) - DRAFT_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        plan = await self._require(plan_id, PlanStatus.DRAFT, "update")
        for name, value in fields.items():
            if value is not None:
                setattr(plan, name, value)
        await self._persist(plan)
        return plan

    async def finalize(self, plan_id: str) -> PlanDocument:
        plan = await self._require(plan_id, PlanStatus.DRAFT, "finalize")
        validate_plan(plan)
        for other in await self.memory.list_plans(plan.session_id):
            if other.id != plan.id and other.status == PlanStatus.PENDING_APPROVAL:
                raise PlanStateError(f"Session already has a plan awaiting approval: {other.id}")
        await self._set_status(plan, PlanStatus.PENDING_APPROVAL)
        return plan

    # ------------------------------
    # Decisions
    # ------------------------------

    async def approve(self, plan_id: str, *, run: bool = True) -> PlanDocument:
        plan = await self._require(plan_id, PlanStatus.PENDING_APPROVAL, "approve")
        if self.is_executing(plan.session_id):
            raise PlanBusyError(f"A plan is already executing for session {plan.session_id}")

        now = datetime.utcnow()
        plan.approved_at = now
        plan.status = PlanStatus.IN_PROGRESS
        plan.status_reason = None
        plan.updated_at = now
        await self._persist(plan)
        self._publish_plan(plan, PlanStatus.PENDING_APPROVAL, PlanStatus.APPROVED)
        self._publish_plan(plan, PlanStatus.APPROVED, PlanStatus.IN_PROGRESS)
        logger.info("plan approved", extra={"session_id": plan.session_id, "plan_id": plan.id})

        if not run:
            return plan
        return await self.run(plan.id)

    async def reject(self, plan_id: str, reason: Optional[str] = None) -> PlanDocument:
        plan = await self._require(plan_id, PlanStatus.PENDING_APPROVAL, "reject")
        await self._set_status(plan, PlanStatus.REJECTED, reason)
        return plan

    async def cancel(self, plan_id: str, reason: Optional[str] = None) -> PlanDocument:
        plan = await self.get_plan(plan_id)
        if plan.status not in CANCELLABLE:
            raise PlanStateError(f"Cannot cancel plan in status {plan.status.value}")
        if plan.status == PlanStatus.IN_PROGRESS and self.is_executing(plan.session_id):
            raise PlanBusyError("Plan is executing; stop the running turn before cancelling")
        await self._set_status(plan, PlanStatus.CANCELLED, reason)
        return plan

    # ------------------------------
    # Human intervention
    # ------------------------------

    async def skip_task(self, plan_id: str, task_id: str, reason: Optional[str] = None) -> PlanDocument:
        """Mark a task Skipped; its Pending dependents become Blocked since its result never arrives."""
        plan = await self._require_idle(plan_id)
        task = _task(plan, task_id)
        if task.status not in {TaskStatus.PENDING, TaskStatus.FAILED, TaskStatus.BLOCKED}:
            raise PlanStateError(f"Cannot skip task in status {task.status.value}")
        await self._set_task(plan, task, TaskStatus.SKIPPED, reason)
        await self._block_dependents(plan, task, f"dependency task {task.order} skipped")
        return plan

    async def retry_task(self, plan_id: str, task_id: str) -> PlanDocument:
        """
        Failed -> Pending. A Blocked dependent goes back to Pending unless another
        Failed or Skipped task upstream of it still holds it back.
        """
        plan = await self._require_idle(plan_id)
        task = _task(plan, task_id)
        if task.status != TaskStatus.FAILED:
            raise PlanStateError(f"Only failed tasks can be retried (status {task.status.value})")
        await self._set_task(plan, task, TaskStatus.PENDING)

        still_held: Set[str] = set()
        for other in plan.tasks:
            if other.status in {TaskStatus.FAILED, TaskStatus.SKIPPED}:
                still_held.update(t.id for t in dependents_closure(plan, other.id))
        for dependent in dependents_closure(plan, task.id):
            if dependent.status == TaskStatus.BLOCKED and dependent.id not in still_held:
                await self._set_task(plan, dependent, TaskStatus.PENDING)
        return plan

    # ------------------------------
    # Execution
    # ------------------------------

    async def execute_next(self, plan_id: str) -> Optional[PlanTask]:
        """Run one runnable task. Returns it, or None when nothing can progress."""
        plan = await self.get_plan(plan_id)
        with self._guard(plan.session_id):
            return await self._execute_next(plan)

    async def run(self, plan_id: str) -> PlanDocument:
        """Run tasks until none can progress, then settle the plan status."""
        plan = await self.get_plan(plan_id)
        if plan.status != PlanStatus.IN_PROGRESS:
            raise PlanStateError(f"Plan is not in progress (status {plan.status.value})")
        with self._guard(plan.session_id):
            while await self._execute_next(plan) is not None:
                pass
            await self._settle(plan)
        return plan

    async def resume(self, session_id: str) -> Optional[PlanDocument]:
        """
        Continue the session's InProgress plan after a restart.

        Falls back to the working-directory snapshot when the store has no plan.
        Tasks left InProgress are re-attempted from Pending.
        """
        plan = await self.get_active_plan(session_id)
        if plan is None and self.snapshots is not None:
            plan = await self._read_snapshot(session_id)
            if plan is not None and await self.memory.get_plan(plan.id) is not None:
                # the store already has this plan and it is no longer active
                plan = None
            if plan is not None:
                logger.warning(
                    "restoring plan from snapshot",
                    extra={"session_id": session_id, "plan_id": plan.id},
                )
                await self.memory.save_plan(plan)
        if plan is None or plan.status != PlanStatus.IN_PROGRESS:
            return plan

        for task in plan.tasks_by_order():
            if task.status == TaskStatus.IN_PROGRESS:
                await self._set_task(plan, task, TaskStatus.PENDING, "interrupted; re-running")
        return await self.run(plan.id)

    async def _read_snapshot(self, session_id: str) -> Optional[PlanDocument]:
        """An unreadable snapshot counts as no snapshot; the store stays authoritative."""
        try:
            return await asyncio.to_thread(self.snapshots.read, session_id)
        except (ValidationError, SnapshotPathError) as e:
            logger.warning("ignoring unreadable plan snapshot: %s", e, extra={"session_id": session_id})
            return None

    async def _execute_next(self, plan: PlanDocument) -> Optional[PlanTask]:
        if plan.status != PlanStatus.IN_PROGRESS:
            return None
        runnable = runnable_tasks(plan)
        if not runnable:
            return None

        task = runnable[0]
        task.started_at = datetime.utcnow()
        await self._set_task(plan, task, TaskStatus.IN_PROGRESS)

        extra = {"session_id": plan.session_id, "plan_id": plan.id, "task_id": task.id}
        try:
            response = await self.agent.run_turn(
                plan.session_id,
                build_task_prompt(plan, task),
                mode=AppMode.CHAT,
                plan_id=plan.id,
                task_id=task.id,
            )
        except Exception as exc:
            failure = PlanExecutionError(task.id, str(exc) or type(exc).__name__)
            logger.warning("task %d failed: %s", task.order, failure.cause, extra=extra)
            await self._fail(plan, task, failure.cause)
            return task

        task.notes = (response.text or "")[:NOTES_CHARS] or None
        task.completed_at = datetime.utcnow()
        await self._set_task(plan, task, TaskStatus.COMPLETED)
        logger.info("task %d completed", task.order, extra=extra)
        return task

    async def _fail(self, plan: PlanDocument, task: PlanTask, cause: str) -> None:
        await self._set_task(plan, task, TaskStatus.FAILED, cause)
        await self._block_dependents(plan, task, f"dependency task {task.order} failed")

    async def _block_dependents(self, plan: PlanDocument, task: PlanTask, reason: str) -> None:
        for dependent in dependents_closure(plan, task.id):
            if dependent.status == TaskStatus.PENDING:
                await self._set_task(plan, dependent, TaskStatus.BLOCKED, reason)

    async def _settle(self, plan: PlanDocument) -> None:
        if plan.status == PlanStatus.IN_PROGRESS and plan.is_complete():
            await self._set_status(plan, PlanStatus.COMPLETED)
            return
        if plan.status == PlanStatus.IN_PROGRESS:
            logger.info(
                "plan halted with %s; awaiting human attention",
                plan.progress()["by_status"],
                extra={"session_id": plan.session_id, "plan_id": plan.id},
            )

    # ------------------------------
    # Persistence + events
    # ------------------------------

    async def _set_status(self, plan: PlanDocument, status: PlanStatus, reason: Optional[str] = None) -> None:
        old = plan.status
        plan.status = status
        plan.status_reason = reason
        plan.touch()
        await self._persist(plan)
        self._publish_plan(plan, old, status, reason)
        logger.info(
            "plan %s -> %s",
            old.value,
            status.value,
            extra={"session_id": plan.session_id, "plan_id": plan.id},
        )

    async def _set_task(
        self,
        plan: PlanDocument,
        task: PlanTask,
        status: TaskStatus,
        reason: Optional[str] = None,
    ) -> None:
        old = task.status
        task.status = status
        task.status_reason = reason if status in {TaskStatus.FAILED, TaskStatus.BLOCKED, TaskStatus.SKIPPED} else None
        if status == TaskStatus.PENDING:
            task.started_at = None
            task.completed_at = None
        plan.touch()
        await self.memory.save_task(plan.id, task)
        await self._snapshot(plan)
        if self.bus is not None:
            self.bus.publish(
                TaskStatusChanged(
                    session_id=plan.session_id,
                    plan_id=plan.id,
                    task_id=task.id,
                    task_order=task.order,
                    old_status=old,
                    new_status=status,
                    reason=reason,
                )
            )

    async def _persist(self, plan: PlanDocument) -> None:
        plan.touch()
        await self.memory.save_plan(plan)
        await self._snapshot(plan)

    async def _snapshot(self, plan: PlanDocument) -> None:
        if self.snapshots is None:
            return
        try:
            await asyncio.to_thread(self.snapshots.write, plan)
        except (OSError, ValueError) as exc:
            logger.warning(
                "plan snapshot failed: %s",
                exc,
                extra={"session_id": plan.session_id, "plan_id": plan.id},
            )

    def _publish_plan(
        self,
        plan: PlanDocument,
        old: Optional[PlanStatus],
        new: Optional[PlanStatus],
        reason: Optional[str] = None,
    ) -> None:
        if self.bus is None:
            return
        self.bus.publish(
            PlanStatusChanged(
                session_id=plan.session_id,
                plan_id=plan.id,
                old_status=old,
                new_status=new or plan.status,
                reason=reason,
            )
        )

    # ------------------------------
    # Guards
    # ------------------------------

    @contextmanager
    def _guard(self, session_id: str) -> Iterator[None]:
        if session_id in self._executing:
            raise PlanBusyError(f"A plan is already executing for session {session_id}")
        self._executing.add(session_id)
        try:
            yield
        finally:
            self._executing.discard(session_id)

    async def _require(self, plan_id: str, status: PlanStatus, action: str) -> PlanDocument:
        plan = await self.get_plan(plan_id)
        if plan.status != status:
            raise PlanStateError(f"Cannot {action} plan in status {plan.status.value}")
        return plan

    async def _require_idle(self, plan_id: str) -> PlanDocument:
        plan = await self._require(plan_id, PlanStatus.IN_PROGRESS, "change tasks of")
        if self.is_executing(plan.session_id):
            raise PlanBusyError("Plan is executing")
        return plan


# ==============================
# Helpers
# ==============================
def _task(plan: PlanDocument, task_id: str) -> PlanTask:
    task = plan.task_by_id(task_id)
    if task is None:
        raise PlanNotFoundError(f"Task not found in plan {plan.id}: {task_id}")
    return task


def build_task_prompt(plan: PlanDocument, task: PlanTask) -> str:
    lines: List[str] = [
        f"You are executing task {task.order} of {len(plan.tasks)} in the approved plan \"{plan.title}\".",
    ]
    if plan.description:
        lines += ["", "Plan description:", plan.description]
    if plan.context:
        lines += ["", "Context:", plan.context]
    if plan.technical_stack:
        lines += ["", "Technical stack: " + ", ".join(plan.technical_stack)]

    lines += [
        "",
        f"Task {task.order}: {task.title}",
        f"Type: {task.task_type.value}; complexity: {task.complexity}/5",
    ]
    if task.description:
        lines += ["", task.description]
    if task.acceptance_criteria:
        lines += ["", "Acceptance criteria:"] + [f"- {c}" for c in task.acceptance_criteria]

    done: Dict[str, PlanTask] = {t.id: t for t in plan.tasks if t.status == TaskStatus.COMPLETED}
    notes = [done[d] for d in task.dependencies if d in done and done[d].notes]
    if notes:
        lines += ["", "Results of completed prerequisite tasks:"]
        for dep in sorted(notes, key=lambda t: t.order):
            lines.append(f"- Task {dep.order} ({dep.title}): {dep.notes}")

    lines += ["", "Complete only this task, then summarize what you did."]
    return "\n".join(lines)
