# ==============================
# Plan Graph
# ==============================
"""
Pure functions over a plan's task dependency graph.

Rules:
- Tasks are an indexed list; edges are dependency ids. No references between tasks.
- validate_plan is side-effect free and deterministic, so running it twice on the
  same plan yields the same verdict.
"""

from __future__ import annotations

from collections import deque
from typing import Dict, List, Set

from tiller.contracts.errors import PlanValidationError, PlanValidationKind
from tiller.contracts.plan_schema import PlanDocument, PlanTask, TaskStatus


def validate_plan(plan: PlanDocument) -> None:
    """
    Raise PlanValidationError unless the plan is non-empty, every dependency id exists
    in the plan, and the dependency relation is acyclic.
    """
    if not plan.tasks:
        raise PlanValidationError(PlanValidationKind.EMPTY_PLAN, "Plan has no tasks")

    ids = {t.id for t in plan.tasks}
    for task in plan.tasks:
        unknown = [d for d in task.dependencies if d not in ids]
        if unknown:
            raise PlanValidationError(
                PlanValidationKind.UNKNOWN_DEPENDENCY,
                f"Task {task.order} ('{task.title}') depends on unknown task id(s): {', '.join(unknown)}",
                details={"task_id": task.id, "unknown": unknown},
            )

    order = _kahn(plan.tasks)
    if len(order) < len(plan.tasks):
        done = set(order)
        cyclic = sorted((t for t in plan.tasks if t.id not in done), key=lambda t: t.order)
        raise PlanValidationError(
            PlanValidationKind.CIRCULAR_DEPENDENCY,
            "Circular dependency between tasks: " + ", ".join(str(t.order) for t in cyclic),
            details={"task_ids": [t.id for t in cyclic]},
        )


def topological_order(plan: PlanDocument) -> List[PlanTask]:
    """Tasks in dependency order, ties broken by task order. Call validate_plan first."""
    by_id = {t.id: t for t in plan.tasks}
    return [by_id[i] for i in _kahn(plan.tasks)]


def _kahn(tasks: List[PlanTask]) -> List[str]:
    in_degree: Dict[str, int] = {t.id: 0 for t in tasks}
    dependents: Dict[str, List[str]] = {t.id: [] for t in tasks}
    for task in tasks:
        for dep in task.dependencies:
            if dep in in_degree:
                in_degree[task.id] += 1
                dependents[dep].append(task.id)

    order_of = {t.id: t.order for t in tasks}
    ready = deque(sorted((i for i, n in in_degree.items() if n == 0), key=order_of.__getitem__))
    out: List[str] = []
    while ready:
        current = ready.popleft()
        out.append(current)
        released = []
        for child in dependents[current]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                released.append(child)
        ready.extend(sorted(released, key=order_of.__getitem__))
    return out


def dependents_closure(plan: PlanDocument, task_id: str) -> List[PlanTask]:
    """Every task that transitively depends on task_id, in task order."""
    dependents: Dict[str, List[str]] = {t.id: [] for t in plan.tasks}
    for task in plan.tasks:
        for dep in task.dependencies:
            if dep in dependents:
                dependents[dep].append(task.id)

    seen: Set[str] = set()
    stack = list(dependents.get(task_id, []))
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        stack.extend(dependents.get(current, []))
    return sorted((t for t in plan.tasks if t.id in seen), key=lambda t: t.order)


def runnable_tasks(plan: PlanDocument) -> List[PlanTask]:
    """
    Pending tasks whose dependencies are all Completed, lowest order first.

    A Skipped dependency never produced its result, so it does not release dependents.
    """
    status = {t.id: t.status for t in plan.tasks}
    return [
        t
        for t in plan.tasks_by_order()
        if t.status == TaskStatus.PENDING
        and all(status.get(d) == TaskStatus.COMPLETED for d in t.dependencies)
    ]
