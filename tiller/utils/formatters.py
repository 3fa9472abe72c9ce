# ==============================
# Formatters
# ==============================
"""
Small human-friendly formatters for the CLI, REPL and plan tool.

No I/O. No persistence.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from tiller.contracts.plan_schema import PlanDocument


def compact_kv(d: Dict[str, Any], *, keys: Optional[List[str]] = None, max_len: int = 300) -> str:
    use = d if keys is None else {k: d.get(k) for k in keys}
    parts = []
    for k, v in use.items():
        s = f"{k}={_short(v, max_len=max_len)}"
        parts.append(s)
    return " ".join(parts)


def render_plan(plan: PlanDocument, *, show_descriptions: bool = True) -> str:
    progress = plan.progress()
    lines = [
        f"Plan: {plan.title}  [{plan.status.value}]  {progress['done']}/{progress['total']} done",
        f"id: {plan.id}",
    ]
    if plan.status_reason:
        lines.append(f"reason: {plan.status_reason}")
    if plan.description:
        lines += ["", plan.description]
    if plan.technical_stack:
        lines.append(f"stack: {', '.join(plan.technical_stack)}")
    if plan.risks:
        lines += ["", "Risks:"] + [f"  - {r}" for r in plan.risks]
    if plan.test_strategy:
        lines += ["", f"Test strategy: {plan.test_strategy}"]

    lines += ["", "Tasks:"]
    order_of = {t.id: t.order for t in plan.tasks}
    for task in plan.tasks_by_order():
        deps = sorted(order_of[d] for d in task.dependencies if d in order_of)
        suffix = f" (after {', '.join(str(d) for d in deps)})" if deps else ""
        lines.append(f"  {task.icon()} {task.order}. {task.title} <{task.task_type.value}, c{task.complexity}>{suffix}")
        if show_descriptions and task.description:
            lines.append(f"      {_short(task.description, max_len=200)}")
        if task.status_reason:
            lines.append(f"      -> {task.status_reason}")
    if not plan.tasks:
        lines.append("  (no tasks)")
    return "\n".join(lines)


def _short(x: Any, *, max_len: int) -> str:
    s = str(x)
    if len(s) <= max_len:
        return s
    return s[: max_len - 3] + "..."
