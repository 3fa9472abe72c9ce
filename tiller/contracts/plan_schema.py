# ==============================
# Plan Contracts
# ==============================
"""
Structured task plan contracts.

Rules:
- Tasks live in an indexed list; dependencies are task ids, never references.
- Mutation of status fields goes through tiller/orchestrator/plan_engine.py.
- Graph validation (cycles, unknown ids) lives in tiller/orchestrator/plan_graph.py.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ==============================
# Enums
# ==============================
class PlanStatus(str, Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    BLOCKED = "blocked"


class TaskType(str, Enum):
    RESEARCH = "research"
    EDIT = "edit"
    CREATE = "create"
    DELETE = "delete"
    TEST = "test"
    REFACTOR = "refactor"
    DOCUMENTATION = "documentation"
    CONFIGURATION = "configuration"
    BUILD = "build"
    OTHER = "other"


TERMINAL_PLAN_STATUSES = frozenset({PlanStatus.REJECTED, PlanStatus.COMPLETED, PlanStatus.CANCELLED})
DONE_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.SKIPPED})

_STATUS_ICONS: Dict[TaskStatus, str] = {
    TaskStatus.PENDING: "[ ]",
    TaskStatus.IN_PROGRESS: "[~]",
    TaskStatus.COMPLETED: "[x]",
    TaskStatus.SKIPPED: "[-]",
    TaskStatus.FAILED: "[!]",
    TaskStatus.BLOCKED: "[#]",
}


# ==============================
# Models
# ==============================
class PlanTask(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: str(uuid4()))
    order: int = Field(..., ge=1, description="1-based position in the plan.")
    title: str
    description: str = ""
    task_type: TaskType = TaskType.OTHER
    dependencies: List[str] = Field(default_factory=list, description="Ids of tasks in the same plan.")
    complexity: int = Field(default=3, ge=1, le=5)
    acceptance_criteria: List[str] = Field(default_factory=list)

    status: TaskStatus = TaskStatus.PENDING
    status_reason: Optional[str] = Field(default=None, description="Why the task Failed or is Blocked.")
    notes: Optional[str] = None

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("dependencies")
    @classmethod
    def _dedupe_dependencies(cls, v: List[str]) -> List[str]:
        seen: List[str] = []
        for dep in v:
            if dep not in seen:
                seen.append(dep)
        return seen

    def icon(self) -> str:
        return _STATUS_ICONS[self.status]

    def is_done(self) -> bool:
        return self.status in DONE_TASK_STATUSES


class PlanDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: str(uuid4()))
    session_id: str
    title: str
    description: str = ""
    context: str = ""
    risks: List[str] = Field(default_factory=list)
    test_strategy: str = ""
    technical_stack: List[str] = Field(default_factory=list)

    tasks: List[PlanTask] = Field(default_factory=list)
    status: PlanStatus = PlanStatus.DRAFT
    status_reason: Optional[str] = Field(default=None, description="Rejection/cancellation reason.")

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    approved_at: Optional[datetime] = None

    # ------------------------------
    # Lookups
    # ------------------------------

    def task_by_id(self, task_id: str) -> Optional[PlanTask]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def task_by_order(self, order: int) -> Optional[PlanTask]:
        for task in self.tasks:
            if task.order == order:
                return task
        return None

    def tasks_by_order(self) -> List[PlanTask]:
        return sorted(self.tasks, key=lambda t: t.order)

    # ------------------------------
    # Progress
    # ------------------------------

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PLAN_STATUSES

    def is_complete(self) -> bool:
        """True when every task is Completed or Skipped."""
        return bool(self.tasks) and all(t.is_done() for t in self.tasks)

    def has_failures(self) -> bool:
        return any(t.status in {TaskStatus.FAILED, TaskStatus.BLOCKED} for t in self.tasks)

    def progress(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {s.value: 0 for s in TaskStatus}
        for task in self.tasks:
            counts[task.status.value] += 1
        done = counts[TaskStatus.COMPLETED.value] + counts[TaskStatus.SKIPPED.value]
        return {"total": len(self.tasks), "done": done, "by_status": counts}

    def touch(self) -> None:
        self.updated_at = datetime.utcnow()
