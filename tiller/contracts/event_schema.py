# ==============================
# Event Contracts
# ==============================
"""
Events published on the in-process EventBus for front ends.

Pattern:
- Every event carries a `kind` discriminator and a timestamp.
- Payload fields are plain data so the bus can redact and log them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from tiller.contracts.plan_schema import PlanStatus, TaskStatus


class BaseEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: str
    session_id: str
    ts: datetime = Field(default_factory=datetime.utcnow)


class ApprovalRequested(BaseEvent):
    kind: Literal["approval.requested"] = "approval.requested"
    request_id: str
    tool_name: str
    description: str
    input: Dict[str, Any] = Field(default_factory=dict)
    capabilities: List[str] = Field(default_factory=list)


class ApprovalResolved(BaseEvent):
    kind: Literal["approval.resolved"] = "approval.resolved"
    request_id: str
    tool_name: str
    approved: bool
    reason: Optional[str] = None


class PlanStatusChanged(BaseEvent):
    kind: Literal["plan.status_changed"] = "plan.status_changed"
    plan_id: str
    old_status: Optional[PlanStatus] = None
    new_status: PlanStatus
    reason: Optional[str] = None


class TaskStatusChanged(BaseEvent):
    kind: Literal["task.status_changed"] = "task.status_changed"
    plan_id: str
    task_id: str
    task_order: int
    old_status: Optional[TaskStatus] = None
    new_status: TaskStatus
    reason: Optional[str] = None


class ToolExecuted(BaseEvent):
    kind: Literal["tool.executed"] = "tool.executed"
    tool_name: str
    ok: bool
    latency_ms: Optional[int] = None
    error_code: Optional[str] = None
