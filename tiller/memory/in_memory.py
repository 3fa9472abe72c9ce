# ==============================
# In-Memory Backend (Dev)
# ==============================
"""
In-memory backend for local dev/testing.

Not durable. Deterministic. No file I/O.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from tiller.contracts.plan_schema import PlanDocument, PlanTask
from tiller.contracts.session_schema import MessageRecord, SessionRecord
from tiller.memory.base import MemoryBackend


class InMemoryBackend(MemoryBackend):
    def __init__(self) -> None:
        self._sessions: Dict[str, SessionRecord] = {}
        self._messages: Dict[str, List[MessageRecord]] = {}
        self._plans: Dict[str, PlanDocument] = {}
        self.writes = 0

    def save_session(self, session: SessionRecord) -> None:
        self._sessions[session.session_id] = session.model_copy(deep=True)
        self._messages.setdefault(session.session_id, [])
        self.writes += 1

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        s = self._sessions.get(session_id)
        return s.model_copy(deep=True) if s else None

    def list_sessions(self, *, limit: int = 50, offset: int = 0) -> List[SessionRecord]:
        items = sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)
        return [s.model_copy(deep=True) for s in items[offset : offset + limit]]

    def delete_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._messages.pop(session_id, None)
        for plan_id in [p.id for p in self._plans.values() if p.session_id == session_id]:
            self._plans.pop(plan_id, None)
        self.writes += 1

    def add_message(self, message: MessageRecord) -> None:
        self._messages.setdefault(message.session_id, []).append(message.model_copy(deep=True))
        self.writes += 1

    def get_message(self, message_id: str) -> Optional[MessageRecord]:
        for messages in self._messages.values():
            for m in messages:
                if m.message_id == message_id:
                    return m.model_copy(deep=True)
        return None

    def list_messages(self, session_id: str) -> List[MessageRecord]:
        items = sorted(self._messages.get(session_id, []), key=lambda m: m.sequence)
        return [m.model_copy(deep=True) for m in items]

    def save_plan(self, plan: PlanDocument) -> None:
        self._plans[plan.id] = plan.model_copy(deep=True)
        self.writes += 1

    def get_plan(self, plan_id: str) -> Optional[PlanDocument]:
        p = self._plans.get(plan_id)
        return p.model_copy(deep=True) if p else None

    def list_plans(self, session_id: str) -> List[PlanDocument]:
        items = [p for p in self._plans.values() if p.session_id == session_id]
        items.sort(key=lambda p: p.created_at, reverse=True)
        return [p.model_copy(deep=True) for p in items]

    def delete_plan(self, plan_id: str) -> None:
        self._plans.pop(plan_id, None)
        self.writes += 1

    def save_task(self, plan_id: str, task: PlanTask) -> None:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise KeyError(f"Unknown plan: {plan_id}")
        tasks = [t for t in plan.tasks if t.id != task.id]
        tasks.append(task.model_copy(deep=True))
        tasks.sort(key=lambda t: t.order)
        self._plans[plan_id] = plan.model_copy(update={"tasks": tasks})
        self.writes += 1

    def get_task(self, plan_id: str, task_id: str) -> Optional[PlanTask]:
        plan = self._plans.get(plan_id)
        if plan is None:
            return None
        task = plan.task_by_id(task_id)
        return task.model_copy(deep=True) if task else None

    def list_tasks(self, plan_id: str) -> List[PlanTask]:
        plan = self._plans.get(plan_id)
        if plan is None:
            return []
        return [t.model_copy(deep=True) for t in plan.tasks_by_order()]
