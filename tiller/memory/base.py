# ==============================
# Memory Backend Contract
# ==============================
"""
Storage interface for sessions, messages, plans and plan tasks.

Rules:
- Backends are synchronous; tiller/memory/router.py adapts them to asyncio.
- A method returning means the write is durable.
- Backends store copies; callers never share mutable records with the store.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from tiller.contracts.plan_schema import PlanDocument, PlanTask
from tiller.contracts.session_schema import MessageRecord, SessionRecord


class MemoryBackend(ABC):
    # ------------------------------
    # Schema
    # ------------------------------

    def ensure_schema(self) -> None:
        return None

    def get_schema_version(self) -> int:
        return 0

    # ------------------------------
    # Sessions
    # ------------------------------

    @abstractmethod
    def save_session(self, session: SessionRecord) -> None:
        """Insert or replace a session."""

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        ...

    @abstractmethod
    def list_sessions(self, *, limit: int = 50, offset: int = 0) -> List[SessionRecord]:
        """Most recently updated first."""

    @abstractmethod
    def delete_session(self, session_id: str) -> None:
        """Delete a session with its messages, plans and tasks."""

    # ------------------------------
    # Messages
    # ------------------------------

    @abstractmethod
    def add_message(self, message: MessageRecord) -> None:
        ...

    @abstractmethod
    def get_message(self, message_id: str) -> Optional[MessageRecord]:
        ...

    @abstractmethod
    def list_messages(self, session_id: str) -> List[MessageRecord]:
        """Ordered by sequence."""

    # ------------------------------
    # Plans
    # ------------------------------

    @abstractmethod
    def save_plan(self, plan: PlanDocument) -> None:
        """Insert or replace a plan together with all of its tasks."""

    @abstractmethod
    def get_plan(self, plan_id: str) -> Optional[PlanDocument]:
        ...

    @abstractmethod
    def list_plans(self, session_id: str) -> List[PlanDocument]:
        """Newest first."""

    @abstractmethod
    def delete_plan(self, plan_id: str) -> None:
        ...

    # ------------------------------
    # Plan Tasks
    # ------------------------------

    @abstractmethod
    def save_task(self, plan_id: str, task: PlanTask) -> None:
        """Insert or replace one task of an existing plan."""

    @abstractmethod
    def get_task(self, plan_id: str, task_id: str) -> Optional[PlanTask]:
        ...

    @abstractmethod
    def list_tasks(self, plan_id: str) -> List[PlanTask]:
        """Ordered by task order."""
