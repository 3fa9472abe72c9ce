# ==============================
# Memory Router
# ==============================
"""
Memory router provides the single storage interface used by the agent and plan engine.

- Delegates every operation to a chosen backend (sqlite or in-memory).
- Runs backend calls off the event loop (asyncio.to_thread) so a slow disk never
  stalls the presentation loop.
- Absorbs lock contention ("database is locked"/"busy") with the storage RetryPolicy.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable, List, Optional, TypeVar

from tiller.config.schema import Settings
from tiller.contracts.plan_schema import PlanDocument, PlanTask
from tiller.contracts.session_schema import MessageRecord, SessionRecord
from tiller.memory.base import MemoryBackend
from tiller.memory.sqlite_backend import SQLiteBackend
from tiller.utils.retry import RetryPolicy, retry_async

T = TypeVar("T")


class MemoryRouter:
    def __init__(
        self,
        backend: MemoryBackend,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        offload: bool = True,
    ) -> None:
        self.backend = backend
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=5, base_delay=0.05, max_delay=5.0)
        self.offload = offload

    async def _call(self, what: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        async def _once() -> T:
            if self.offload:
                return await asyncio.to_thread(fn, *args, **kwargs)
            return fn(*args, **kwargs)

        return await retry_async(_once, self.retry_policy, what=f"storage.{what}")

    # ------------------------------
    # Sessions
    # ------------------------------

    async def save_session(self, session: SessionRecord) -> None:
        await self._call("save_session", self.backend.save_session, session)

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        return await self._call("get_session", self.backend.get_session, session_id)

    async def list_sessions(self, *, limit: int = 50, offset: int = 0) -> List[SessionRecord]:
        return await self._call("list_sessions", self.backend.list_sessions, limit=limit, offset=offset)

    async def delete_session(self, session_id: str) -> None:
        await self._call("delete_session", self.backend.delete_session, session_id)

    # ------------------------------
    # Messages
    # ------------------------------

    async def add_message(self, message: MessageRecord) -> None:
        await self._call("add_message", self.backend.add_message, message)

    async def get_message(self, message_id: str) -> Optional[MessageRecord]:
        return await self._call("get_message", self.backend.get_message, message_id)

    async def list_messages(self, session_id: str) -> List[MessageRecord]:
        return await self._call("list_messages", self.backend.list_messages, session_id)

    # ------------------------------
    # Plans
    # ------------------------------

    async def save_plan(self, plan: PlanDocument) -> None:
        await self._call("save_plan", self.backend.save_plan, plan)

    async def get_plan(self, plan_id: str) -> Optional[PlanDocument]:
        return await self._call("get_plan", self.backend.get_plan, plan_id)

    async def list_plans(self, session_id: str) -> List[PlanDocument]:
        return await self._call("list_plans", self.backend.list_plans, session_id)

    async def delete_plan(self, plan_id: str) -> None:
        await self._call("delete_plan", self.backend.delete_plan, plan_id)

    # ------------------------------
    # Plan Tasks
    # ------------------------------

    async def save_task(self, plan_id: str, task: PlanTask) -> None:
        await self._call("save_task", self.backend.save_task, plan_id, task)

    async def get_task(self, plan_id: str, task_id: str) -> Optional[PlanTask]:
        return await self._call("get_task", self.backend.get_task, plan_id, task_id)

    async def list_tasks(self, plan_id: str) -> List[PlanTask]:
        return await self._call("list_tasks", self.backend.list_tasks, plan_id)

    @classmethod
    def from_settings(cls, settings: Settings) -> "MemoryRouter":
        """
        Instantiate router using repo settings.
        """
        repo_root = settings.repo_root_path()

        def _resolve(path_str: str) -> Path:
            path = Path(path_str).expanduser()
            return path if path.is_absolute() else (repo_root / path)

        storage_dir = _resolve(settings.app.paths.storage_dir)
        memory_dir = storage_dir / "memory"
        memory_dir.mkdir(parents=True, exist_ok=True)

        db_path = settings.secrets.memory_db_path
        db_file = _resolve(db_path) if db_path else (memory_dir / "tiller.sqlite")
        db_file.parent.mkdir(parents=True, exist_ok=True)

        backend = SQLiteBackend(db_path=str(db_file))
        backend.ensure_schema()
        return cls(backend, retry_policy=RetryPolicy.from_config(settings.retry.storage))
