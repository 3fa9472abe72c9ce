# ==============================
# SQLite Backend + Memory Router Tests
# ==============================
from __future__ import annotations

import sqlite3
from datetime import datetime

import pytest

from tiller.contracts.llm_schema import Message, Role, TextBlock, ToolUseBlock
from tiller.contracts.plan_schema import PlanDocument, PlanStatus, PlanTask, TaskStatus, TaskType
from tiller.contracts.session_schema import MessageRecord, SessionRecord
from tiller.memory.in_memory import InMemoryBackend
from tiller.memory.router import MemoryRouter
from tiller.memory.sqlite_backend import SCHEMA_VERSION, SQLiteBackend
from tiller.utils.retry import RetryPolicy


@pytest.fixture
def backend(tmp_path) -> SQLiteBackend:
    return SQLiteBackend(db_path=str(tmp_path / "db" / "tiller.sqlite"))


def _plan(session_id: str = "s1") -> PlanDocument:
    first = PlanTask(order=1, title="read", task_type=TaskType.RESEARCH, acceptance_criteria=["notes taken"])
    second = PlanTask(order=2, title="write", dependencies=[first.id], complexity=4)
    return PlanDocument(
        session_id=session_id,
        title="Plan",
        risks=["flaky tests"],
        technical_stack=["python"],
        tasks=[first, second],
    )


def test_schema_is_created_once(backend, tmp_path) -> None:
    assert backend.get_schema_version() == SCHEMA_VERSION
    again = SQLiteBackend(db_path=backend.db_path)
    assert again.get_schema_version() == SCHEMA_VERSION


def test_session_upsert_and_listing(backend) -> None:
    session = SessionRecord(session_id="s1", title="first", model="gpt-4o")
    backend.save_session(session)
    backend.save_session(session.model_copy(update={"total_tokens": 42, "total_cost": 0.5, "updated_at": datetime.utcnow()}))
    backend.save_session(SessionRecord(session_id="s2"))

    stored = backend.get_session("s1")
    assert stored.title == "first"
    assert stored.total_tokens == 42
    assert stored.total_cost == pytest.approx(0.5)
    assert stored.created_at == session.created_at
    assert backend.get_session("missing") is None
    assert [s.session_id for s in backend.list_sessions(limit=1)] == ["s2"]


def test_messages_keep_content_blocks_and_order(backend) -> None:
    backend.save_session(SessionRecord(session_id="s1"))
    assistant = MessageRecord(
        session_id="s1",
        sequence=1,
        role=Role.ASSISTANT,
        content=[TextBlock(text="running"), ToolUseBlock(id="c1", name="ls", input={"path": "."})],
        model="gpt-4o",
        input_tokens=10,
        output_tokens=3,
        cost=0.01,
    )
    backend.add_message(assistant)
    backend.add_message(MessageRecord(session_id="s1", sequence=0, role=Role.USER, content=Message.user("hi").content))

    records = backend.list_messages("s1")

    assert [r.sequence for r in records] == [0, 1]
    assert records[1].content == assistant.content
    assert records[1].to_message().tool_uses()[0].input == {"path": "."}
    assert backend.get_message(assistant.message_id).cost == pytest.approx(0.01)


def test_plan_round_trip_and_task_updates(backend) -> None:
    backend.save_session(SessionRecord(session_id="s1"))
    plan = _plan()
    backend.save_plan(plan)

    loaded = backend.get_plan(plan.id)
    assert loaded.risks == ["flaky tests"]
    assert [t.title for t in loaded.tasks] == ["read", "write"]
    assert loaded.tasks[1].dependencies == [plan.tasks[0].id]
    assert loaded.tasks[0].task_type == TaskType.RESEARCH

    task = loaded.tasks[0].model_copy(update={"status": TaskStatus.COMPLETED, "notes": "done"})
    backend.save_task(plan.id, task)
    assert backend.get_task(plan.id, task.id).notes == "done"
    assert [t.status for t in backend.list_tasks(plan.id)] == [TaskStatus.COMPLETED, TaskStatus.PENDING]

    with pytest.raises(KeyError):
        backend.save_task("no-such-plan", task)


def test_save_plan_drops_removed_tasks(backend) -> None:
    plan = _plan()
    backend.save_plan(plan)
    plan.tasks = plan.tasks[:1]
    plan.status = PlanStatus.PENDING_APPROVAL
    backend.save_plan(plan)

    loaded = backend.get_plan(plan.id)
    assert loaded.status == PlanStatus.PENDING_APPROVAL
    assert [t.order for t in loaded.tasks] == [1]


def test_delete_session_cascades(backend) -> None:
    backend.save_session(SessionRecord(session_id="s1"))
    backend.add_message(MessageRecord(session_id="s1", sequence=0, role=Role.USER))
    plan = _plan()
    backend.save_plan(plan)

    backend.delete_session("s1")

    assert backend.get_session("s1") is None
    assert backend.list_messages("s1") == []
    assert backend.get_plan(plan.id) is None
    assert backend.list_tasks(plan.id) == []


# ==============================
# Router
# ==============================
@pytest.mark.asyncio
async def test_router_runs_sqlite_off_the_event_loop(backend) -> None:
    memory = MemoryRouter(backend, retry_policy=RetryPolicy.no_retry())
    await memory.save_session(SessionRecord(session_id="s1"))
    plan = _plan()
    await memory.save_plan(plan)

    assert (await memory.get_session("s1")).session_id == "s1"
    assert [p.id for p in await memory.list_plans("s1")] == [plan.id]


class _LockedBackend(InMemoryBackend):
    """Reports "database is locked" for the first few writes."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def save_session(self, session: SessionRecord) -> None:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise sqlite3.OperationalError("database is locked")
        super().save_session(session)


@pytest.mark.asyncio
async def test_router_retries_lock_contention() -> None:
    flaky = _LockedBackend(failures=2)
    memory = MemoryRouter(flaky, retry_policy=RetryPolicy(max_attempts=3, base_delay=0.001, jitter=0.0), offload=False)

    await memory.save_session(SessionRecord(session_id="s1"))

    assert flaky.attempts == 3
    assert flaky.get_session("s1") is not None


@pytest.mark.asyncio
async def test_router_gives_up_after_retries() -> None:
    flaky = _LockedBackend(failures=10)
    memory = MemoryRouter(flaky, retry_policy=RetryPolicy(max_attempts=1, base_delay=0.001, jitter=0.0), offload=False)

    with pytest.raises(sqlite3.OperationalError):
        await memory.save_session(SessionRecord(session_id="s1"))
    assert flaky.attempts == 2
