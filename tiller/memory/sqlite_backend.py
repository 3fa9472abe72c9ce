# ==============================
# SQLite Backend
# ==============================
"""
SQLite backend for durable sessions/messages/plans/plan_tasks.

Tables:
- schema_version
- sessions
- messages
- plans
- plan_tasks

Notes:
- Idempotent schema creation on init.
- Minimal migration strategy: integer schema version.
- All JSON fields stored as TEXT (json dumps); timestamps as ISO-8601 TEXT.
- WAL journal + busy_timeout so readers never block the single writer for long.
  Residual "database is locked" errors are retried by MemoryRouter.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, List, Optional

from tiller.contracts.plan_schema import PlanDocument, PlanTask
from tiller.contracts.session_schema import MessageRecord, SessionRecord
from tiller.memory.base import MemoryBackend

SCHEMA_VERSION = 1
BUSY_TIMEOUT_MS = 5000


def _dumps(x: Any) -> str:
    return json.dumps(x, ensure_ascii=False, default=str)


def _loads(s: Optional[str], default: Any) -> Any:
    if s is None:
        return default
    try:
        return json.loads(s)
    except (TypeError, ValueError):
        return default


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteBackend(MemoryBackend):
    def __init__(self, *, db_path: str, initialize: bool = True) -> None:
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        if initialize:
            self._init_db()

    def _connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(self.db_path, timeout=BUSY_TIMEOUT_MS / 1000.0, check_same_thread=False)
        con.row_factory = sqlite3.Row
        con.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS};")
        return con

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            with con:
                yield con
        finally:
            con.close()

    def _init_db(self) -> None:
        with self._tx() as con:
            con.execute("PRAGMA journal_mode=WAL;")
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                  id INTEGER PRIMARY KEY CHECK (id = 1),
                  version INTEGER NOT NULL
                )
                """
            )
            row = con.execute("SELECT version FROM schema_version WHERE id=1").fetchone()
            if row is None:
                con.execute("INSERT INTO schema_version (id, version) VALUES (1, ?)", (SCHEMA_VERSION,))
                version = SCHEMA_VERSION
            else:
                version = int(row["version"])

            if version < SCHEMA_VERSION:
                self._migrate(con, from_version=version, to_version=SCHEMA_VERSION)

            # v1 schema
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                  session_id TEXT PRIMARY KEY,
                  title TEXT,
                  model TEXT,
                  working_directory TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  total_tokens INTEGER NOT NULL DEFAULT 0,
                  total_cost REAL NOT NULL DEFAULT 0
                )
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_sessions_updated ON sessions(updated_at)")
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                  message_id TEXT PRIMARY KEY,
                  session_id TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
                  sequence INTEGER NOT NULL,
                  role TEXT NOT NULL,
                  content_json TEXT NOT NULL,
                  model TEXT,
                  input_tokens INTEGER NOT NULL DEFAULT 0,
                  output_tokens INTEGER NOT NULL DEFAULT 0,
                  cost REAL NOT NULL DEFAULT 0,
                  created_at TEXT NOT NULL
                )
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_messages_session_seq ON messages(session_id, sequence)")
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS plans (
                  plan_id TEXT PRIMARY KEY,
                  session_id TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
                  title TEXT NOT NULL,
                  description TEXT NOT NULL,
                  context TEXT NOT NULL,
                  risks_json TEXT NOT NULL,
                  test_strategy TEXT NOT NULL,
                  technical_stack_json TEXT NOT NULL,
                  status TEXT NOT NULL,
                  status_reason TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  approved_at TEXT
                )
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_plans_session ON plans(session_id, created_at)")
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS plan_tasks (
                  task_id TEXT NOT NULL,
                  plan_id TEXT NOT NULL REFERENCES plans(plan_id) ON DELETE CASCADE,
                  task_order INTEGER NOT NULL,
                  title TEXT NOT NULL,
                  description TEXT NOT NULL,
                  task_type TEXT NOT NULL,
                  dependencies_json TEXT NOT NULL,
                  complexity INTEGER NOT NULL,
                  acceptance_json TEXT NOT NULL,
                  status TEXT NOT NULL,
                  status_reason TEXT,
                  notes TEXT,
                  started_at TEXT,
                  completed_at TEXT,
                  PRIMARY KEY (plan_id, task_id)
                )
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_tasks_plan_order ON plan_tasks(plan_id, task_order)")

    def _migrate(self, con: sqlite3.Connection, *, from_version: int, to_version: int) -> None:
        # v1 only; placeholder for future migrations
        con.execute("UPDATE schema_version SET version=? WHERE id=1", (to_version,))

    def ensure_schema(self) -> None:
        self._init_db()

    def get_schema_version(self) -> int:
        with self._tx() as con:
            try:
                row = con.execute("SELECT version FROM schema_version WHERE id=1").fetchone()
            except sqlite3.OperationalError:
                return 0
            return int(row["version"]) if row else 0

    # ------------------------------
    # Sessions
    # ------------------------------

    def save_session(self, session: SessionRecord) -> None:
        with self._tx() as con:
            con.execute(
                """
                INSERT INTO sessions (
                  session_id, title, model, working_directory, created_at, updated_at, total_tokens, total_cost
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                  title=excluded.title,
                  model=excluded.model,
                  working_directory=excluded.working_directory,
                  updated_at=excluded.updated_at,
                  total_tokens=excluded.total_tokens,
                  total_cost=excluded.total_cost
                """,
                (
                    session.session_id,
                    session.title,
                    session.model,
                    session.working_directory,
                    _ts(session.created_at),
                    _ts(session.updated_at),
                    int(session.total_tokens),
                    float(session.total_cost),
                ),
            )

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._tx() as con:
            r = con.execute("SELECT * FROM sessions WHERE session_id=?", (session_id,)).fetchone()
            return self._session_from_row(r) if r is not None else None

    def list_sessions(self, *, limit: int = 50, offset: int = 0) -> List[SessionRecord]:
        with self._tx() as con:
            rows = con.execute(
                "SELECT * FROM sessions ORDER BY updated_at DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
            return [self._session_from_row(r) for r in rows]

    def delete_session(self, session_id: str) -> None:
        with self._tx() as con:
            plan_ids = [
                r["plan_id"] for r in con.execute("SELECT plan_id FROM plans WHERE session_id=?", (session_id,))
            ]
            for plan_id in plan_ids:
                con.execute("DELETE FROM plan_tasks WHERE plan_id=?", (plan_id,))
            con.execute("DELETE FROM plans WHERE session_id=?", (session_id,))
            con.execute("DELETE FROM messages WHERE session_id=?", (session_id,))
            con.execute("DELETE FROM sessions WHERE session_id=?", (session_id,))

    @staticmethod
    def _session_from_row(r: sqlite3.Row) -> SessionRecord:
        return SessionRecord(
            session_id=r["session_id"],
            title=r["title"],
            model=r["model"],
            working_directory=r["working_directory"],
            created_at=_parse_ts(r["created_at"]),
            updated_at=_parse_ts(r["updated_at"]),
            total_tokens=int(r["total_tokens"]),
            total_cost=float(r["total_cost"]),
        )

    # ------------------------------
    # Messages
    # ------------------------------

    def add_message(self, message: MessageRecord) -> None:
        content = [b.model_dump(mode="json") for b in message.content]
        with self._tx() as con:
            con.execute(
                """
                INSERT OR REPLACE INTO messages (
                  message_id, session_id, sequence, role, content_json, model,
                  input_tokens, output_tokens, cost, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.message_id,
                    message.session_id,
                    int(message.sequence),
                    _enum_value(message.role),
                    _dumps(content),
                    message.model,
                    int(message.input_tokens),
                    int(message.output_tokens),
                    float(message.cost),
                    _ts(message.created_at),
                ),
            )

    def get_message(self, message_id: str) -> Optional[MessageRecord]:
        with self._tx() as con:
            r = con.execute("SELECT * FROM messages WHERE message_id=?", (message_id,)).fetchone()
            return self._message_from_row(r) if r is not None else None

    def list_messages(self, session_id: str) -> List[MessageRecord]:
        with self._tx() as con:
            rows = con.execute(
                "SELECT * FROM messages WHERE session_id=? ORDER BY sequence ASC",
                (session_id,),
            ).fetchall()
            return [self._message_from_row(r) for r in rows]

    @staticmethod
    def _message_from_row(r: sqlite3.Row) -> MessageRecord:
        return MessageRecord(
            message_id=r["message_id"],
            session_id=r["session_id"],
            sequence=int(r["sequence"]),
            role=r["role"],
            content=_loads(r["content_json"], []),
            model=r["model"],
            input_tokens=int(r["input_tokens"]),
            output_tokens=int(r["output_tokens"]),
            cost=float(r["cost"]),
            created_at=_parse_ts(r["created_at"]),
        )

    # ------------------------------
    # Plans
    # ------------------------------

    def save_plan(self, plan: PlanDocument) -> None:
        with self._tx() as con:
            con.execute(
                """
                INSERT OR REPLACE INTO plans (
                  plan_id, session_id, title, description, context, risks_json, test_strategy,
                  technical_stack_json, status, status_reason, created_at, updated_at, approved_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    plan.id,
                    plan.session_id,
                    plan.title,
                    plan.description,
                    plan.context,
                    _dumps(plan.risks),
                    plan.test_strategy,
                    _dumps(plan.technical_stack),
                    _enum_value(plan.status),
                    plan.status_reason,
                    _ts(plan.created_at),
                    _ts(plan.updated_at),
                    _ts(plan.approved_at),
                ),
            )
            keep = [t.id for t in plan.tasks]
            if keep:
                marks = ", ".join("?" for _ in keep)
                con.execute(f"DELETE FROM plan_tasks WHERE plan_id=? AND task_id NOT IN ({marks})", (plan.id, *keep))
            else:
                con.execute("DELETE FROM plan_tasks WHERE plan_id=?", (plan.id,))
            for task in plan.tasks:
                self._upsert_task(con, plan.id, task)

    def get_plan(self, plan_id: str) -> Optional[PlanDocument]:
        with self._tx() as con:
            r = con.execute("SELECT * FROM plans WHERE plan_id=?", (plan_id,)).fetchone()
            if r is None:
                return None
            return self._plan_from_row(con, r)

    def list_plans(self, session_id: str) -> List[PlanDocument]:
        with self._tx() as con:
            rows = con.execute(
                "SELECT * FROM plans WHERE session_id=? ORDER BY created_at DESC",
                (session_id,),
            ).fetchall()
            return [self._plan_from_row(con, r) for r in rows]

    def delete_plan(self, plan_id: str) -> None:
        with self._tx() as con:
            con.execute("DELETE FROM plan_tasks WHERE plan_id=?", (plan_id,))
            con.execute("DELETE FROM plans WHERE plan_id=?", (plan_id,))

    def _plan_from_row(self, con: sqlite3.Connection, r: sqlite3.Row) -> PlanDocument:
        task_rows = con.execute(
            "SELECT * FROM plan_tasks WHERE plan_id=? ORDER BY task_order ASC",
            (r["plan_id"],),
        ).fetchall()
        return PlanDocument(
            id=r["plan_id"],
            session_id=r["session_id"],
            title=r["title"],
            description=r["description"],
            context=r["context"],
            risks=_loads(r["risks_json"], []),
            test_strategy=r["test_strategy"],
            technical_stack=_loads(r["technical_stack_json"], []),
            tasks=[self._task_from_row(t) for t in task_rows],
            status=r["status"],
            status_reason=r["status_reason"],
            created_at=_parse_ts(r["created_at"]),
            updated_at=_parse_ts(r["updated_at"]),
            approved_at=_parse_ts(r["approved_at"]),
        )

    # ------------------------------
    # Plan Tasks
    # ------------------------------

    def save_task(self, plan_id: str, task: PlanTask) -> None:
        with self._tx() as con:
            exists = con.execute("SELECT 1 FROM plans WHERE plan_id=?", (plan_id,)).fetchone()
            if exists is None:
                raise KeyError(f"Unknown plan: {plan_id}")
            self._upsert_task(con, plan_id, task)
            con.execute(
                "UPDATE plans SET updated_at=? WHERE plan_id=?",
                (_ts(datetime.utcnow()), plan_id),
            )

    def get_task(self, plan_id: str, task_id: str) -> Optional[PlanTask]:
        with self._tx() as con:
            r = con.execute(
                "SELECT * FROM plan_tasks WHERE plan_id=? AND task_id=?",
                (plan_id, task_id),
            ).fetchone()
            return self._task_from_row(r) if r is not None else None

    def list_tasks(self, plan_id: str) -> List[PlanTask]:
        with self._tx() as con:
            rows = con.execute(
                "SELECT * FROM plan_tasks WHERE plan_id=? ORDER BY task_order ASC",
                (plan_id,),
            ).fetchall()
            return [self._task_from_row(r) for r in rows]

    @staticmethod
    def _upsert_task(con: sqlite3.Connection, plan_id: str, task: PlanTask) -> None:
        con.execute(
            """
            INSERT OR REPLACE INTO plan_tasks (
              task_id, plan_id, task_order, title, description, task_type, dependencies_json,
              complexity, acceptance_json, status, status_reason, notes, started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.id,
                plan_id,
                int(task.order),
                task.title,
                task.description,
                _enum_value(task.task_type),
                _dumps(task.dependencies),
                int(task.complexity),
                _dumps(task.acceptance_criteria),
                _enum_value(task.status),
                task.status_reason,
                task.notes,
                _ts(task.started_at),
                _ts(task.completed_at),
            ),
        )

    @staticmethod
    def _task_from_row(r: sqlite3.Row) -> PlanTask:
        return PlanTask(
            id=r["task_id"],
            order=int(r["task_order"]),
            title=r["title"],
            description=r["description"],
            task_type=r["task_type"],
            dependencies=_loads(r["dependencies_json"], []),
            complexity=int(r["complexity"]),
            acceptance_criteria=_loads(r["acceptance_json"], []),
            status=r["status"],
            status_reason=r["status_reason"],
            notes=r["notes"],
            started_at=_parse_ts(r["started_at"]),
            completed_at=_parse_ts(r["completed_at"]),
        )
