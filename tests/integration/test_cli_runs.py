from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List

import pytest

from console.bootstrap import build_runtime
from console.cli.main import main
from tiller.config.loader import load_settings
from tiller.contracts.plan_schema import PlanDocument, TaskType


def _run_cli(env, args: List[str], capsys: pytest.CaptureFixture[str]) -> Dict[str, Any]:
    code = main(["--repo-root", str(env.repo_root), *args])
    out = capsys.readouterr().out.strip()
    return {"code": code, "json": json.loads(out) if out.startswith("{") else None, "out": out}


def _seed_plan(env, *, finalize: bool = True) -> PlanDocument:
    """Draft a two-task plan in the sqlite store the CLI will open."""
    settings, _ = load_settings(repo_root=str(env.repo_root))
    rt = build_runtime(settings)

    async def _go() -> PlanDocument:
        session = await rt.agent.create_session(title="seeded")
        plan = await rt.engine.create_draft(
            session.session_id,
            title="Add greeting",
            technical_stack=["python"],
            risks=["none"],
        )
        first = await rt.engine.add_task(plan.id, title="Inspect module", task_type=TaskType.RESEARCH)
        await rt.engine.add_task(
            plan.id,
            title="Write greeting",
            task_type=TaskType.EDIT,
            dependencies=[first.id],
            acceptance_criteria=["greets the user"],
        )
        if finalize:
            return await rt.engine.finalize(plan.id)
        return await rt.engine.get_plan(plan.id)

    return asyncio.run(_go())


@pytest.mark.integration
def test_cli_ask_persists_session_and_history(tiller_env, capsys) -> None:
    asked = _run_cli(tiller_env, ["ask", "hello"], capsys)

    assert asked["code"] == 0
    assert asked["json"]["text"] == "EchoProvider: hello"
    assert asked["json"]["model"] == "echo"
    assert asked["json"]["provider_calls"] == 1
    session_id = asked["json"]["session_id"]

    sessions = _run_cli(tiller_env, ["sessions"], capsys)
    assert [s["session_id"] for s in sessions["json"]["sessions"]] == [session_id]

    history = _run_cli(tiller_env, ["history", "--session-id", session_id], capsys)
    assert [m["role"] for m in history["json"]["messages"]] == ["user", "assistant"]

    plans = _run_cli(tiller_env, ["plans", "--session-id", session_id], capsys)
    assert plans["json"]["plans"] == []

    again = _run_cli(tiller_env, ["ask", "second", "--session-id", session_id], capsys)
    assert again["json"]["session_id"] == session_id
    history = _run_cli(tiller_env, ["history", "--session-id", session_id], capsys)
    assert len(history["json"]["messages"]) == 4


@pytest.mark.integration
def test_cli_reports_domain_errors_as_json(tiller_env, capsys) -> None:
    missing_session = _run_cli(tiller_env, ["history", "--session-id", "nope"], capsys)
    missing_plan = _run_cli(tiller_env, ["plan-show", "--plan-id", "nope"], capsys)

    assert missing_session["code"] == 1
    assert missing_session["json"] == {
        "ok": False,
        "error": "SessionNotFoundError",
        "message": "Session not found: nope",
    }
    assert missing_plan["code"] == 1
    assert missing_plan["json"]["error"] == "PlanNotFoundError"


@pytest.mark.integration
def test_cli_plan_show_renders_text_and_json(tiller_env, capsys) -> None:
    plan = _seed_plan(tiller_env)

    shown = _run_cli(tiller_env, ["plan-show", "--plan-id", plan.id, "--json"], capsys)
    text = _run_cli(tiller_env, ["plan-show", "--plan-id", plan.id], capsys)
    listed = _run_cli(tiller_env, ["plans", "--session-id", plan.session_id], capsys)

    assert shown["json"]["status"] == "pending_approval"
    assert [t["title"] for t in shown["json"]["tasks"]] == ["Inspect module", "Write greeting"]
    assert shown["json"]["tasks"][1]["dependencies"] == [plan.tasks[0].id]
    assert text["out"].splitlines()[0] == "Plan: Add greeting  [pending_approval]  0/2 done"
    assert listed["json"]["plans"][0]["id"] == plan.id


@pytest.mark.integration
def test_cli_approve_plan_runs_tasks_in_order(tiller_env, capsys) -> None:
    plan = _seed_plan(tiller_env)

    approved = _run_cli(tiller_env, ["approve-plan", "--plan-id", plan.id], capsys)

    assert approved["code"] == 0
    assert approved["json"]["status"] == "completed"
    tasks = approved["json"]["tasks"]
    assert [t["status"] for t in tasks] == ["completed", "completed"]
    assert tasks[0]["notes"].startswith("EchoProvider: You are executing task 1 of 2")
    snapshot = tiller_env.working_directory / f".tiller_plan_{plan.session_id}.json"
    assert json.loads(snapshot.read_text(encoding="utf-8"))["status"] == "completed"

    history = _run_cli(tiller_env, ["history", "--session-id", plan.session_id], capsys)
    assert len(history["json"]["messages"]) == 4


@pytest.mark.integration
def test_cli_approve_without_running_then_cancel(tiller_env, capsys) -> None:
    plan = _seed_plan(tiller_env)

    approved = _run_cli(tiller_env, ["approve-plan", "--plan-id", plan.id, "--no-run"], capsys)
    again = _run_cli(tiller_env, ["approve-plan", "--plan-id", plan.id], capsys)
    cancelled = _run_cli(tiller_env, ["cancel-plan", "--plan-id", plan.id, "--reason", "changed my mind"], capsys)

    assert approved["json"]["status"] == "in_progress"
    assert [t["status"] for t in approved["json"]["tasks"]] == ["pending", "pending"]
    assert again["code"] == 1
    assert again["json"]["error"] == "PlanStateError"
    assert cancelled["json"] == {"id": plan.id, "status": "cancelled", "reason": "changed my mind"}


@pytest.mark.integration
def test_cli_reject_plan(tiller_env, capsys) -> None:
    plan = _seed_plan(tiller_env)

    rejected = _run_cli(tiller_env, ["reject-plan", "--plan-id", plan.id, "--reason", "too broad"], capsys)
    after = _run_cli(tiller_env, ["plan-show", "--plan-id", plan.id, "--json"], capsys)

    assert rejected["json"] == {"id": plan.id, "status": "rejected", "reason": "too broad"}
    assert after["json"]["status"] == "rejected"


@pytest.mark.integration
def test_cli_resume_plan_finishes_approved_work(tiller_env, capsys) -> None:
    plan = _seed_plan(tiller_env)
    _run_cli(tiller_env, ["approve-plan", "--plan-id", plan.id, "--no-run"], capsys)

    resumed = _run_cli(tiller_env, ["resume-plan", "--session-id", plan.session_id], capsys)
    nothing = _run_cli(tiller_env, ["resume-plan", "--session-id", plan.session_id], capsys)

    assert resumed["code"] == 0
    assert resumed["json"]["status"] == "completed"
    assert nothing["code"] == 1
    assert nothing["json"] == {"session_id": plan.session_id, "plan": None}
