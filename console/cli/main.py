# ==============================
# CLI Entrypoint
# ==============================
"""
CLI for tiller.

Supported commands:
  tiller chat [--session-id ID] [--plan-mode] [--auto-approve]
  tiller ask "explain src/app.py" [--session-id ID] [--plan-mode] [--auto-approve]
  tiller sessions [--limit 20]
  tiller history --session-id ID
  tiller plans --session-id ID
  tiller plan-show --plan-id ID
  tiller approve-plan --plan-id ID [--no-run] [--auto-approve]
  tiller reject-plan --plan-id ID [--reason "..."]
  tiller cancel-plan --plan-id ID [--reason "..."]
  tiller resume-plan --session-id ID [--auto-approve]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, List, Optional

from console.bootstrap import Runtime, build_runtime
from console.cli.repl import run_repl, stdin_approval_callback
from tiller.config.loader import load_settings
from tiller.contracts.errors import TillerError
from tiller.logging.logger import bootstrap_logger
from tiller.models.providers.errors import ProviderError
from tiller.orchestrator.context import AppMode
from tiller.utils.formatters import render_plan


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False, default=str))


def _mode(plan_mode: bool) -> AppMode:
    return AppMode.PLAN if plan_mode else AppMode.CHAT


# ==============================
# Commands
# ==============================


async def cmd_chat(rt: Runtime, *, session_id: Optional[str], plan_mode: bool, auto_approve: bool) -> int:
    return await run_repl(rt, session_id=session_id, mode=_mode(plan_mode), auto_approve=auto_approve)


async def cmd_ask(
    rt: Runtime,
    *,
    prompt: str,
    session_id: Optional[str],
    plan_mode: bool,
    auto_approve: bool,
) -> int:
    if session_id is None:
        session_id = (await rt.agent.create_session()).session_id
    rt.gate.register_callback(session_id, stdin_approval_callback(rt))
    try:
        res = await rt.agent.run_turn(session_id, prompt, mode=_mode(plan_mode), auto_approve=auto_approve)
    finally:
        rt.gate.unregister_callback(session_id)
    _print_json(res.model_dump(mode="json"))
    return 0


async def cmd_sessions(rt: Runtime, *, limit: int) -> int:
    sessions = await rt.memory.list_sessions(limit=limit)
    _print_json({"sessions": [s.model_dump(mode="json") for s in sessions]})
    return 0


async def cmd_history(rt: Runtime, *, session_id: str) -> int:
    await rt.agent.get_session(session_id)
    messages = await rt.memory.list_messages(session_id)
    _print_json({"session_id": session_id, "messages": [m.model_dump(mode="json") for m in messages]})
    return 0


async def cmd_plans(rt: Runtime, *, session_id: str) -> int:
    plans = await rt.engine.list_plans(session_id)
    _print_json(
        {
            "session_id": session_id,
            "plans": [
                {"id": p.id, "title": p.title, "status": p.status.value, "progress": p.progress()}
                for p in plans
            ],
        }
    )
    return 0


async def cmd_plan_show(rt: Runtime, *, plan_id: str, as_json: bool) -> int:
    plan = await rt.engine.get_plan(plan_id)
    if as_json:
        _print_json(plan.model_dump(mode="json"))
    else:
        print(render_plan(plan))
    return 0


async def cmd_approve_plan(rt: Runtime, *, plan_id: str, run: bool) -> int:
    plan = await rt.engine.get_plan(plan_id)
    rt.gate.register_callback(plan.session_id, stdin_approval_callback(rt))
    try:
        plan = await rt.engine.approve(plan_id, run=run)
    finally:
        rt.gate.unregister_callback(plan.session_id)
    _print_json(plan.model_dump(mode="json"))
    return 0 if not plan.has_failures() else 1


async def cmd_reject_plan(rt: Runtime, *, plan_id: str, reason: Optional[str]) -> int:
    plan = await rt.engine.reject(plan_id, reason)
    _print_json({"id": plan.id, "status": plan.status.value, "reason": plan.status_reason})
    return 0


async def cmd_cancel_plan(rt: Runtime, *, plan_id: str, reason: Optional[str]) -> int:
    plan = await rt.engine.cancel(plan_id, reason)
    _print_json({"id": plan.id, "status": plan.status.value, "reason": plan.status_reason})
    return 0


async def cmd_resume_plan(rt: Runtime, *, session_id: str) -> int:
    rt.gate.register_callback(session_id, stdin_approval_callback(rt))
    try:
        plan = await rt.engine.resume(session_id)
    finally:
        rt.gate.unregister_callback(session_id)
    if plan is None:
        _print_json({"session_id": session_id, "plan": None})
        return 1
    _print_json(plan.model_dump(mode="json"))
    return 0 if not plan.has_failures() else 1


# ==============================
# Dispatch
# ==============================


async def _dispatch(args: argparse.Namespace, rt: Runtime) -> int:
    if args.cmd == "chat":
        return await cmd_chat(rt, session_id=args.session_id, plan_mode=args.plan_mode, auto_approve=args.auto_approve)
    if args.cmd == "ask":
        return await cmd_ask(
            rt,
            prompt=args.prompt,
            session_id=args.session_id,
            plan_mode=args.plan_mode,
            auto_approve=args.auto_approve,
        )
    if args.cmd == "sessions":
        return await cmd_sessions(rt, limit=args.limit)
    if args.cmd == "history":
        return await cmd_history(rt, session_id=args.session_id)
    if args.cmd == "plans":
        return await cmd_plans(rt, session_id=args.session_id)
    if args.cmd == "plan-show":
        return await cmd_plan_show(rt, plan_id=args.plan_id, as_json=args.json)
    if args.cmd == "approve-plan":
        return await cmd_approve_plan(rt, plan_id=args.plan_id, run=not args.no_run)
    if args.cmd == "reject-plan":
        return await cmd_reject_plan(rt, plan_id=args.plan_id, reason=args.reason)
    if args.cmd == "cancel-plan":
        return await cmd_cancel_plan(rt, plan_id=args.plan_id, reason=args.reason)
    if args.cmd == "resume-plan":
        return await cmd_resume_plan(rt, session_id=args.session_id)
    raise SystemExit("Unknown command")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="tiller")
    ap.add_argument("--repo-root", default=None, help="Directory holding configs/ (default: cwd)")
    sub = ap.add_subparsers(dest="cmd", required=True)

    for name in ("chat", "ask"):
        p = sub.add_parser(name)
        if name == "ask":
            p.add_argument("prompt")
        p.add_argument("--session-id", default=None)
        p.add_argument("--plan-mode", action="store_true", help="Start in read-only Plan mode")
        p.add_argument("--auto-approve", action="store_true", help="Approve every tool call without asking")

    ap_sessions = sub.add_parser("sessions")
    ap_sessions.add_argument("--limit", type=int, default=20)

    for name in ("history", "plans"):
        p = sub.add_parser(name)
        p.add_argument("--session-id", required=True)

    ap_show = sub.add_parser("plan-show")
    ap_show.add_argument("--plan-id", required=True)
    ap_show.add_argument("--json", action="store_true")

    ap_approve = sub.add_parser("approve-plan")
    ap_approve.add_argument("--plan-id", required=True)
    ap_approve.add_argument("--no-run", action="store_true", help="Approve without executing tasks")
    ap_approve.add_argument("--auto-approve", action="store_true")

    for name in ("reject-plan", "cancel-plan"):
        p = sub.add_parser(name)
        p.add_argument("--plan-id", required=True)
        p.add_argument("--reason", default=None)

    ap_resume = sub.add_parser("resume-plan")
    ap_resume.add_argument("--session-id", required=True)
    ap_resume.add_argument("--auto-approve", action="store_true")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    settings, _ = load_settings(repo_root=args.repo_root)
    if getattr(args, "auto_approve", False) and args.cmd in {"approve-plan", "resume-plan"}:
        agent = settings.agent.model_copy(update={"auto_approve": True})
        settings = settings.model_copy(update={"agent": agent})
    bootstrap_logger(settings)
    rt = build_runtime(settings)

    try:
        return asyncio.run(_dispatch(args, rt))
    except (TillerError, ProviderError) as exc:
        _print_json({"ok": False, "error": type(exc).__name__, "message": str(exc)})
        return 1
    except KeyboardInterrupt:
        print("interrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
