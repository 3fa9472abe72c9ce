# ==============================
# Interactive REPL
# ==============================
"""
Text front end for a chat session.

Design:
- The agent turn (or plan run) is its own asyncio task. The presentation loop waits
  on whichever comes first: the turn finishing or an approval request arriving on
  the queue the ApprovalGate callback feeds.
- While an approval is outstanding the prompt still accepts /quit, which calls
  ApprovalGate.shutdown() (denying everything outstanding) and cancels the turn.
- Plan/task status events from the bus are printed as they happen.

Slash commands:
  /plan       toggle Plan mode (read-only tools + plan tool)
  /approve    approve the session's pending plan and run it
  /reject     reject the session's pending plan (optional reason)
  /status     mode and active plan
  /help       this list
  /quit       exit
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any, Awaitable, Callable, Optional, TextIO

from console.bootstrap import Runtime
from tiller.contracts.errors import TillerError
from tiller.contracts.event_schema import BaseEvent, PlanStatusChanged, TaskStatusChanged
from tiller.contracts.plan_schema import PlanStatus
from tiller.models.providers.errors import ProviderError
from tiller.orchestrator.approval import ApprovalDecision, ApprovalRequest, ApprovalResponse
from tiller.orchestrator.context import AppMode
from tiller.utils.formatters import render_plan

InputFn = Callable[[str], str]

HELP = __doc__.split("Slash commands:", 1)[1].strip("\n") if __doc__ else ""
YES = {"y", "yes"}


class Repl:
    def __init__(
        self,
        runtime: Runtime,
        *,
        session_id: str,
        mode: AppMode = AppMode.CHAT,
        auto_approve: bool = False,
        input_fn: Optional[InputFn] = None,
        output: Optional[TextIO] = None,
    ) -> None:
        self.runtime = runtime
        self.session_id = session_id
        self.mode = mode
        self.auto_approve = auto_approve
        self.input_fn = input_fn or input
        self.out = output or sys.stdout
        self.approvals: "asyncio.Queue[ApprovalRequest]" = asyncio.Queue()
        self.quitting = False

    # ------------------------------
    # I/O
    # ------------------------------

    def echo(self, text: str = "", *, end: str = "\n") -> None:
        self.out.write(text + end)
        self.out.flush()

    async def readline(self, prompt: str) -> Optional[str]:
        try:
            return await asyncio.to_thread(self.input_fn, prompt)
        except EOFError:
            return None

    async def _deliver(self, request: ApprovalRequest) -> None:
        await self.approvals.put(request)

    # ------------------------------
    # Main loop
    # ------------------------------

    async def run(self) -> int:
        gate = self.runtime.gate
        gate.register_callback(self.session_id, self._deliver)
        events = self.runtime.bus.subscribe()
        printer = asyncio.create_task(self._print_events(events))
        self.echo(f"tiller session {self.session_id}  (/help for commands)")
        try:
            while not self.quitting:
                line = await self.readline(self._prompt())
                if line is None:
                    break
                line = line.strip()
                if not line:
                    continue
                if line.startswith("/"):
                    await self.handle_command(line)
                    continue
                await self.drive(
                    self.runtime.agent.run_turn(
                        self.session_id,
                        line,
                        mode=self.mode,
                        on_text=self._on_text,
                        auto_approve=self.auto_approve,
                    )
                )
        finally:
            gate.unregister_callback(self.session_id)
            printer.cancel()
            self.runtime.bus.unsubscribe(events)
        return 0

    async def drive(self, work: Awaitable[Any]) -> Optional[Any]:
        """Run `work` as a task, answering approval requests until it finishes."""
        task = asyncio.ensure_future(work)
        while not task.done():
            getter = asyncio.ensure_future(self.approvals.get())
            done, _ = await asyncio.wait({task, getter}, return_when=asyncio.FIRST_COMPLETED)
            if getter not in done:
                getter.cancel()
                break
            await self._answer(getter.result(), task)

        try:
            result = await task
        except asyncio.CancelledError:
            self.echo("[turn cancelled]")
            return None
        except (TillerError, ProviderError) as exc:
            self.echo(f"[error] {exc}")
            return None
        self.echo()
        return result

    async def _answer(self, request: ApprovalRequest, task: "asyncio.Future[Any]") -> None:
        gate = self.runtime.gate
        self.echo(f"\n[approval] {request.tool_name}: {request.description}")
        self.echo(f"  capabilities: {', '.join(request.capabilities) or '-'}")
        self.echo(f"  input: {json.dumps(request.input, ensure_ascii=False)[:500]}")
        answer = await self.readline("  approve? [y/N] (/quit to exit) ")
        if answer is None or answer.strip() == "/quit":
            # cancel first so the turn cannot act on the shutdown denial
            task.cancel()
            denied = gate.shutdown()
            self.echo(f"[shutting down; {denied} pending approval(s) denied]")
            self.quitting = True
            return
        decision = ApprovalDecision.APPROVE if answer.strip().lower() in YES else ApprovalDecision.DENY
        gate.respond(request.request_id, ApprovalResponse.from_decision(decision))

    def _on_text(self, text: str) -> None:
        self.out.write(text)
        self.out.flush()

    def _prompt(self) -> str:
        return "plan> " if self.mode == AppMode.PLAN else "> "

    # ------------------------------
    # Commands
    # ------------------------------

    async def handle_command(self, line: str) -> None:
        cmd, _, arg = line.partition(" ")
        arg = arg.strip()
        engine = self.runtime.engine

        if cmd == "/quit":
            self.quitting = True
        elif cmd == "/help":
            self.echo(HELP)
        elif cmd == "/plan":
            self.mode = AppMode.CHAT if self.mode == AppMode.PLAN else AppMode.PLAN
            self.echo(f"[mode: {self.mode.value}]")
        elif cmd == "/status":
            self.echo(f"[mode: {self.mode.value}]")
            plan = await engine.get_active_plan(self.session_id)
            self.echo(render_plan(plan) if plan else "[no active plan]")
        elif cmd in ("/approve", "/reject"):
            plan = await engine.get_active_plan(self.session_id)
            if plan is None or plan.status != PlanStatus.PENDING_APPROVAL:
                self.echo("[no plan awaiting approval]")
                return
            if cmd == "/reject":
                await engine.reject(plan.id, arg or None)
                self.echo("[plan rejected]")
                return
            self.mode = AppMode.CHAT
            done = await self.drive(engine.approve(plan.id))
            if done is not None:
                self.echo(render_plan(done, show_descriptions=False))
        else:
            self.echo(f"[unknown command {cmd}; /help lists commands]")

    async def _print_events(self, queue: "asyncio.Queue[BaseEvent]") -> None:
        while True:
            event = await queue.get()
            if event.session_id != self.session_id:
                continue
            if isinstance(event, TaskStatusChanged):
                reason = f" ({event.reason})" if event.reason else ""
                self.echo(f"\n[task {event.task_order}] {event.new_status.value}{reason}")
            elif isinstance(event, PlanStatusChanged):
                self.echo(f"\n[plan] {event.new_status.value}")


async def run_repl(
    runtime: Runtime,
    *,
    session_id: Optional[str] = None,
    mode: AppMode = AppMode.CHAT,
    auto_approve: bool = False,
    input_fn: Optional[InputFn] = None,
    output: Optional[TextIO] = None,
) -> int:
    if session_id is None:
        session_id = (await runtime.agent.create_session()).session_id
    else:
        await runtime.agent.get_session(session_id)
    repl = Repl(
        runtime,
        session_id=session_id,
        mode=mode,
        auto_approve=auto_approve,
        input_fn=input_fn,
        output=output,
    )
    return await repl.run()


def stdin_approval_callback(runtime: Runtime, *, output: Optional[TextIO] = None) -> Callable[[ApprovalRequest], Awaitable[None]]:
    """Approval delivery for one-shot commands: ask on stdin and respond immediately."""
    out = output or sys.stdout

    async def _callback(request: ApprovalRequest) -> None:
        out.write(f"[approval] {request.tool_name}: {request.description}\n")
        out.flush()
        try:
            answer = await asyncio.to_thread(input, "approve? [y/N] ")
        except EOFError:
            answer = ""
        decision = ApprovalDecision.APPROVE if answer.strip().lower() in YES else ApprovalDecision.DENY
        runtime.gate.respond(request.request_id, ApprovalResponse.from_decision(decision))

    return _callback
