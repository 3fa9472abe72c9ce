# ==============================
# Agent Orchestrator
# ==============================
"""
Drives one conversational turn: provider call -> tool calls -> provider call ...

Design:
- One run_turn(...) per user message. The turn may span several tool round-trips.
- Tool calls go through ToolRegistry.execute (gates, approval, timeout). Results are
  folded back as one user message of tool-result blocks, in the order the provider
  issued the tool uses.
- Every message (user, assistant, tool results) is persisted the moment it exists,
  so a failure mid-turn leaves a recoverable partial transcript.
- The loop is bounded: after max_tool_iterations tool rounds the turn aborts with
  IterationLimitExceeded, i.e. at most max_tool_iterations + 1 provider calls.
- Provider errors that survive the router's retry policy propagate to the caller.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from tiller.config.schema import AgentConfig
from tiller.contracts.errors import IterationLimitExceeded, SessionNotFoundError
from tiller.contracts.llm_schema import (
    LLMRequest,
    LLMResponse,
    Message,
    Role,
    StopReason,
    StreamAccumulator,
    StreamEventKind,
    TokenUsage,
    ToolResultBlock,
    ToolUseBlock,
)
from tiller.contracts.session_schema import MessageRecord, SessionRecord
from tiller.memory.router import MemoryRouter
from tiller.models.router import ModelRouter, ModelSelection
from tiller.orchestrator.context import AppMode, ToolExecutionContext
from tiller.orchestrator.conversation import Conversation
from tiller.tools.registry import ToolRegistry

logger = logging.getLogger("tiller.agent")

TextCallback = Callable[[str], Union[None, Awaitable[None]]]

DEFAULT_SYSTEM_PROMPT = (
    "You are tiller, an AI coding assistant running in the user's terminal. "
    "Use the available tools to inspect and change files in the working directory. "
    "Prefer small, verifiable steps and explain what you changed."
)

PLAN_MODE_PROMPT = (
    "You are in PLAN mode. The workspace is read-only: do not attempt to write files "
    "or run mutating commands. Investigate with read-only tools, then use the `plan` tool "
    "to create a plan, add tasks (with dependencies by task order), and finalize it for "
    "the user's approval."
)

TITLE_CHARS = 60


class AgentResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    text: str = ""
    model: str = ""
    stop_reason: Optional[StopReason] = None
    iterations: int = Field(default=0, description="Tool round-trips performed.")
    provider_calls: int = 0
    tool_calls: int = 0
    usage: TokenUsage = Field(default_factory=TokenUsage)
    cost: float = 0.0


class AgentOrchestrator:
    def __init__(
        self,
        *,
        router: ModelRouter,
        registry: ToolRegistry,
        memory: MemoryRouter,
        config: Optional[AgentConfig] = None,
        working_directory: Optional[Path] = None,
    ) -> None:
        self.router = router
        self.registry = registry
        self.memory = memory
        self.config = config or AgentConfig()
        self.working_directory = (working_directory or Path.cwd()).resolve()
        self._turn_locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------
    # Sessions
    # ------------------------------

    async def create_session(self, *, title: Optional[str] = None, model: Optional[str] = None) -> SessionRecord:
        sel = self.router.select(override_model=model)
        session = SessionRecord(
            title=title,
            model=sel.model,
            working_directory=str(self.working_directory),
        )
        await self.memory.save_session(session)
        logger.info("session created", extra={"session_id": session.session_id})
        return session

    async def get_session(self, session_id: str) -> SessionRecord:
        session = await self.memory.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    # ------------------------------
    # Turn
    # ------------------------------

    async def run_turn(
        self,
        session_id: str,
        user_message: str,
        *,
        mode: AppMode = AppMode.CHAT,
        plan_id: Optional[str] = None,
        task_id: Optional[str] = None,
        on_text: Optional[TextCallback] = None,
        auto_approve: Optional[bool] = None,
    ) -> AgentResponse:
        lock = self._turn_locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            return await self._run_turn(
                session_id,
                user_message,
                mode=mode,
                plan_id=plan_id,
                task_id=task_id,
                on_text=on_text,
                auto_approve=self.config.auto_approve if auto_approve is None else auto_approve,
            )

    async def _run_turn(
        self,
        session_id: str,
        user_message: str,
        *,
        mode: AppMode,
        plan_id: Optional[str],
        task_id: Optional[str],
        on_text: Optional[TextCallback],
        auto_approve: bool,
    ) -> AgentResponse:
        session = await self.get_session(session_id)
        records = await self.memory.list_messages(session_id)
        conversation = Conversation.from_records(records)
        sequence = max((r.sequence for r in records), default=-1) + 1
        sel = self.router.select(override_model=session.model)
        extra = {"session_id": session_id, "plan_id": plan_id, "task_id": task_id}

        if not session.title:
            session = session.model_copy(update={"title": user_message.strip()[:TITLE_CHARS] or None})

        user = Message.user(user_message)
        sequence = await self._persist(session_id, sequence, user)
        conversation.append(user)

        ctx = ToolExecutionContext(
            session_id=session_id,
            working_directory=self.working_directory,
            auto_approve=auto_approve,
            timeout_seconds=self.config.tool_timeout_seconds,
            mode=mode,
            plan_id=plan_id,
            task_id=task_id,
            env=dict(self.config.tool_env),
        )
        result = AgentResponse(session_id=session_id, model=sel.model)
        iterations = 0

        while True:
            request = LLMRequest(
                model=sel.model,
                messages=conversation.trimmed(self.router.context_window(sel)),
                system=self._system_prompt(mode),
                tools=self.registry.tool_definitions(),
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
            )
            response = await self._call_provider(request, sel, on_text)
            result.provider_calls += 1

            cost = self.router.calculate_cost(
                response.model or sel.model,
                response.usage.input_tokens,
                response.usage.output_tokens,
                provider=sel.provider,
            )
            assistant = response.to_message()
            sequence = await self._persist(
                session_id,
                sequence,
                assistant,
                model=response.model or sel.model,
                usage=response.usage,
                cost=cost,
            )
            conversation.append(assistant)
            session = await self._account(session, response.usage, cost)
            result.usage = TokenUsage(
                input_tokens=result.usage.input_tokens + response.usage.input_tokens,
                output_tokens=result.usage.output_tokens + response.usage.output_tokens,
            )
            result.cost += cost

            uses = response.tool_uses()
            if not uses:
                result.text = response.text()
                result.stop_reason = response.stop_reason
                result.iterations = iterations
                logger.info(
                    "turn finished after %d provider call(s)",
                    result.provider_calls,
                    extra=extra,
                )
                return result

            results = await self._execute_tools(uses, ctx)
            result.tool_calls += len(uses)
            tool_message = Message(role=Role.USER, content=results)
            sequence = await self._persist(session_id, sequence, tool_message)
            conversation.append(tool_message)

            iterations += 1
            if iterations > self.config.max_tool_iterations:
                logger.warning(
                    "tool iteration limit (%d) exceeded",
                    self.config.max_tool_iterations,
                    extra=extra,
                )
                raise IterationLimitExceeded(self.config.max_tool_iterations)

    # ------------------------------
    # Steps
    # ------------------------------

    async def _call_provider(
        self,
        request: LLMRequest,
        sel: ModelSelection,
        on_text: Optional[TextCallback],
    ) -> LLMResponse:
        if not (self.config.stream and self.router.supports_streaming(sel)):
            response = await self.router.complete(request, selection=sel)
            if on_text is not None and response.text():
                await _emit(on_text, response.text())
            return response

        acc = StreamAccumulator(model=sel.model)
        async for event in self.router.stream(request, selection=sel):
            if event.kind == StreamEventKind.TEXT_DELTA and event.text and on_text is not None:
                await _emit(on_text, event.text)
            acc.add(event)
        return acc.build()

    async def _execute_tools(self, uses: List[ToolUseBlock], ctx: ToolExecutionContext) -> List[Any]:
        blocks: List[Any] = []
        for use in uses:
            outcome = await self.registry.execute(use.name, use.input, ctx)
            blocks.append(
                ToolResultBlock(
                    tool_use_id=use.id,
                    content=outcome.to_model_text(),
                    is_error=not outcome.ok,
                )
            )
        return blocks

    async def _persist(
        self,
        session_id: str,
        sequence: int,
        message: Message,
        *,
        model: Optional[str] = None,
        usage: Optional[TokenUsage] = None,
        cost: float = 0.0,
    ) -> int:
        usage = usage or TokenUsage()
        await self.memory.add_message(
            MessageRecord(
                session_id=session_id,
                sequence=sequence,
                role=message.role,
                content=list(message.content),
                model=model,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                cost=cost,
            )
        )
        return sequence + 1

    async def _account(self, session: SessionRecord, usage: TokenUsage, cost: float) -> SessionRecord:
        updated = session.model_copy(
            update={
                "total_tokens": session.total_tokens + usage.total_tokens,
                "total_cost": session.total_cost + cost,
                "updated_at": datetime.utcnow(),
            }
        )
        await self.memory.save_session(updated)
        return updated

    def _system_prompt(self, mode: AppMode) -> str:
        base = self.config.system_prompt or DEFAULT_SYSTEM_PROMPT
        parts = [base, f"Working directory: {self.working_directory}"]
        if mode == AppMode.PLAN:
            parts.append(PLAN_MODE_PROMPT)
        return "\n\n".join(parts)


async def _emit(callback: TextCallback, text: str) -> None:
    out = callback(text)
    if inspect.isawaitable(out):
        await out
