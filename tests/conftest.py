# ==============================
# Testing Fixtures
# ==============================
from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

import pytest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from tiller.config.schema import AgentConfig, ModelPricing
from tiller.contracts.llm_schema import (
    LLMRequest,
    LLMResponse,
    StopReason,
    TextBlock,
    TokenUsage,
    ToolUseBlock,
)
from tiller.contracts.tool_schema import Capability, ToolResult
from tiller.events.bus import EventBus
from tiller.memory.in_memory import InMemoryBackend
from tiller.memory.router import MemoryRouter
from tiller.memory.snapshot import PlanSnapshotStore
from tiller.models.providers.base import Provider
from tiller.models.router import ModelRouter
from tiller.orchestrator.agent import AgentOrchestrator
from tiller.orchestrator.approval import ApprovalGate
from tiller.orchestrator.context import ToolExecutionContext
from tiller.orchestrator.plan_engine import PlanEngine
from tiller.tools.base import BaseTool
from tiller.tools.registry import ToolRegistry
from tiller.utils.retry import RetryPolicy

SCRIPTED_MODEL = "scripted-model"

Scripted = Union[LLMResponse, BaseException]
Responder = Callable[[LLMRequest], Scripted]


# ==============================
# Scripted LLM
# ==============================
class Script:
    """Builders for scripted provider responses."""

    @staticmethod
    def text(text: str, *, input_tokens: int = 0, output_tokens: int = 0) -> LLMResponse:
        return LLMResponse(
            model=SCRIPTED_MODEL,
            content=[TextBlock(text=text)],
            stop_reason=StopReason.END_TURN,
            usage=TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens),
        )

    @staticmethod
    def tools(*calls: Tuple[str, Dict[str, Any], str], text: Optional[str] = None) -> LLMResponse:
        content: List[Any] = [TextBlock(text=text)] if text else []
        content += [ToolUseBlock(id=call_id, name=name, input=params) for name, params, call_id in calls]
        return LLMResponse(model=SCRIPTED_MODEL, content=content, stop_reason=StopReason.TOOL_USE)


class ScriptedProvider(Provider):
    """
    Replays queued responses (or asks a responder) and records every request.

    Queued exceptions are raised instead of returned. `hold`, when set, parks each call
    until the event fires.
    """

    name = "scripted"
    supports_streaming = False
    context_windows = {SCRIPTED_MODEL: 100_000}
    # $0.001 per input token, $0.002 per output token
    pricing = {SCRIPTED_MODEL: ModelPricing(input_per_million=1000.0, output_per_million=2000.0)}

    def __init__(self, script: Optional[Iterable[Scripted]] = None, *, responder: Optional[Responder] = None) -> None:
        super().__init__(default_model=SCRIPTED_MODEL)
        self.script: List[Scripted] = list(script or [])
        self.responder = responder
        self.requests: List[LLMRequest] = []
        self.hold: Optional[asyncio.Event] = None

    async def complete(self, request: LLMRequest) -> LLMResponse:
        self.requests.append(request)
        if self.hold is not None:
            await self.hold.wait()
        if self.responder is not None:
            out = self.responder(request)
        elif self.script:
            out = self.script.pop(0)
        else:
            out = Script.text("done")
        if isinstance(out, BaseException):
            raise out
        return out


@pytest.fixture
def script() -> type:
    return Script


@pytest.fixture
def provider() -> ScriptedProvider:
    """Deterministic provider; tests fill provider.script or provider.responder."""
    return ScriptedProvider()


@pytest.fixture
def model_router(provider: ScriptedProvider) -> ModelRouter:
    return ModelRouter(
        providers={"scripted": provider},
        default_provider="scripted",
        default_model=SCRIPTED_MODEL,
        retry_policy=RetryPolicy.no_retry(),
    )


# ==============================
# Tools
# ==============================
class RecordingTool(BaseTool):
    """Records params; optionally sleeps or raises to exercise registry failure paths."""

    def __init__(
        self,
        name: str = "lookup",
        *,
        capabilities: FrozenSet[Capability] = frozenset({Capability.READ_FILES}),
        approval: Optional[bool] = None,
        delay: float = 0.0,
        error: Optional[Exception] = None,
    ) -> None:
        super().__init__()
        self.name = name
        self.description = f"{name} test tool"
        self.capabilities = frozenset(capabilities)
        self._approval = approval
        self.delay = delay
        self.error = error
        self.calls: List[Dict[str, Any]] = []
        self.contexts: List[ToolExecutionContext] = []

    def requires_approval(self) -> bool:
        if self._approval is None:
            return super().requires_approval()
        return self._approval

    async def run(self, params: Dict[str, Any], ctx: ToolExecutionContext) -> ToolResult:
        self.calls.append(dict(params))
        self.contexts.append(ctx)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return ToolResult.success(data={"output": f"{self.name} ok", "params": dict(params)}, meta=self.meta())


@pytest.fixture
def recording_tool() -> type:
    return RecordingTool


@pytest.fixture
def make_ctx(tmp_path: Path) -> Callable[..., ToolExecutionContext]:
    def _make(**overrides: Any) -> ToolExecutionContext:
        fields: Dict[str, Any] = {"session_id": "s1", "working_directory": tmp_path}
        fields.update(overrides)
        return ToolExecutionContext(**fields)

    return _make


# ==============================
# Core Runtime Pieces
# ==============================
@pytest.fixture
def memory_backend() -> InMemoryBackend:
    """In-memory memory backend for deterministic persistence during tests."""
    return InMemoryBackend()


@pytest.fixture
def memory(memory_backend: InMemoryBackend) -> MemoryRouter:
    return MemoryRouter(memory_backend, retry_policy=RetryPolicy.no_retry(), offload=False)


@pytest.fixture
def bus() -> EventBus:
    return EventBus(mirror_to_log=False)


@pytest.fixture
def gate(bus: EventBus) -> ApprovalGate:
    return ApprovalGate(bus=bus, timeout_seconds=2.0)


@pytest.fixture
def registry(gate: ApprovalGate, bus: EventBus) -> ToolRegistry:
    return ToolRegistry(gate=gate, bus=bus)


@pytest.fixture
def agent(model_router: ModelRouter, registry: ToolRegistry, memory: MemoryRouter, tmp_path: Path) -> AgentOrchestrator:
    return AgentOrchestrator(
        router=model_router,
        registry=registry,
        memory=memory,
        config=AgentConfig(),
        working_directory=tmp_path,
    )


@pytest.fixture
def engine(agent: AgentOrchestrator, memory: MemoryRouter, bus: EventBus, tmp_path: Path) -> PlanEngine:
    return PlanEngine(
        agent=agent,
        memory=memory,
        snapshots=PlanSnapshotStore(working_directory=tmp_path),
        bus=bus,
    )
