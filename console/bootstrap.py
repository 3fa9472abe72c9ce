# ==============================
# Runtime Wiring
# ==============================
"""
Builds the object graph shared by every front end.

Order matters:
  memory, bus, gate -> registry (+ built-in tools) -> router -> agent -> plan engine
  -> plan tool registered last (it needs the engine, which needs the agent).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import requests

from tiller.config.schema import Settings
from tiller.events.bus import EventBus
from tiller.governance.policies import PolicyEngine
from tiller.governance.security import SecurityRedactor
from tiller.memory.router import MemoryRouter
from tiller.memory.snapshot import PlanSnapshotStore
from tiller.models.router import ModelRouter
from tiller.orchestrator.agent import AgentOrchestrator
from tiller.orchestrator.approval import ApprovalGate
from tiller.orchestrator.plan_engine import PlanEngine
from tiller.tools.catalog import register_builtin_tools, register_plan_tool
from tiller.tools.registry import ToolRegistry


@dataclass
class Runtime:
    settings: Settings
    memory: MemoryRouter
    bus: EventBus
    gate: ApprovalGate
    registry: ToolRegistry
    router: ModelRouter
    agent: AgentOrchestrator
    engine: PlanEngine


def build_runtime(
    settings: Settings,
    *,
    memory: Optional[MemoryRouter] = None,
    router: Optional[ModelRouter] = None,
    bus: Optional[EventBus] = None,
    http_session: Optional[requests.Session] = None,
) -> Runtime:
    working_directory = settings.working_directory_path()
    redactor = SecurityRedactor.from_settings(settings)
    memory = memory or MemoryRouter.from_settings(settings)
    bus = bus or EventBus(redactor=redactor, mirror_to_log=settings.logging.console)
    gate = ApprovalGate(bus=bus, timeout_seconds=settings.agent.approval_timeout_seconds)

    registry = ToolRegistry(policy=PolicyEngine(settings), gate=gate, bus=bus, redactor=redactor)
    register_builtin_tools(registry, http_session=http_session)

    router = router or ModelRouter.from_settings(settings)
    agent = AgentOrchestrator(
        router=router,
        registry=registry,
        memory=memory,
        config=settings.agent,
        working_directory=working_directory,
    )
    engine = PlanEngine(
        agent=agent,
        memory=memory,
        snapshots=PlanSnapshotStore(working_directory=working_directory),
        bus=bus,
    )
    register_plan_tool(registry, engine)

    return Runtime(
        settings=settings,
        memory=memory,
        bus=bus,
        gate=gate,
        registry=registry,
        router=router,
        agent=agent,
        engine=engine,
    )
