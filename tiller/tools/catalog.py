# ==============================
# Built-in Tool Catalog
# ==============================
"""
Registers the built-in tools on a ToolRegistry.

The plan tool needs a PlanEngine, which itself needs the agent (and so the registry);
callers construct the engine after the registry and pass it here, or register
PlanTool later with register_plan_tool(...).
"""

from __future__ import annotations

from typing import List, Optional

import requests

from tiller.orchestrator.plan_engine import PlanEngine
from tiller.tools.builtin import bash, edit_file, glob, grep, http_request, ls, plan_tool, read_file, write_file
from tiller.tools.registry import ToolRegistry


def register_builtin_tools(
    registry: ToolRegistry,
    *,
    engine: Optional[PlanEngine] = None,
    http_session: Optional[requests.Session] = None,
) -> List[str]:
    tools = [
        read_file.build(),
        write_file.build(),
        edit_file.build(),
        ls.build(),
        glob.build(),
        grep.build(),
        bash.build(),
        http_request.build(session=http_session),
    ]
    for tool in tools:
        registry.register(tool)
    if engine is not None:
        register_plan_tool(registry, engine)
    return registry.names()


def register_plan_tool(registry: ToolRegistry, engine: PlanEngine) -> None:
    registry.register(plan_tool.build(engine))
