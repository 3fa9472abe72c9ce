# ==============================
# Tool Registry Tests
# ==============================
from __future__ import annotations

import pytest

from tiller.config.schema import PoliciesConfig, Settings
from tiller.contracts.tool_schema import Capability, ToolErrorCode, ToolMeta, ToolResult
from tiller.governance.policies import PLAN_MODE_DENIED, PolicyEngine
from tiller.orchestrator.approval import ApprovalDecision, ApprovalResponse
from tiller.orchestrator.context import AppMode
from tiller.tools.builtin import bash
from tiller.tools.registry import APPROVAL_DENIED_MESSAGE, NO_APPROVAL_MECHANISM, ToolRegistry

WRITE = frozenset({Capability.WRITE_FILES})


def test_register_rejects_duplicate_names(registry, recording_tool) -> None:
    registry.register(recording_tool("lookup"))
    with pytest.raises(ValueError):
        registry.register(recording_tool("Probe"))


def test_specs_and_definitions_are_sorted(registry, recording_tool) -> None:
    registry.register(recording_tool("zeta"))
    registry.register(recording_tool("alpha"))
    assert registry.names() == ["alpha", "zeta"]
    assert [d.name for d in registry.tool_definitions()] == ["alpha", "zeta"]
    assert registry.list()["alpha"]["capabilities"] == ["read_files"]


@pytest.mark.asyncio
async def test_unknown_tool_is_not_found(registry, make_ctx) -> None:
    res = await registry.execute("nope", {}, make_ctx())
    assert not res.ok
    assert res.error.code == ToolErrorCode.NOT_FOUND
    assert res.error.recoverable is True


@pytest.mark.asyncio
async def test_read_tool_runs_without_approval(registry, recording_tool, make_ctx) -> None:
    tool = recording_tool("lookup")
    registry.register(tool)
    res = await registry.execute("lookup", {"x": 1}, make_ctx())
    assert res.ok
    assert tool.calls == [{"x": 1}]
    assert res.meta.latency_ms is not None
    assert res.meta.tags["session_id"] == "s1"


@pytest.mark.asyncio
async def test_plan_mode_refuses_mutating_capability(registry, recording_tool, make_ctx) -> None:
    tool = recording_tool("writer", capabilities=WRITE)
    registry.register(tool)
    res = await registry.execute("writer", {}, make_ctx(mode=AppMode.PLAN, auto_approve=True))
    assert res.error.code == ToolErrorCode.PERMISSION_DENIED
    assert res.error.message == PLAN_MODE_DENIED
    assert tool.calls == []


@pytest.mark.asyncio
async def test_plan_mode_allows_read_and_plan_capabilities(registry, recording_tool, make_ctx) -> None:
    registry.register(recording_tool("reader"))
    registry.register(recording_tool("planner", capabilities=frozenset({Capability.PLAN_MANAGEMENT})))
    ctx = make_ctx(mode=AppMode.PLAN)
    assert (await registry.execute("reader", {}, ctx)).ok
    assert (await registry.execute("planner", {}, ctx)).ok


@pytest.mark.asyncio
async def test_plan_mode_rejects_redirected_shell_command(registry, make_ctx, tmp_path) -> None:
    registry.register(bash.build())
    ctx = make_ctx(mode=AppMode.PLAN, auto_approve=True)

    res = await registry.execute("bash", {"command": "ls -la > out.txt"}, ctx)

    assert res.error.code == ToolErrorCode.PERMISSION_DENIED
    assert res.error.message.startswith(PLAN_MODE_DENIED)
    assert not (tmp_path / "out.txt").exists()


@pytest.mark.asyncio
async def test_plan_mode_allows_read_only_shell_command(registry, make_ctx, tmp_path) -> None:
    (tmp_path / "visible.txt").write_text("x", encoding="utf-8")
    registry.register(bash.build())
    res = await registry.execute("bash", {"command": "ls"}, make_ctx(mode=AppMode.PLAN, auto_approve=True))
    assert res.ok, res.error
    assert "visible.txt" in res.data["output"]


@pytest.mark.asyncio
async def test_denied_approval_never_runs_tool(registry, gate, recording_tool, make_ctx) -> None:
    tool = recording_tool("writer", capabilities=WRITE)
    registry.register(tool)

    async def deny(request) -> None:
        gate.respond(request.request_id, ApprovalResponse.from_decision(ApprovalDecision.DENY))

    gate.register_callback("s1", deny)
    res = await registry.execute("writer", {"path": "a.txt"}, make_ctx())

    assert res.error.code == ToolErrorCode.APPROVAL_DENIED
    assert res.error.message == APPROVAL_DENIED_MESSAGE
    assert tool.calls == []


@pytest.mark.asyncio
async def test_approved_call_records_approver(registry, gate, recording_tool, make_ctx) -> None:
    tool = recording_tool("writer", capabilities=WRITE)
    registry.register(tool)

    async def approve(request) -> None:
        gate.respond(request.request_id, ApprovalResponse.from_decision(ApprovalDecision.APPROVE))

    gate.register_callback("s1", approve)
    res = await registry.execute("writer", {}, make_ctx())
    assert res.ok
    assert res.meta.approved_by == "human"
    assert len(tool.calls) == 1


@pytest.mark.asyncio
async def test_auto_approve_skips_gate(registry, recording_tool, make_ctx) -> None:
    tool = recording_tool("writer", capabilities=WRITE)
    registry.register(tool)
    res = await registry.execute("writer", {}, make_ctx(auto_approve=True))
    assert res.ok
    assert res.meta.approved_by == "auto"


@pytest.mark.asyncio
async def test_missing_gate_denies_approval_tools(recording_tool, make_ctx) -> None:
    registry = ToolRegistry()
    registry.register(recording_tool("writer", capabilities=WRITE))
    res = await registry.execute("writer", {}, make_ctx())
    assert res.error.code == ToolErrorCode.APPROVAL_DENIED
    assert res.error.message == NO_APPROVAL_MECHANISM


@pytest.mark.asyncio
async def test_slow_tool_times_out(registry, recording_tool, make_ctx) -> None:
    registry.register(recording_tool("slow", delay=2.0))
    res = await registry.execute("slow", {}, make_ctx(timeout_seconds=0.05))
    assert res.error.code == ToolErrorCode.TIMEOUT


@pytest.mark.asyncio
async def test_raising_tool_becomes_execution_failed(registry, recording_tool, make_ctx) -> None:
    registry.register(recording_tool("broken", error=RuntimeError("kaboom")))
    res = await registry.execute("broken", {}, make_ctx())
    assert res.error.code == ToolErrorCode.EXECUTION_FAILED
    assert res.error.message == "kaboom"
    assert res.to_model_text() == "execution_failed: kaboom"


def test_failure_without_error_record_still_renders() -> None:
    res = ToolResult.model_construct(ok=False, data=None, error=None, meta=ToolMeta(tool_name="odd"))
    assert res.to_model_text() == "execution_failed: tool failed without an error record"


@pytest.mark.asyncio
async def test_blocked_tool_policy(recording_tool, make_ctx) -> None:
    settings = Settings(policies=PoliciesConfig(blocked_tools=["lookup"]))
    registry = ToolRegistry(policy=PolicyEngine(settings))
    tool = recording_tool("lookup")
    registry.register(tool)
    res = await registry.execute("lookup", {}, make_ctx())
    assert res.error.code == ToolErrorCode.PERMISSION_DENIED
    assert tool.calls == []


@pytest.mark.asyncio
async def test_every_outcome_is_published(registry, bus, recording_tool, make_ctx) -> None:
    registry.register(recording_tool("lookup"))
    await registry.execute("lookup", {}, make_ctx())
    await registry.execute("missing", {}, make_ctx())

    events = bus.history(kind="tool.executed")
    assert [(e.tool_name, e.ok, e.error_code) for e in events] == [
        ("lookup", True, None),
        ("missing", False, "not_found"),
    ]
