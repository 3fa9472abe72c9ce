# ==============================
# Governance Policies
# ==============================
"""
Policy evaluation for tool calls.

Design:
- Simple allow/deny evaluation from Settings.policies.
- Plan mode refuses tools whose capabilities mutate state.
- Shell tools are judged by the command they would run instead of by capability, so
  read-only inspection commands stay available while planning.

No persistence. No vendor calls.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional

from tiller.config.schema import Settings
from tiller.contracts.tool_schema import Capability, ToolSpec, capability_names
from tiller.governance.commands import classify_command
from tiller.orchestrator.context import AppMode

PLAN_MODE_DENIED = "write operations not allowed in plan mode"


@dataclass(frozen=True)
class PolicyDecision:
    allow: bool
    reason: str
    details: Dict[str, Any] = field(default_factory=dict)


def _norm(value: str) -> str:
    return value.strip().lower()


class PolicyEngine:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or Settings()
        pol = self.settings.policies
        self.plan_blocked: FrozenSet[Capability] = frozenset(Capability(c) for c in pol.plan_mode_blocked_capabilities)

    # ------------------------------
    # Tools
    # ------------------------------

    def evaluate_tool_call(self, *, spec: ToolSpec) -> PolicyDecision:
        pol = self.settings.policies
        norm_tool = _norm(spec.name)
        if not pol.enforce:
            return PolicyDecision(True, "policies_disabled", {"tool": spec.name})

        allowed = [_norm(t) for t in pol.allowed_tools]
        blocked = {_norm(t) for t in pol.blocked_tools}

        if norm_tool in blocked:
            return PolicyDecision(False, "tool_blocked", {"tool": spec.name})

        if allowed and norm_tool not in allowed:
            return PolicyDecision(False, "tool_not_in_allowlist", {"tool": spec.name})

        return PolicyDecision(True, "ok", {"tool": spec.name})

    # ------------------------------
    # Plan Mode
    # ------------------------------

    def evaluate_mode(self, *, spec: ToolSpec, mode: AppMode, shell_command: Optional[str] = None) -> PolicyDecision:
        if mode != AppMode.PLAN:
            return PolicyDecision(True, "ok", {"mode": mode.value})

        if shell_command is not None:
            verdict = classify_command(shell_command, self.settings.policies.read_only_commands)
            details = {"mode": mode.value, "command": shell_command, "matched": verdict.matched}
            if not verdict.allowed:
                return PolicyDecision(False, f"command_not_read_only:{verdict.reason}", details)
            return PolicyDecision(True, "read_only_command", details)

        hits = spec.capabilities & self.plan_blocked
        if hits:
            return PolicyDecision(
                False,
                "capability_blocked_in_plan_mode",
                {"mode": mode.value, "capabilities": capability_names(hits)},
            )
        return PolicyDecision(True, "ok", {"mode": mode.value})
