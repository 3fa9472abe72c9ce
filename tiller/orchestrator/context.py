# ==============================
# Tool Execution Context
# ==============================
"""
Per-turn execution context handed to every tool call.

Principles:
- Created per agent turn; never persisted.
- Carries only what tools and gates need: where to run, how long, in which mode.
- Safe to log (environment values are redacted upstream before logging).
"""

# ==============================
# Imports
# ==============================
from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class AppMode(str, Enum):
    CHAT = "chat"
    PLAN = "plan"


class ToolExecutionContext(BaseModel):
    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    session_id: str = Field(..., description="Owning session.")
    working_directory: Path = Field(..., description="Root for relative paths and subprocesses.")
    env: Dict[str, str] = Field(default_factory=dict, description="Extra environment for subprocess tools.")
    auto_approve: bool = Field(default=False)
    timeout_seconds: float = Field(default=30.0, gt=0)
    mode: AppMode = Field(default=AppMode.CHAT)
    plan_id: Optional[str] = Field(default=None, description="Active plan, when running a plan task.")
    task_id: Optional[str] = Field(default=None)

    @property
    def read_only(self) -> bool:
        return self.mode == AppMode.PLAN

    def resolve_path(self, raw: str) -> Path:
        """Resolve a tool-supplied path against the working directory."""
        p = Path(raw).expanduser()
        if not p.is_absolute():
            p = self.working_directory / p
        return p.resolve()
