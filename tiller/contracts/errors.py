# ==============================
# Error Taxonomy
# ==============================
"""
Exceptions used for control flow across tiller/.

Rules:
- Tool failures are NOT exceptions; they travel as ToolResult envelopes.
- Provider failures live in tiller/models/providers/errors.py.
- Everything here derives from TillerError so front ends can catch one type.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class TillerError(Exception):
    """Base class for tiller control-flow errors."""


# ==============================
# Plan Errors
# ==============================
class PlanValidationKind(str, Enum):
    EMPTY_PLAN = "empty_plan"
    CIRCULAR_DEPENDENCY = "circular_dependency"
    UNKNOWN_DEPENDENCY = "unknown_dependency"


class PlanValidationError(TillerError):
    """Raised by finalize; the plan stays Draft."""

    def __init__(self, kind: PlanValidationKind, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.details = details or {}


class PlanStateError(TillerError):
    """Illegal plan lifecycle transition."""


class PlanNotFoundError(TillerError):
    pass


class PlanBusyError(TillerError):
    """A plan is already executing for this session."""


class PlanExecutionError(TillerError):
    """One task failed; the engine marks it Failed and keeps going."""

    def __init__(self, task_id: str, cause: str) -> None:
        super().__init__(f"Task {task_id} failed: {cause}")
        self.task_id = task_id
        self.cause = cause


# ==============================
# Agent Errors
# ==============================
class AgentError(TillerError):
    pass


class SessionNotFoundError(AgentError):
    pass


class IterationLimitExceeded(AgentError):
    def __init__(self, limit: int) -> None:
        super().__init__("tool iteration limit exceeded")
        self.limit = limit


# ==============================
# Storage Errors
# ==============================
class StorageBusyError(TillerError):
    """Storage lock contention; retryable."""
