# ==============================
# Approval Gate (Human-in-the-Loop)
# ==============================
"""
Suspends an approval-requiring tool call until a human decides.

Decision precedence:
1. ctx.auto_approve              -> approved immediately, no human involved
2. callback registered           -> request delivered to the front end, wait for respond()
3. no callback                   -> request still published on the bus, wait for respond()
In cases 2 and 3 an unanswered request resolves to denied ("approval timed out") after
the configured timeout.

Design:
- Each ApprovalRequest owns a single-fulfillment response slot (asyncio.Future).
- One outstanding request per session: a per-session asyncio.Lock. A second caller in
  the same session waits on the lock; other sessions are unaffected.
- shutdown() resolves every outstanding request to denied and refuses new ones.

This module does NOT know about terminals. Front ends call respond(...).
"""

# ==============================
# Imports
# ==============================
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from tiller.contracts.event_schema import ApprovalRequested, ApprovalResolved
from tiller.contracts.tool_schema import ToolSpec, capability_names
from tiller.events.bus import EventBus
from tiller.orchestrator.context import ToolExecutionContext

logger = logging.getLogger("tiller.approval")

APPROVAL_TIMED_OUT = "approval timed out"
APPROVAL_SHUTDOWN = "shutting down"
APPROVAL_CANCELLED = "approval cancelled"


# ==============================
# Enums
# ==============================
class ApprovalDecision(str, Enum):
    APPROVE = "approve"
    DENY = "deny"


# ==============================
# Models
# ==============================
class ApprovalResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    approved: bool
    reason: Optional[str] = None
    decided_by: str = Field(default="human", description="human|auto|system")

    @classmethod
    def from_decision(cls, decision: ApprovalDecision, reason: Optional[str] = None) -> "ApprovalResponse":
        return cls(approved=decision == ApprovalDecision.APPROVE, reason=reason)

    @classmethod
    def denied(cls, reason: str, *, decided_by: str = "system") -> "ApprovalResponse":
        return cls(approved=False, reason=reason, decided_by=decided_by)


class ApprovalRequest(BaseModel):
    """
    Approval request for one tool call.

    Lives only for the duration of that call.
    """
    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    request_id: str = Field(default_factory=lambda: str(uuid4()))
    session_id: str = Field(...)
    tool_name: str = Field(...)
    description: str = Field(...)
    input: Dict[str, Any] = Field(default_factory=dict)
    capabilities: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    _slot: Optional["asyncio.Future[ApprovalResponse]"] = PrivateAttr(default=None)

    def attach_slot(self, slot: "asyncio.Future[ApprovalResponse]") -> None:
        self._slot = slot

    @property
    def slot(self) -> "asyncio.Future[ApprovalResponse]":
        if self._slot is None:
            raise RuntimeError("ApprovalRequest has no response slot")
        return self._slot

    @property
    def done(self) -> bool:
        return self._slot is not None and self._slot.done()

    def resolve(self, response: ApprovalResponse) -> bool:
        """Fulfil the slot once. Later calls are ignored and return False."""
        if self._slot is None or self._slot.done():
            return False
        self._slot.set_result(response)
        return True


ApprovalCallback = Callable[[ApprovalRequest], Awaitable[None]]


# ==============================
# Gate
# ==============================
class ApprovalGate:
    def __init__(self, *, bus: Optional[EventBus] = None, timeout_seconds: float = 300.0) -> None:
        self.bus = bus
        self.timeout_seconds = timeout_seconds
        self._callbacks: Dict[str, ApprovalCallback] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._pending: Dict[str, ApprovalRequest] = {}
        self._closed = False

    # ------------------------------
    # Front-end wiring
    # ------------------------------

    def register_callback(self, session_id: str, callback: ApprovalCallback) -> None:
        self._callbacks[session_id] = callback

    def unregister_callback(self, session_id: str) -> None:
        self._callbacks.pop(session_id, None)

    def pending(self, session_id: Optional[str] = None) -> List[ApprovalRequest]:
        return [r for r in self._pending.values() if session_id is None or r.session_id == session_id]

    def respond(self, request_id: str, response: ApprovalResponse) -> bool:
        request = self._pending.get(request_id)
        if request is None:
            return False
        return request.resolve(response)

    def shutdown(self) -> int:
        """Deny everything outstanding and refuse new requests. Returns how many were denied."""
        self._closed = True
        count = 0
        for request in list(self._pending.values()):
            if request.resolve(ApprovalResponse.denied(APPROVAL_SHUTDOWN)):
                count += 1
        return count

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------
    # Core
    # ------------------------------

    async def request_approval(
        self,
        *,
        ctx: ToolExecutionContext,
        spec: ToolSpec,
        tool_input: Dict[str, Any],
        description: Optional[str] = None,
    ) -> ApprovalResponse:
        if ctx.auto_approve:
            return ApprovalResponse(approved=True, reason="auto_approve", decided_by="auto")
        if self._closed:
            return ApprovalResponse.denied(APPROVAL_SHUTDOWN)

        lock = self._locks.setdefault(ctx.session_id, asyncio.Lock())
        async with lock:
            if self._closed:
                return ApprovalResponse.denied(APPROVAL_SHUTDOWN)

            request = ApprovalRequest(
                session_id=ctx.session_id,
                tool_name=spec.name,
                description=description or spec.description,
                input=dict(tool_input),
                capabilities=capability_names(spec.capabilities),
            )
            request.attach_slot(asyncio.get_running_loop().create_future())
            self._pending[request.request_id] = request
            try:
                self._publish_requested(request)
                response = await self._await_decision(request)
            finally:
                self._pending.pop(request.request_id, None)
                request.resolve(ApprovalResponse.denied(APPROVAL_CANCELLED))

        self._publish_resolved(request, response)
        return response

    async def _await_decision(self, request: ApprovalRequest) -> ApprovalResponse:
        callback = self._callbacks.get(request.session_id)
        if callback is not None:
            try:
                await callback(request)
            except Exception as exc:
                logger.warning(
                    "approval delivery failed: %s",
                    exc,
                    extra={"session_id": request.session_id, "tool": request.tool_name},
                )
                request.resolve(ApprovalResponse.denied(f"approval delivery failed: {exc}"))

        # a cancel of this task propagates even when the slot is already resolved
        done, _ = await asyncio.wait({request.slot}, timeout=self.timeout_seconds)
        if not done:
            request.resolve(ApprovalResponse.denied(APPROVAL_TIMED_OUT))
        return request.slot.result()

    # ------------------------------
    # Events
    # ------------------------------

    def _publish_requested(self, request: ApprovalRequest) -> None:
        if self.bus is None:
            return
        self.bus.publish(
            ApprovalRequested(
                session_id=request.session_id,
                request_id=request.request_id,
                tool_name=request.tool_name,
                description=request.description,
                input=request.input,
                capabilities=request.capabilities,
            )
        )

    def _publish_resolved(self, request: ApprovalRequest, response: ApprovalResponse) -> None:
        if self.bus is None:
            return
        self.bus.publish(
            ApprovalResolved(
                session_id=request.session_id,
                request_id=request.request_id,
                tool_name=request.tool_name,
                approved=response.approved,
                reason=response.reason,
            )
        )
