# ==============================
# Event Bus
# ==============================
"""
In-process event bus between the core and front ends.

Responsibilities:
- Accept typed events (tiller/contracts/event_schema.py)
- Scrub payload via SecurityRedactor
- Fan out to every subscriber queue without blocking the publisher
- Optionally mirror to logs

Front ends answer approval requests through ApprovalGate.respond(...), never through
the bus itself.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Deque, List, Optional

from tiller.config.schema import Settings
from tiller.contracts.event_schema import BaseEvent
from tiller.governance.security import SecurityRedactor


class EventBus:
    def __init__(
        self,
        *,
        logger: Optional[logging.Logger] = None,
        redactor: Optional[SecurityRedactor] = None,
        mirror_to_log: bool = True,
        max_queue_size: int = 1000,
        history_size: int = 500,
    ) -> None:
        self.logger = logger or logging.getLogger("tiller.events")
        self.redactor = redactor or SecurityRedactor()
        self.mirror_to_log = mirror_to_log
        self.max_queue_size = max_queue_size
        self._subscribers: List["asyncio.Queue[BaseEvent]"] = []
        self._history: Deque[BaseEvent] = deque(maxlen=history_size)

    def subscribe(self) -> "asyncio.Queue[BaseEvent]":
        queue: "asyncio.Queue[BaseEvent]" = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[BaseEvent]") -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, event: BaseEvent) -> BaseEvent:
        data = event.model_dump(mode="json")
        sanitized = self.redactor.redact_dict(data)
        safe = event if sanitized == data else type(event).model_validate(sanitized)

        self._history.append(safe)
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(safe)
            except asyncio.QueueFull:
                self.logger.warning("event dropped: subscriber queue full", extra={"kind": safe.kind})

        if self.mirror_to_log:
            self.logger.info(
                "event",
                extra={
                    "session_id": safe.session_id,
                    "plan_id": getattr(safe, "plan_id", None),
                    "task_id": getattr(safe, "task_id", None),
                    "tool": getattr(safe, "tool_name", None),
                    "kind": safe.kind,
                },
            )
        return safe

    def history(self, *, kind: Optional[str] = None) -> List[BaseEvent]:
        if kind is None:
            return list(self._history)
        return [e for e in self._history if e.kind == kind]

    @classmethod
    def from_settings(cls, settings: Settings) -> "EventBus":
        """
        Convenience constructor for console wiring.
        """
        redactor = SecurityRedactor.from_settings(settings)
        return cls(redactor=redactor, mirror_to_log=settings.logging.console)
