# ==============================
# Logging Bootstrap
# ==============================
"""
Logging bootstrap.

Goals:
- Centralize logger configuration using Settings.logging.
- Provide structured context fields (session_id, plan_id, task_id, tool).
- Keep it simple: stdlib logging + JSON-line formatter.

An interactive session keeps stdout for the conversation, so the console front end
routes logs to stderr or a file.
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

from tiller.config.schema import Settings

CONTEXT_FIELDS = ("session_id", "plan_id", "task_id", "tool", "kind")


@dataclass(frozen=True)
class LogContext:
    session_id: Optional[str] = None
    plan_id: Optional[str] = None
    task_id: Optional[str] = None
    tool: Optional[str] = None


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        # Optional structured extras
        for k in CONTEXT_FIELDS:
            value = getattr(record, k, None)
            if value is not None:
                payload[k] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def bootstrap_logger(settings: Settings, *, stream: Optional[TextIO] = None) -> logging.Logger:
    """
    Configure root logger based on settings.
    Returns a named logger ("tiller").
    """
    level = getattr(logging, settings.logging.level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    # clear existing handlers to avoid duplicates in reload
    root.handlers = []

    handler: logging.Handler
    if settings.logging.file:
        log_path = Path(settings.logging.file)
        if not log_path.is_absolute():
            log_path = settings.repo_root_path() / settings.app.paths.storage_dir / log_path
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, encoding="utf-8")
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(JsonLineFormatter())
    root.addHandler(handler)

    return logging.getLogger("tiller")


def with_context(logger: logging.Logger, ctx: LogContext) -> logging.LoggerAdapter:
    return logging.LoggerAdapter(
        logger,
        {
            "session_id": ctx.session_id,
            "plan_id": ctx.plan_id,
            "task_id": ctx.task_id,
            "tool": ctx.tool,
        },
    )
