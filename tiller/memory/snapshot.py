# ==============================
# Plan Snapshot Store
# ==============================
"""
Crash-recovery mirror of the active plan.

Files:
- <working_directory>/.tiller_plan_<session_id>.json

Rules:
- The durable store (MemoryRouter) stays authoritative; snapshots are best-effort copies.
- Writes are atomic: temp file in the same directory, then os.replace.
- The target must resolve inside the working directory and must not be a symlink.
"""

from __future__ import annotations

import os
import re
import tempfile
from pathlib import Path
from typing import Optional

from tiller.contracts.plan_schema import PlanDocument

SNAPSHOT_PREFIX = ".tiller_plan_"
_SESSION_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


class SnapshotPathError(ValueError):
    pass


class PlanSnapshotStore:
    def __init__(self, *, working_directory: Path) -> None:
        self.working_directory = Path(working_directory).expanduser().resolve()

    def path_for(self, session_id: str) -> Path:
        if not _SESSION_RE.match(session_id):
            raise SnapshotPathError(f"Invalid session id for snapshot: {session_id!r}")
        path = self.working_directory / f"{SNAPSHOT_PREFIX}{session_id}.json"
        if path.is_symlink():
            raise SnapshotPathError(f"Refusing to follow symlink: {path}")
        resolved = path.resolve()
        if resolved.parent != self.working_directory:
            raise SnapshotPathError(f"Snapshot path escapes working directory: {resolved}")
        return resolved

    def write(self, plan: PlanDocument) -> Path:
        target = self.path_for(plan.session_id)
        payload = plan.model_dump_json(indent=2)
        fd, tmp_name = tempfile.mkstemp(prefix=f"{target.name}.", suffix=".tmp", dir=str(target.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        return target

    def read(self, session_id: str) -> Optional[PlanDocument]:
        path = self.path_for(session_id)
        if not path.exists():
            return None
        return PlanDocument.model_validate_json(path.read_text(encoding="utf-8"))

    def delete(self, session_id: str) -> None:
        path = self.path_for(session_id)
        if path.exists():
            path.unlink()
