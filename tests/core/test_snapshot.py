# ==============================
# Plan Snapshot Tests
# ==============================
from __future__ import annotations

import json
import os

import pytest

from tiller.contracts.plan_schema import PlanDocument, PlanStatus, PlanTask, TaskStatus
from tiller.memory.snapshot import PlanSnapshotStore, SnapshotPathError


def _plan(session_id: str = "session-1") -> PlanDocument:
    first = PlanTask(order=1, title="inspect", status=TaskStatus.COMPLETED, notes="looked around")
    second = PlanTask(order=2, title="change", dependencies=[first.id])
    return PlanDocument(session_id=session_id, title="snap", status=PlanStatus.IN_PROGRESS, tasks=[first, second])


def test_snapshot_round_trips_plan(tmp_path) -> None:
    store = PlanSnapshotStore(working_directory=tmp_path)
    plan = _plan()

    path = store.write(plan)

    assert path.name == ".tiller_plan_session-1.json"
    assert json.loads(path.read_text(encoding="utf-8"))["status"] == "in_progress"
    assert store.read("session-1") == plan


def test_rewrite_replaces_atomically(tmp_path) -> None:
    store = PlanSnapshotStore(working_directory=tmp_path)
    plan = _plan()
    store.write(plan)
    plan.status = PlanStatus.COMPLETED
    store.write(plan)

    assert store.read("session-1").status == PlanStatus.COMPLETED
    assert [p.name for p in tmp_path.iterdir()] == [".tiller_plan_session-1.json"]


def test_missing_snapshot_reads_as_none(tmp_path) -> None:
    assert PlanSnapshotStore(working_directory=tmp_path).read("nobody") is None


def test_delete_removes_file(tmp_path) -> None:
    store = PlanSnapshotStore(working_directory=tmp_path)
    path = store.write(_plan())
    store.delete("session-1")
    assert not path.exists()
    store.delete("session-1")


@pytest.mark.parametrize("session_id", ["../escape", "a/b", "", "x" * 129, "name with space"])
def test_unsafe_session_ids_are_refused(tmp_path, session_id: str) -> None:
    store = PlanSnapshotStore(working_directory=tmp_path)
    with pytest.raises(SnapshotPathError):
        store.path_for(session_id)


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
def test_symlinked_snapshot_is_refused(tmp_path) -> None:
    outside = tmp_path / "outside.json"
    outside.write_text("{}", encoding="utf-8")
    workdir = tmp_path / "work"
    workdir.mkdir()
    (workdir / ".tiller_plan_session-1.json").symlink_to(outside)

    store = PlanSnapshotStore(working_directory=workdir)
    with pytest.raises(SnapshotPathError):
        store.write(_plan())
    assert outside.read_text(encoding="utf-8") == "{}"
