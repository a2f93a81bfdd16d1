"""Unit tests for result records and the run-scoped failure set."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from repobatch.domain.models import CommitStatus, RunLayout, TargetResult, WorkflowStatus
from repobatch.persistence.results import (
    FileFailureSet,
    FileResultStore,
    MemoryFailureSet,
    MemoryResultStore,
)

if TYPE_CHECKING:
    from pathlib import Path

RUN_ID = "20260102T030405Z-abcd"


def _result(target_id: str, status: WorkflowStatus, *, attempt: int = 1) -> TargetResult:
    return TargetResult(
        target_id=target_id,
        name=target_id,
        workflow_status=status,
        commit_status=CommitStatus.SKIPPED,
        attempt=attempt,
    )


def test_file_result_store_overwrites_per_target(tmp_path: Path) -> None:
    layout = RunLayout(state_dir=tmp_path / ".repobatch", run_id=RUN_ID)
    store = FileResultStore(layout)

    store.write(_result("beta", WorkflowStatus.RAN_FAIL))
    store.write(_result("alpha", WorkflowStatus.RAN_OK))
    store.write(_result("beta", WorkflowStatus.RAN_OK, attempt=2))

    results = store.all()
    assert [item.target_id for item in results] == ["alpha", "beta"]
    assert results[1].attempt == 2
    assert results[1].workflow_status is WorkflowStatus.RAN_OK
    assert sorted(path.name for path in store.directory.iterdir()) == ["alpha.json", "beta.json"]


def test_file_result_store_skips_unreadable_files_and_run_level_files(tmp_path: Path) -> None:
    layout = RunLayout(state_dir=tmp_path / ".repobatch", run_id=RUN_ID)
    store = FileResultStore(layout)
    store.write(_result("alpha", WorkflowStatus.RAN_OK))
    (layout.target_results_dir / "broken.json").write_text('{"target_id": "bro', encoding="utf-8")
    layout.summary_path.write_text("{}", encoding="utf-8")

    assert [item.target_id for item in store.all()] == ["alpha"]


def test_file_failure_set_dedupes_and_clears(tmp_path: Path) -> None:
    failures = FileFailureSet(tmp_path / "results" / "failed.txt", tmp_path / "state.lock")

    assert failures.names() == []
    failures.add("beta")
    failures.add("alpha")
    failures.add("beta")
    failures.add("name with\nnewline")

    assert failures.names() == ["beta", "alpha", "name with\nnewline"]
    failures.clear()
    assert failures.names() == []
    assert failures.path.exists()


def test_file_failure_set_tolerates_malformed_lines(tmp_path: Path) -> None:
    path = tmp_path / "failed.txt"
    path.write_text('"alpha"\nnot-json\n\n42\n"beta"\n', encoding="utf-8")

    assert FileFailureSet(path, tmp_path / "state.lock").names() == ["alpha", "beta"]


def test_file_failure_set_concurrent_adds_are_complete(tmp_path: Path) -> None:
    failures = FileFailureSet(tmp_path / "failed.txt", tmp_path / "state.lock")
    names = [f"target-{index}" for index in range(64)]

    threads = [threading.Thread(target=failures.add, args=(name,)) for name in names]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(failures.names()) == sorted(names)


def test_memory_stores_dedupe_and_sort() -> None:
    results = MemoryResultStore()
    failures = MemoryFailureSet()

    results.write(_result("beta", WorkflowStatus.RAN_OK))
    results.write(_result("alpha", WorkflowStatus.RAN_FAIL))
    failures.add("alpha")
    failures.add("alpha")

    assert [item.target_id for item in results.all()] == ["alpha", "beta"]
    assert failures.names() == ["alpha"]
    failures.clear()
    assert failures.names() == []
