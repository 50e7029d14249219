import json
import os
from pathlib import Path

import pytest

from specpilot.errors import ProtectedPathError, SpecStoreError
from specpilot.state import (
    ActivityEntry,
    ActivityLog,
    ExecutionState,
    ExecutionStateStore,
    PersistedRun,
    SpecStore,
)
from specpilot.state.spec_store import content_hash


def _store(root: Path, **kwargs) -> SpecStore:
    return SpecStore(root, manifest_path=root / ".specpilot" / "backups.json", **kwargs)


def test_write_snapshots_previous_content_before_commit(tmp_path: Path) -> None:
    target = tmp_path / "app.js"
    target.write_text("const x = ;\n", encoding="utf-8")
    store = _store(tmp_path)

    spec_file = store.write("app.js", "const x = 0;\n", label="fix")

    assert target.read_text(encoding="utf-8") == "const x = 0;\n"
    assert spec_file.path == "app.js"
    assert spec_file.content_hash == content_hash("const x = 0;\n")
    assert spec_file.backup_path is not None
    assert ".bak." in spec_file.backup_path
    assert (tmp_path / spec_file.backup_path).read_text(encoding="utf-8") == "const x = ;\n"

    manifest = store.backup_manifest("app.js")
    assert manifest[-1]["backup_id"] == spec_file.backup_path
    assert manifest[-1]["label"] == "fix"


def test_write_new_file_has_no_backup(tmp_path: Path) -> None:
    store = _store(tmp_path)

    spec_file = store.write("notes/new.txt", "hello\n")

    assert spec_file.backup_path is None
    assert (tmp_path / "notes" / "new.txt").read_text(encoding="utf-8") == "hello\n"


def test_backups_are_pruned_to_max(tmp_path: Path) -> None:
    (tmp_path / "main.py").write_text("v0\n", encoding="utf-8")
    store = _store(tmp_path, max_backups=3)

    for version in range(1, 7):
        store.write("main.py", f"v{version}\n")

    backups = store.list_backups("main.py")
    assert len(backups) == 3
    contents = [(tmp_path / item).read_text(encoding="utf-8") for item in backups]
    assert contents == ["v5\n", "v4\n", "v3\n"]


def test_protected_paths_are_refused(tmp_path: Path) -> None:
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "config").write_text("[core]\n", encoding="utf-8")
    store = _store(tmp_path, protected_paths=[".git/*"])

    with pytest.raises(ProtectedPathError):
        store.write(".git/config", "oops\n")

    assert (tmp_path / ".git" / "config").read_text(encoding="utf-8") == "[core]\n"
    assert store.list_backups(".git/config") == []


def test_restore_latest_backup_keeps_current_content_as_backup(tmp_path: Path) -> None:
    (tmp_path / "main.py").write_text("original\n", encoding="utf-8")
    store = _store(tmp_path)
    first = store.write("main.py", "broken\n")

    restored = store.restore(first.backup_path or "")

    assert (tmp_path / "main.py").read_text(encoding="utf-8") == "original\n"
    assert restored.backup_path is not None
    assert (tmp_path / restored.backup_path).read_text(encoding="utf-8") == "broken\n"


def test_restore_unknown_backup_raises(tmp_path: Path) -> None:
    store = _store(tmp_path)

    with pytest.raises(SpecStoreError):
        store.restore("missing.py.bak.20240101T000000000000Z")


def test_crash_during_commit_leaves_original_and_backup(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    target = tmp_path / "main.py"
    target.write_text("stable\n", encoding="utf-8")
    store = _store(tmp_path)
    real_replace = os.replace

    def failing_replace(src, dst) -> None:
        if Path(dst).resolve() == target.resolve():
            raise OSError("disk full")
        real_replace(src, dst)

    monkeypatch.setattr("specpilot.state.spec_store.os.replace", failing_replace)

    with pytest.raises(SpecStoreError):
        store.write("main.py", "half-written\n")

    assert target.read_text(encoding="utf-8") == "stable\n"
    backups = store.list_backups("main.py")
    assert len(backups) == 1
    assert (tmp_path / backups[0]).read_text(encoding="utf-8") == "stable\n"
    assert not [item for item in tmp_path.iterdir() if item.name.endswith(".tmp")]


def test_execution_state_roundtrip_bumps_version(tmp_path: Path) -> None:
    store = ExecutionStateStore(tmp_path / ".specpilot")
    assert store.load() is None

    execution = ExecutionState(spec_dir="/specs/demo", completed_task_ids=["1"])
    store.save(
        PersistedRun(
            execution=execution,
            tasks=[{"id": "1", "status": "completed"}],
            history={"1": [{"attempt_number": 1, "outcome": "success"}]},
        )
    )
    first = store.load()
    assert first is not None
    assert first.execution.version == 1

    store.save(first)
    second = store.load()
    assert second is not None
    assert second.execution.version == 2
    assert second.execution.spec_dir == "/specs/demo"
    assert second.execution.completed_task_ids == ["1"]
    assert second.tasks == [{"id": "1", "status": "completed"}]
    assert second.history["1"][0]["outcome"] == "success"

    envelope = json.loads(store.state_file.read_text(encoding="utf-8"))
    assert envelope["schema_version"] == ExecutionStateStore.SCHEMA_VERSION
    assert envelope["revision"] == 2


def test_execution_state_ignores_corrupt_file(tmp_path: Path) -> None:
    store = ExecutionStateStore(tmp_path)
    store.state_file.write_text("{not json", encoding="utf-8")

    assert store.load() is None


def test_activity_log_appends_and_filters(tmp_path: Path) -> None:
    log = ActivityLog(tmp_path / "activity.jsonl")
    log.append(ActivityEntry("1", 1, "failure", "SyntaxError"))
    log.append(ActivityEntry("2", 1, "success", ""))
    log.append(ActivityEntry("1", 2, "success", ""))
    with log.path.open("a", encoding="utf-8") as handle:
        handle.write('{"task_id": "1", "attempt')

    entries = log.entries("1")

    assert [entry["attempt_number"] for entry in entries] == [1, 2]
    assert entries[0]["outcome"] == "failure"
    assert entries[0]["timestamp"]
    assert len(log.entries()) == 3


def test_paths_outside_the_root_are_refused(tmp_path: Path) -> None:
    root = tmp_path / "repo"
    root.mkdir()
    outside = tmp_path / "global.js"
    outside.write_text("let y = ;\n", encoding="utf-8")
    store = _store(root)

    for path in (outside, "../global.js"):
        with pytest.raises(SpecStoreError):
            store.write(path, "let y = 0;\n")
        with pytest.raises(SpecStoreError):
            store.check_writable(path)

    assert outside.read_text(encoding="utf-8") == "let y = ;\n"
    assert sorted(item.name for item in tmp_path.iterdir()) == ["global.js", "repo"]
