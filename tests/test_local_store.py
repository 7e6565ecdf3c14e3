"""Tests for the YAML-backed LocalTaskStore."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from gh_pm.task_engine.engine import WorkflowEngine
from gh_pm.task_engine.errors import ConflictError, FatalStoreError, MalformedDependencyError, NotFoundError
from gh_pm.task_engine.model import FieldKind, NativeStatus, Task, WorkflowStatus
from gh_pm.task_engine.retry import RetryPolicy
from gh_pm.task_engine.store import LocalTaskStore

S = WorkflowStatus


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    d = tmp_path / ".gh_pm"
    d.mkdir()
    return d


@pytest.fixture
def store(state_dir: Path) -> LocalTaskStore:
    return LocalTaskStore(state_dir)


class TestLocalTaskStore:
    def test_empty_read(self, store: LocalTaskStore) -> None:
        assert store.list_tasks() == []
        assert store.revision() == "0"

    def test_add_and_read(self, store: LocalTaskStore) -> None:
        store.add_task(Task(id=2, title="Second"))
        store.add_task(Task(id=1, title="First", dependencies={2}))
        tasks = store.list_tasks()
        assert [t.id for t in tasks] == [1, 2]
        assert tasks[0].dependencies == {2}
        assert tasks[0].observed_native == NativeStatus.TODO

    def test_duplicate_add_raises(self, store: LocalTaskStore) -> None:
        store.add_task(Task(id=1, title="First"))
        with pytest.raises(ValueError, match="already exists"):
            store.add_task(Task(id=1, title="Duplicate"))

    def test_get_missing(self, store: LocalTaskStore) -> None:
        with pytest.raises(NotFoundError) as excinfo:
            store.get_task(5)
        assert excinfo.value.task_id == 5

    def test_fields_are_stored_separately(self, store: LocalTaskStore, state_dir: Path) -> None:
        store.add_task(Task(id=1, status=S.READY))
        store.set_status_field(1, FieldKind.WORKFLOW, S.IN_PROGRESS)
        task = store.get_task(1)
        assert task.status == S.IN_PROGRESS
        assert task.observed_native == NativeStatus.TODO

        raw = yaml.safe_load((state_dir / "tasks.yaml").read_text())
        assert raw["tasks"][0]["status"] == "in_progress"
        assert raw["tasks"][0]["native_status"] == "todo"

    def test_done_sets_completed_at(self, store: LocalTaskStore) -> None:
        store.add_task(Task(id=1, status=S.IN_PROGRESS))
        store.set_status_field(1, FieldKind.WORKFLOW, S.DONE)
        assert store.get_task(1).completed_at is not None

    def test_revision_increments(self, store: LocalTaskStore) -> None:
        store.add_task(Task(id=1))
        first = store.revision()
        store.set_dependencies_field(1, [3, 2])
        assert int(store.revision()) == int(first) + 1
        assert store.get_task(1).dependencies == {2, 3}

    def test_stale_revision_conflicts(self, store: LocalTaskStore) -> None:
        store.add_task(Task(id=1, status=S.READY))
        stale = store.revision()
        store.set_status_field(1, FieldKind.NATIVE, NativeStatus.TODO)
        with pytest.raises(ConflictError, match="board changed"):
            store.set_status_field(1, FieldKind.WORKFLOW, S.IN_PROGRESS, expected_revision=stale)
        assert store.get_task(1).status == S.READY

    def test_annotations_appended(self, store: LocalTaskStore) -> None:
        store.add_task(Task(id=1))
        store.post_annotation(1, "first")
        store.post_annotation(1, "second")
        assert [a["text"] for a in store.read_annotations(1)] == ["first", "second"]
        assert store.read_annotations(2) == []

    def test_annotation_on_missing_task(self, store: LocalTaskStore) -> None:
        with pytest.raises(NotFoundError):
            store.post_annotation(9, "hello")

    def test_simulate_writes_nothing(self, state_dir: Path) -> None:
        LocalTaskStore(state_dir).add_task(Task(id=1, status=S.READY))
        dry = LocalTaskStore(state_dir, simulate=True)
        outcome = dry.set_status_field(1, FieldKind.WORKFLOW, S.IN_PROGRESS)
        assert outcome.simulated and not outcome.applied
        assert "workflow status of #1" in outcome.description
        assert dry.post_annotation(1, "hi").simulated
        assert dry.get_task(1).status == S.READY
        assert dry.read_annotations() == []

    def test_corrupt_file_is_fatal(self, store: LocalTaskStore, state_dir: Path) -> None:
        (state_dir / "tasks.yaml").write_text("tasks: [unclosed\n")
        with pytest.raises(FatalStoreError):
            store.list_tasks()

    def _write_board(self, state_dir: Path, tasks: list[dict]) -> None:
        (state_dir / "tasks.yaml").write_text(yaml.safe_dump({"version": 1, "revision": 3, "tasks": tasks}))

    def test_hand_edited_dependency_text_is_parsed(self, store: LocalTaskStore, state_dir: Path) -> None:
        self._write_board(state_dir, [{"id": 1, "status": "blocked", "dependencies": "Blocked by #4, #2"}])
        assert store.get_task(1).dependencies == {2, 4}

    def test_malformed_dependency_entry(self, store: LocalTaskStore, state_dir: Path) -> None:
        self._write_board(state_dir, [{"id": 1, "status": "ready", "dependencies": ["#x"]}])
        with pytest.raises(MalformedDependencyError) as excinfo:
            store.list_tasks()
        assert excinfo.value.task_id == 1
        assert excinfo.value.raw_token == "#x"
        with pytest.raises(MalformedDependencyError):
            store.get_task(1)

    def test_engine_reports_malformed_dependency(self, store: LocalTaskStore, state_dir: Path) -> None:
        self._write_board(state_dir, [{"id": 1, "status": "ready", "dependencies": ["#x"]}])
        result = WorkflowEngine(store, retry=RetryPolicy(sleep=lambda _s: None)).start(1)
        assert not result.ok
        assert result.error_kind == "malformed_dependency"
        assert "#x" in result.detail

    def test_unknown_status_is_fatal(self, store: LocalTaskStore, state_dir: Path) -> None:
        self._write_board(state_dir, [{"id": 1, "status": "in progress"}, {"id": 2, "status": "ready"}])
        with pytest.raises(FatalStoreError, match="unknown workflow status"):
            store.list_tasks()
        result = WorkflowEngine(store, retry=RetryPolicy(sleep=lambda _s: None)).start(2)
        assert result.error_kind == "fatal_store_error"
        raw = yaml.safe_load((state_dir / "tasks.yaml").read_text())
        assert raw["tasks"][1]["status"] == "ready"

    def test_no_tmp_files_left(self, store: LocalTaskStore, state_dir: Path) -> None:
        store.add_task(Task(id=1))
        store.set_status_field(1, FieldKind.WORKFLOW, S.READY)
        assert list(state_dir.glob("*.tmp")) == []


def test_engine_round_trip_on_disk(state_dir: Path) -> None:
    store = LocalTaskStore(state_dir)
    store.add_many([Task(id=1, status=S.READY), Task(id=2, status=S.BLOCKED, dependencies={1})])
    engine = WorkflowEngine(store, retry=RetryPolicy(sleep=lambda _s: None))

    assert engine.start(1).ok
    result = engine.complete_direct(1, "shipped")
    assert result.unblocked == [2]

    reopened = LocalTaskStore(state_dir)
    assert reopened.get_task(1).status == S.DONE
    assert reopened.get_task(1).observed_native == NativeStatus.DONE
    assert reopened.get_task(2).status == S.READY
    texts = [a["text"] for a in reopened.read_annotations(1)]
    assert any("shipped" in t for t in texts)
