"""Shared fixtures: an in-memory task store and a no-sleep retry policy."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterable, Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from gh_pm.task_engine.engine import WorkflowEngine  # noqa: E402
from gh_pm.task_engine.errors import ConflictError, NotFoundError  # noqa: E402
from gh_pm.task_engine.model import FieldKind, NativeStatus, Task, WorkflowStatus  # noqa: E402
from gh_pm.task_engine.retry import RetryPolicy  # noqa: E402
from gh_pm.task_engine.store import TaskStore  # noqa: E402


class MemoryTaskStore(TaskStore):
    """In-memory store with scripted failures.

    ``failures[key]`` is a list of exceptions raised, one per call, by the
    write named *key* (``workflow``, ``native``, ``annotation``,
    ``dependencies``).
    """

    name = "memory"

    def __init__(self, tasks: Iterable[Task] = (), simulate: bool = False, with_revision: bool = True) -> None:
        super().__init__(simulate=simulate)
        self.tasks: dict[int, Task] = {}
        for task in tasks:
            if task.observed_native is None:
                task.observed_native = task.native_status
            self.tasks[task.id] = task
        self.annotations: list[tuple[int, str]] = []
        self.failures: dict[str, list[Exception]] = {}
        self.calls: list[tuple[str, int]] = []
        self.with_revision = with_revision
        self._revision = 0

    def _maybe_fail(self, key: str) -> None:
        pending = self.failures.get(key)
        if pending:
            raise pending.pop(0)

    def _copy(self, task: Task) -> Task:
        return Task.from_dict(task.to_dict())

    def get_task(self, task_id: int) -> Task:
        if task_id not in self.tasks:
            raise NotFoundError(task_id)
        return self._copy(self.tasks[task_id])

    def list_tasks(self) -> list[Task]:
        return [self._copy(t) for t in sorted(self.tasks.values(), key=lambda t: t.id)]

    def revision(self) -> Optional[str]:
        return str(self._revision) if self.with_revision else None

    def bump(self) -> None:
        """Simulate a concurrent writer."""
        self._revision += 1

    def _apply_status(self, task_id, kind, value, expected_revision) -> None:
        self.calls.append((kind.value, task_id))
        self._maybe_fail(kind.value)
        if expected_revision is not None and expected_revision != str(self._revision):
            raise ConflictError(None, task_id, message="board changed")
        task = self.tasks[task_id]
        if kind == FieldKind.WORKFLOW:
            task.transition(WorkflowStatus(value))
        else:
            task.observed_native = NativeStatus(value)
        self._revision += 1

    def _apply_annotation(self, task_id: int, text: str) -> None:
        self.calls.append(("annotation", task_id))
        self._maybe_fail("annotation")
        self.annotations.append((task_id, text))

    def _apply_dependencies(self, task_id: int, dependency_ids: list[int]) -> None:
        self.calls.append(("dependencies", task_id))
        self._maybe_fail("dependencies")
        self.tasks[task_id].dependencies = set(dependency_ids)
        self._revision += 1

    def status_of(self, task_id: int) -> WorkflowStatus:
        return self.tasks[task_id].status

    def annotations_for(self, task_id: int) -> list[str]:
        return [text for tid, text in self.annotations if tid == task_id]


def make_task(task_id: int, status: WorkflowStatus = WorkflowStatus.READY, deps: Iterable[int] = (), **kw) -> Task:
    return Task(id=task_id, title=kw.pop("title", f"Task {task_id}"), status=status, dependencies=set(deps), **kw)


@pytest.fixture
def no_sleep_retry() -> RetryPolicy:
    return RetryPolicy(attempts=3, initial_delay=1.0, max_delay=30.0, sleep=lambda _s: None)


@pytest.fixture
def make_engine(no_sleep_retry: RetryPolicy):
    def _factory(tasks: Iterable[Task], simulate: bool = False, **kw) -> tuple[WorkflowEngine, MemoryTaskStore]:
        store = MemoryTaskStore(tasks, simulate=simulate, **kw)
        return WorkflowEngine(store, retry=no_sleep_retry), store

    return _factory
