"""Task store contract and the file-backed local implementation.

The engine talks to the board only through :class:`TaskStore`.  Every store
supports simulate (dry-run) mode: reads behave normally and every write is
replaced by a no-op that reports what it would have done.

:class:`LocalTaskStore` keeps the board in a single YAML file
(``.gh_pm/tasks.yaml``).  The workflow and native status fields are stored
separately so the store behaves like the remote board, where the two can
drift apart.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional

import yaml
from filelock import FileLock, Timeout
from loguru import logger

from ..constants import ANNOTATIONS_FILE, LOCK_TIMEOUT, TASKS_FILE, TASKS_LOCK_FILE
from ..utils import _now_iso
from .dependencies import parse_dependencies
from .errors import ConflictError, FatalStoreError, MalformedDependencyError, NotFoundError, TransientStoreError
from .model import FieldKind, NativeStatus, Task, WorkflowStatus


@dataclass(frozen=True)
class WriteOutcome:
    """Result of a store write; ``simulated`` writes were not applied."""

    applied: bool
    description: str
    simulated: bool = False


class TaskStore(ABC):
    """Abstract board backend used by :class:`~gh_pm.task_engine.engine.WorkflowEngine`."""

    name = "abstract"

    def __init__(self, simulate: bool = False) -> None:
        self.simulate = simulate

    # -- reads --------------------------------------------------------------

    @abstractmethod
    def get_task(self, task_id: int) -> Task:
        """Return the task or raise :class:`NotFoundError`."""

    @abstractmethod
    def list_tasks(self) -> list[Task]:
        """Return every task on the board."""

    def revision(self) -> Optional[str]:
        """Opaque board revision for optimistic concurrency, or ``None`` if unsupported."""
        return None

    # -- writes -------------------------------------------------------------

    def set_status_field(
        self,
        task_id: int,
        kind: FieldKind,
        value: WorkflowStatus | NativeStatus,
        *,
        expected_revision: Optional[str] = None,
    ) -> WriteOutcome:
        label = getattr(value, "value", value)
        return self._write(
            f"set {kind.value} status of #{task_id} to {label}",
            lambda: self._apply_status(task_id, kind, value, expected_revision),
        )

    def post_annotation(self, task_id: int, text: str) -> WriteOutcome:
        first_line = text.strip().splitlines()[0] if text.strip() else ""
        return self._write(
            f"comment on #{task_id}: {first_line}",
            lambda: self._apply_annotation(task_id, text),
        )

    def set_dependencies_field(self, task_id: int, dependency_ids: Iterable[int]) -> WriteOutcome:
        ids = sorted(set(dependency_ids))
        return self._write(
            f"set dependencies of #{task_id} to {ids}",
            lambda: self._apply_dependencies(task_id, ids),
        )

    def _write(self, description: str, apply: Callable[[], None]) -> WriteOutcome:
        if self.simulate:
            logger.info("DRY-RUN: would {}", description)
            return WriteOutcome(applied=False, description=description, simulated=True)
        apply()
        logger.debug("{} store: {}", self.name, description)
        return WriteOutcome(applied=True, description=description)

    @abstractmethod
    def _apply_status(
        self,
        task_id: int,
        kind: FieldKind,
        value: WorkflowStatus | NativeStatus,
        expected_revision: Optional[str],
    ) -> None: ...

    @abstractmethod
    def _apply_annotation(self, task_id: int, text: str) -> None: ...

    @abstractmethod
    def _apply_dependencies(self, task_id: int, dependency_ids: list[int]) -> None: ...


# ---------------------------------------------------------------------------
# Low-level I/O
# ---------------------------------------------------------------------------

def _load_raw(path: Path) -> dict[str, Any]:
    """Load the raw board document, returning an empty board if missing."""
    if not path.exists():
        return {"version": 1, "revision": 0, "tasks": []}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise FatalStoreError(f"{path.name}: YAMLError: {exc}") from exc
    if not isinstance(data, dict):
        return {"version": 1, "revision": 0, "tasks": []}
    tasks = data.get("tasks")
    data["tasks"] = list(tasks) if isinstance(tasks, list) else []
    data["revision"] = int(data.get("revision") or 0)
    return data


def _to_task(raw: dict[str, Any]) -> Task:
    """Build a task, parsing its dependency list the way board text is parsed."""
    try:
        dependency_ids = parse_dependencies(raw.get("dependencies"))
    except MalformedDependencyError as exc:
        raise MalformedDependencyError(exc.raw_token, raw.get("id")) from None
    return Task.from_dict({**raw, "dependencies": sorted(dependency_ids)})


def _save_raw(path: Path, payload: dict[str, Any]) -> None:
    """Atomically write *payload* to *path* (write-tmp-then-rename)."""
    parent = path.parent
    parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            yaml.safe_dump(payload, fh, default_flow_style=False, sort_keys=False, allow_unicode=True)
        shutil.move(tmp, str(path))
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


# ---------------------------------------------------------------------------
# LocalTaskStore
# ---------------------------------------------------------------------------

class LocalTaskStore(TaskStore):
    """File-backed store with a board revision counter.

    Parameters
    ----------
    state_dir:
        The ``.gh_pm/`` directory of the project.
    """

    name = "local"

    def __init__(self, state_dir: Path, simulate: bool = False) -> None:
        super().__init__(simulate=simulate)
        self._state_dir = state_dir
        self._store_path = state_dir / TASKS_FILE
        self._annotations_path = state_dir / ANNOTATIONS_FILE
        self._lock = FileLock(str(state_dir / TASKS_LOCK_FILE), timeout=LOCK_TIMEOUT)

    @property
    def annotations_path(self) -> Path:
        return self._annotations_path

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self._state_dir.mkdir(parents=True, exist_ok=True)
        try:
            with self._lock:
                yield
        except Timeout as exc:
            raise TransientStoreError(f"Timed out waiting for {TASKS_LOCK_FILE}") from exc

    @contextmanager
    def _document(self) -> Iterator[dict[str, Any]]:
        """Lock, load, yield the raw document, bump the revision and save."""
        with self._locked():
            data = _load_raw(self._store_path)
            yield data
            data["revision"] = int(data.get("revision") or 0) + 1
            _save_raw(self._store_path, data)

    @staticmethod
    def _find(data: dict[str, Any], task_id: int) -> dict[str, Any]:
        for raw in data["tasks"]:
            if int(raw.get("id", 0)) == task_id:
                return raw
        raise NotFoundError(task_id)

    # -- reads --------------------------------------------------------------

    def get_task(self, task_id: int) -> Task:
        with self._locked():
            data = _load_raw(self._store_path)
        return _to_task(self._find(data, task_id))

    def list_tasks(self) -> list[Task]:
        with self._locked():
            data = _load_raw(self._store_path)
        return sorted((_to_task(raw) for raw in data["tasks"]), key=lambda t: t.id)

    def revision(self) -> Optional[str]:
        with self._locked():
            return str(_load_raw(self._store_path)["revision"])

    def read_annotations(self, task_id: Optional[int] = None) -> list[dict[str, Any]]:
        if not self._annotations_path.exists():
            return []
        entries: list[dict[str, Any]] = []
        for line in self._annotations_path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            entry = json.loads(line)
            if task_id is None or entry.get("task_id") == task_id:
                entries.append(entry)
        return entries

    # -- seeding (task creation is outside the engine) ------------------------

    def add_task(self, task: Task) -> Task:
        """Insert a new task.  Used by ``gh-pm add`` and by tests."""
        with self._document() as data:
            if any(int(raw.get("id", 0)) == task.id for raw in data["tasks"]):
                raise ValueError(f"Task #{task.id} already exists")
            if task.observed_native is None:
                task.observed_native = task.native_status
            data["tasks"].append(task.to_dict())
        return task

    def add_many(self, tasks: Iterable[Task]) -> list[Task]:
        return [self.add_task(t) for t in tasks]

    # -- writes -------------------------------------------------------------

    def _apply_status(
        self,
        task_id: int,
        kind: FieldKind,
        value: WorkflowStatus | NativeStatus,
        expected_revision: Optional[str],
    ) -> None:
        with self._document() as data:
            current = str(data["revision"])
            if expected_revision is not None and expected_revision != current:
                raise ConflictError(
                    None,
                    task_id,
                    message=(
                        f"Task #{task_id}: board changed since it was read "
                        f"(revision {expected_revision} -> {current}); re-check and retry"
                    ),
                )
            raw = self._find(data, task_id)
            if kind == FieldKind.WORKFLOW:
                status = WorkflowStatus(value)
                raw["status"] = status.value
                if status == WorkflowStatus.DONE:
                    raw["completed_at"] = _now_iso()
            else:
                raw["native_status"] = NativeStatus(value).value
            raw["updated_at"] = _now_iso()

    def _apply_annotation(self, task_id: int, text: str) -> None:
        with self._locked():
            self._find(_load_raw(self._store_path), task_id)
            self._annotations_path.parent.mkdir(parents=True, exist_ok=True)
            entry = {"ts": _now_iso(), "task_id": task_id, "text": text}
            with self._annotations_path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry) + "\n")

    def _apply_dependencies(self, task_id: int, dependency_ids: list[int]) -> None:
        with self._document() as data:
            raw = self._find(data, task_id)
            raw["dependencies"] = list(dependency_ids)
            raw["updated_at"] = _now_iso()
