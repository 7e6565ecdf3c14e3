"""Tests for the task model (task_engine/model.py)."""

from __future__ import annotations

import pytest

from gh_pm.task_engine.errors import FatalStoreError
from gh_pm.task_engine.model import (
    ACTIVE_STATUSES,
    Effort,
    NativeStatus,
    RiskLevel,
    Task,
    TaskType,
    WorkflowStatus,
)


class TestTaskCreation:
    def test_default_values(self) -> None:
        t = Task(id=7)
        assert t.status == WorkflowStatus.BACKLOG
        assert t.dependencies == set()
        assert t.observed_native is None
        assert t.completed_at is None
        assert t.native_status == NativeStatus.TODO

    def test_active_statuses(self) -> None:
        assert ACTIVE_STATUSES == {WorkflowStatus.IN_PROGRESS, WorkflowStatus.REVIEW}
        assert Task(id=1, status=WorkflowStatus.REVIEW).is_active
        assert not Task(id=1, status=WorkflowStatus.READY).is_active


class TestTaskSerialization:
    def test_round_trip(self) -> None:
        t = Task(
            id=12,
            title="Add lease table",
            task_type=TaskType.FOUNDATION,
            risk_level=RiskLevel.HIGH,
            effort=Effort.LARGE,
            dependencies={3, 1},
            status=WorkflowStatus.BLOCKED,
            observed_native=NativeStatus.TODO,
        )
        d = t.to_dict()
        assert d["dependencies"] == [1, 3]
        assert d["status"] == "blocked"
        assert d["task_type"] == "foundation"

        t2 = Task.from_dict(d)
        assert t2.id == 12
        assert t2.dependencies == {1, 3}
        assert t2.risk_level == RiskLevel.HIGH
        assert t2.observed_native == NativeStatus.TODO

    def test_from_dict_unknown_metadata_enum(self) -> None:
        t = Task.from_dict({"id": "5", "status": "ready", "risk_level": "extreme"})
        assert t.id == 5
        assert t.status == WorkflowStatus.READY
        assert t.risk_level is None

    def test_from_dict_missing_status_is_backlog(self) -> None:
        assert Task.from_dict({"id": 5}).status == WorkflowStatus.BACKLOG

    def test_from_dict_unknown_status_is_fatal(self) -> None:
        with pytest.raises(FatalStoreError, match="someday") as excinfo:
            Task.from_dict({"id": "5", "status": "someday"})
        assert excinfo.value.task_id == 5

    def test_to_dict_writes_projected_native_when_unread(self) -> None:
        t = Task(id=1, status=WorkflowStatus.REVIEW)
        assert t.to_dict()["native_status"] == "in_progress"


class TestTaskTransition:
    def test_transition_to_done_sets_completed_at(self) -> None:
        t = Task(id=1, status=WorkflowStatus.IN_PROGRESS)
        t.transition(WorkflowStatus.DONE)
        assert t.is_done
        assert t.completed_at is not None

    def test_transition_updates_timestamp(self) -> None:
        t = Task(id=1, updated_at="2020-01-01T00:00:00+00:00")
        t.transition(WorkflowStatus.READY)
        assert t.updated_at != "2020-01-01T00:00:00+00:00"
        assert t.completed_at is None
