"""Dual-status projection.

The board carries two status fields: the six-valued workflow field and the
built-in three-valued native field.  Only the workflow status is ever set
directly; the native value is projected from it and written second.
"""

from __future__ import annotations

from .errors import SyncDriftError
from .model import NativeStatus, Task, WorkflowStatus

_PROJECTION: dict[WorkflowStatus, NativeStatus] = {
    WorkflowStatus.BACKLOG: NativeStatus.TODO,
    WorkflowStatus.READY: NativeStatus.TODO,
    WorkflowStatus.BLOCKED: NativeStatus.TODO,
    WorkflowStatus.IN_PROGRESS: NativeStatus.IN_PROGRESS,
    WorkflowStatus.REVIEW: NativeStatus.IN_PROGRESS,
    WorkflowStatus.DONE: NativeStatus.DONE,
}


def project(status: WorkflowStatus) -> NativeStatus:
    """Return the native status that mirrors *status*."""
    return _PROJECTION[WorkflowStatus(status)]


def detect_drift(task: Task) -> bool:
    """True when the native value last read from the store disagrees with the projection.

    A task whose native field was never read (``observed_native is None``)
    counts as drifted so that reconciliation writes it.
    """
    return task.observed_native != project(task.status)


def drift_error(task: Task) -> SyncDriftError:
    return SyncDriftError(project(task.status), task.observed_native, task.id)
