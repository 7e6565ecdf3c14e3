"""Workflow state machine and dependency resolution engine.

This package provides the task model, the transition rules, the dependency
resolver, the dual-status projection, the store contract and the
:class:`WorkflowEngine` that ties them together.
"""

from .engine import OperationResult, WorkflowEngine
from .model import FieldKind, NativeStatus, Task, WorkflowStatus
from .retry import RetryPolicy
from .store import LocalTaskStore, TaskStore, WriteOutcome

__all__ = [
    "FieldKind",
    "LocalTaskStore",
    "NativeStatus",
    "OperationResult",
    "RetryPolicy",
    "Task",
    "TaskStore",
    "WorkflowEngine",
    "WorkflowStatus",
    "WriteOutcome",
]
