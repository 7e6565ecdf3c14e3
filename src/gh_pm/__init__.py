"""Provide the public `gh_pm` package exports."""

from __future__ import annotations

from .task_engine import LocalTaskStore, Task, WorkflowEngine, WorkflowStatus

__all__ = ["LocalTaskStore", "Task", "WorkflowEngine", "WorkflowStatus"]
