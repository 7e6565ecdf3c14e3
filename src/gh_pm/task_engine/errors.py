"""Error taxonomy for the workflow engine.

Validation errors are raised from in-memory state before any write and are
never retried.  Store errors come from the task store; only
:class:`TransientStoreError` is retryable.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional


class WorkflowError(Exception):
    """Base class for every error the engine reports to its caller."""

    kind = "workflow_error"

    def __init__(self, message: str, task_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.detail = message

    def to_dict(self) -> dict[str, Any]:
        return {"error_kind": self.kind, "task_id": self.task_id, "detail": self.detail}


class ValidationError(WorkflowError):
    """A business-rule violation detected without touching the store."""

    kind = "validation_error"


class StoreError(WorkflowError):
    """A failure reported by the task store."""

    kind = "store_error"


class ConfigError(WorkflowError):
    kind = "config_error"


class NotFoundError(StoreError):
    kind = "not_found"

    def __init__(self, task_id: int, message: Optional[str] = None) -> None:
        super().__init__(message or f"Task #{task_id} not found", task_id)


class InvalidTransitionError(ValidationError):
    kind = "invalid_transition"

    def __init__(
        self,
        from_status: Any,
        to_status: Any,
        task_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> None:
        self.from_status = from_status
        self.to_status = to_status
        src = getattr(from_status, "value", from_status)
        dst = getattr(to_status, "value", to_status)
        who = f"Task #{task_id}" if task_id is not None else "Task"
        message = f"{who}: cannot transition {src} -> {dst}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, task_id)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["from_status"] = getattr(self.from_status, "value", self.from_status)
        data["to_status"] = getattr(self.to_status, "value", self.to_status)
        return data


class UnmetDependencyError(ValidationError):
    kind = "unmet_dependency"

    def __init__(self, unmet_ids: Iterable[int], task_id: Optional[int] = None) -> None:
        self.unmet_ids = sorted(set(unmet_ids))
        who = f"Task #{task_id}" if task_id is not None else "Task"
        blockers = ", ".join(f"#{i}" for i in self.unmet_ids)
        super().__init__(f"{who} is blocked by unfinished dependencies: {blockers}", task_id)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["blocking_ids"] = list(self.unmet_ids)
        return data


class ConflictError(ValidationError):
    kind = "conflict"

    def __init__(
        self,
        active_task_id: Optional[int],
        task_id: Optional[int] = None,
        message: Optional[str] = None,
    ) -> None:
        self.active_task_id = active_task_id
        if message is None:
            who = f"Task #{task_id}" if task_id is not None else "Task"
            message = (
                f"{who} cannot start: task #{active_task_id} is already active "
                "(only one task may be In Progress or in Review)"
            )
        super().__init__(message, task_id)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["blocking_ids"] = [self.active_task_id] if self.active_task_id is not None else []
        return data


class CyclicDependencyError(ValidationError):
    kind = "cyclic_dependency"

    def __init__(self, cycle: Iterable[int], task_id: Optional[int] = None) -> None:
        self.cycle = list(cycle)
        path = " -> ".join(f"#{i}" for i in self.cycle + self.cycle[:1])
        super().__init__(f"Dependency cycle detected: {path}", task_id)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["cycle"] = list(self.cycle)
        return data


class MalformedDependencyError(ValidationError):
    kind = "malformed_dependency"

    def __init__(self, raw_token: str, task_id: Optional[int] = None) -> None:
        self.raw_token = raw_token
        super().__init__(f"Malformed dependency reference: {raw_token!r}", task_id)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["raw_token"] = self.raw_token
        return data


class TransientStoreError(StoreError):
    """Retryable store failure (rate limit, timeout, network)."""

    kind = "transient_store_error"


class FatalStoreError(StoreError):
    kind = "fatal_store_error"


class AuthenticationError(FatalStoreError):
    """The store rejected our credentials or lacks permission."""

    kind = "auth_error"


class SyncDriftError(StoreError):
    """The native status field no longer mirrors the workflow status."""

    kind = "sync_drift"

    def __init__(self, expected: Any, actual: Any, task_id: Optional[int] = None) -> None:
        self.expected = expected
        self.actual = actual
        exp = getattr(expected, "value", expected)
        act = getattr(actual, "value", actual)
        who = f"Task #{task_id}" if task_id is not None else "Task"
        super().__init__(f"{who}: native status is {act}, expected {exp}", task_id)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["expected"] = getattr(self.expected, "value", self.expected)
        data["actual"] = getattr(self.actual, "value", self.actual)
        return data
