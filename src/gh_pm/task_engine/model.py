"""Task model for the workflow engine.

A task mirrors one issue on the project board.  The six-valued
:class:`WorkflowStatus` is the single source of truth; the three-valued
:class:`NativeStatus` is always derived from it (see :mod:`.projection`).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from ..utils import _now_iso
from .errors import FatalStoreError


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class WorkflowStatus(str, Enum):
    """Board-level workflow status (the ``Workflow Status`` field)."""

    BACKLOG = "backlog"
    READY = "ready"
    BLOCKED = "blocked"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"

    @property
    def is_active(self) -> bool:
        return self in (WorkflowStatus.IN_PROGRESS, WorkflowStatus.REVIEW)

    @property
    def is_terminal(self) -> bool:
        return self == WorkflowStatus.DONE


class NativeStatus(str, Enum):
    """The board's built-in three-valued ``Status`` field."""

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class FieldKind(str, Enum):
    """Which of the two status fields a write targets."""

    WORKFLOW = "workflow"
    NATIVE = "native"


class TaskType(str, Enum):
    FOUNDATION = "foundation"
    ENHANCEMENT = "enhancement"
    BUG_FIX = "bug_fix"
    DOCUMENTATION = "documentation"
    MIGRATION = "migration"
    QA = "qa"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Effort(str, Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


ACTIVE_STATUSES = frozenset({WorkflowStatus.IN_PROGRESS, WorkflowStatus.REVIEW})
READY_OR_LATER = frozenset({WorkflowStatus.READY, WorkflowStatus.IN_PROGRESS, WorkflowStatus.REVIEW})


# ---------------------------------------------------------------------------
# Task dataclass
# ---------------------------------------------------------------------------

@dataclass
class Task:
    """One work item on the board.

    ``title``, ``task_type``, ``risk_level`` and ``effort`` are descriptive
    only; the engine never reads them.
    """

    id: int
    title: str = ""
    body: str = ""
    task_type: Optional[TaskType] = None
    risk_level: Optional[RiskLevel] = None
    effort: Optional[Effort] = None
    dependencies: set[int] = field(default_factory=set)
    status: WorkflowStatus = WorkflowStatus.BACKLOG

    # Store-side bookkeeping
    item_id: Optional[str] = None
    observed_native: Optional[NativeStatus] = None
    updated_at: str = field(default_factory=_now_iso)
    completed_at: Optional[str] = None

    @property
    def native_status(self) -> NativeStatus:
        from .projection import project

        return project(self.status)

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    @property
    def is_done(self) -> bool:
        return self.status == WorkflowStatus.DONE

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict for YAML/JSON persistence."""
        native = self.observed_native if self.observed_native is not None else self.native_status
        return {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "task_type": self.task_type.value if self.task_type else None,
            "risk_level": self.risk_level.value if self.risk_level else None,
            "effort": self.effort.value if self.effort else None,
            "dependencies": sorted(self.dependencies),
            "status": self.status.value,
            "native_status": native.value,
            "item_id": self.item_id,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Deserialize from a plain dict, coercing enums gracefully.

        A missing workflow status means Backlog; an unrecognised one raises
        :class:`FatalStoreError` rather than being guessed.
        """
        d = dict(data)
        task_id = int(d.pop("id"))

        def _enum(enum_cls: type[Enum], key: str) -> Any:
            raw = d.pop(key, None)
            if raw is None:
                return None
            if isinstance(raw, enum_cls):
                return raw
            try:
                return enum_cls(str(raw))
            except ValueError:
                return None

        raw_status = d.pop("status", None)
        if raw_status is None:
            status = WorkflowStatus.BACKLOG
        else:
            try:
                status = WorkflowStatus(getattr(raw_status, "value", raw_status))
            except ValueError:
                raise FatalStoreError(
                    f"Task #{task_id}: unknown workflow status {raw_status!r}", task_id
                ) from None
        observed = _enum(NativeStatus, "native_status")
        deps = d.pop("dependencies", None) or []

        return cls(
            id=task_id,
            title=str(d.pop("title", "") or ""),
            body=str(d.pop("body", "") or ""),
            task_type=_enum(TaskType, "task_type"),
            risk_level=_enum(RiskLevel, "risk_level"),
            effort=_enum(Effort, "effort"),
            dependencies={int(x) for x in deps},
            status=status,
            item_id=d.pop("item_id", None),
            observed_native=observed,
            updated_at=str(d.pop("updated_at", None) or _now_iso()),
            completed_at=d.pop("completed_at", None),
        )

    # ------------------------------------------------------------------
    # Status helpers
    # ------------------------------------------------------------------

    def touch(self) -> None:
        self.updated_at = _now_iso()

    def transition(self, new_status: WorkflowStatus) -> None:
        """Move to *new_status* with timestamp bookkeeping."""
        self.status = new_status
        if new_status == WorkflowStatus.DONE:
            self.completed_at = _now_iso()
        self.touch()
