"""Status transition rules.

The validator is a pure function of ``(current, requested, context)``.  It
never reads the store; everything it needs (unmet dependency ids, the
currently active task) is handed in through :class:`TransitionContext`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .errors import ConflictError, InvalidTransitionError, UnmetDependencyError
from .model import WorkflowStatus


class Action(str, Enum):
    """The caller intent behind a transition."""

    TRIAGE = "triage"
    UNBLOCK = "unblock"
    OVERRIDE = "override"
    START = "start"
    SUBMIT_FOR_REVIEW = "submit_for_review"
    COMPLETE = "complete"
    APPROVE = "approve"
    REWORK = "rework"


@dataclass(frozen=True)
class TransitionRule:
    source: WorkflowStatus
    target: WorkflowStatus
    actions: frozenset[Action]
    guard: str


@dataclass(frozen=True)
class TransitionContext:
    action: Action
    task_id: Optional[int] = None
    unmet_ids: frozenset[int] = field(default_factory=frozenset)
    active_task_id: Optional[int] = None
    feedback: str = ""

    @property
    def dependencies_met(self) -> bool:
        return not self.unmet_ids


_S = WorkflowStatus

TRANSITIONS: tuple[TransitionRule, ...] = (
    TransitionRule(_S.BACKLOG, _S.READY, frozenset({Action.TRIAGE, Action.OVERRIDE}),
                   "dependencies empty or all Done"),
    TransitionRule(_S.BACKLOG, _S.BLOCKED, frozenset({Action.TRIAGE}),
                   "dependencies exist and not all Done"),
    TransitionRule(_S.BLOCKED, _S.READY, frozenset({Action.UNBLOCK, Action.OVERRIDE}),
                   "all dependencies Done, or manual override"),
    TransitionRule(_S.READY, _S.IN_PROGRESS, frozenset({Action.START}),
                   "no other task In Progress or Review"),
    TransitionRule(_S.IN_PROGRESS, _S.REVIEW, frozenset({Action.SUBMIT_FOR_REVIEW}),
                   "explicit submit-for-review"),
    TransitionRule(_S.IN_PROGRESS, _S.DONE, frozenset({Action.COMPLETE}),
                   "explicit direct completion"),
    TransitionRule(_S.REVIEW, _S.DONE, frozenset({Action.APPROVE}),
                   "explicit approval"),
    TransitionRule(_S.REVIEW, _S.IN_PROGRESS, frozenset({Action.REWORK}),
                   "explicit rework with feedback"),
)

_RULES: dict[tuple[WorkflowStatus, WorkflowStatus], TransitionRule] = {
    (rule.source, rule.target): rule for rule in TRANSITIONS
}


def allowed_targets(status: WorkflowStatus) -> set[WorkflowStatus]:
    return {rule.target for rule in TRANSITIONS if rule.source == status}


def validate_transition(
    current: WorkflowStatus,
    requested: WorkflowStatus,
    context: TransitionContext,
) -> TransitionRule:
    """Return the rule that permits ``current -> requested`` or raise.

    Raises:
        UnmetDependencyError: a start was requested while dependencies are unmet.
        InvalidTransitionError: the pair is not in the table, the action does
            not match the rule, or the rule's precondition fails.
        ConflictError: another task is already active.
    """
    task_id = context.task_id
    action = context.action

    if action == Action.START and context.unmet_ids:
        raise UnmetDependencyError(context.unmet_ids, task_id)

    rule = _RULES.get((current, requested))
    if rule is None:
        raise InvalidTransitionError(current, requested, task_id)
    if action not in rule.actions:
        expected = "/".join(sorted(a.value for a in rule.actions))
        raise InvalidTransitionError(current, requested, task_id, reason=f"requires {expected}")

    if action == Action.OVERRIDE:
        return rule

    if requested == _S.READY and not context.dependencies_met:
        raise UnmetDependencyError(context.unmet_ids, task_id)
    if requested == _S.BLOCKED and context.dependencies_met:
        raise InvalidTransitionError(current, requested, task_id, reason="dependencies already satisfied")
    if action == Action.START and context.active_task_id is not None and context.active_task_id != task_id:
        raise ConflictError(context.active_task_id, task_id)
    if action == Action.REWORK and not context.feedback.strip():
        raise InvalidTransitionError(current, requested, task_id, reason="feedback is required")
    return rule


def state_machine() -> dict[str, Any]:
    """Describe the state machine for API and CLI consumers."""
    return {
        "states": [s.value for s in WorkflowStatus],
        "initial": _S.BACKLOG.value,
        "terminal": [_S.DONE.value],
        "transitions": [
            {
                "from": rule.source.value,
                "to": rule.target.value,
                "actions": sorted(a.value for a in rule.actions),
                "guard": rule.guard,
            }
            for rule in TRANSITIONS
        ],
    }
