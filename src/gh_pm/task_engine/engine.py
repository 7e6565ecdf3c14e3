"""Workflow engine: validated status changes, single-active enforcement, propagation.

This is the primary entry-point for moving tasks across the board.  It wraps
a :class:`TaskStore` with the business rules from :mod:`.transitions` and
:mod:`.dependencies`.  Every operation reads the board fresh, validates in
memory, and only then writes: workflow field first, native field second,
annotation last.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from loguru import logger

from ..constants import (
    DEFAULT_APPROVAL_MESSAGE,
    DEFAULT_COMPLETION_MESSAGE,
    DEFAULT_OVERRIDE_REASON,
    DEFAULT_REVIEW_MESSAGE,
    MAX_FEEDBACK_LENGTH,
    MAX_MESSAGE_LENGTH,
)
from ..utils import sanitize_text
from . import annotations
from .dependencies import (
    detect_cycle,
    ensure_acyclic,
    execution_order,
    find_dependents,
    parse_dependencies,
    unmet_dependencies,
)
from .errors import (
    CyclicDependencyError,
    InvalidTransitionError,
    NotFoundError,
    StoreError,
    SyncDriftError,
    UnmetDependencyError,
    WorkflowError,
)
from .model import READY_OR_LATER, FieldKind, Task, WorkflowStatus
from .projection import detect_drift, drift_error, project
from .retry import RetryPolicy
from .store import TaskStore, WriteOutcome
from .transitions import Action, TransitionContext, validate_transition


@dataclass
class OperationResult:
    """Outcome of one engine operation.

    ``ok`` is False only when the requested transition itself was refused or
    failed.  Propagation failures and status drift are reported alongside a
    successful result.
    """

    ok: bool
    action: str
    task_id: Optional[int] = None
    previous_status: Optional[WorkflowStatus] = None
    new_status: Optional[WorkflowStatus] = None
    error_kind: Optional[str] = None
    detail: str = ""
    blocking_ids: list[int] = field(default_factory=list)
    unblocked: list[int] = field(default_factory=list)
    drift: list[dict[str, Any]] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)
    writes: list[str] = field(default_factory=list)
    simulated: bool = False

    def fail(self, exc: WorkflowError) -> None:
        self.ok = False
        self.error_kind = exc.kind
        self.detail = exc.detail
        if isinstance(exc, UnmetDependencyError):
            self.blocking_ids = list(exc.unmet_ids)
        elif isinstance(exc, CyclicDependencyError):
            self.blocking_ids = list(exc.cycle)
        else:
            blocking = exc.to_dict().get("blocking_ids")
            if blocking:
                self.blocking_ids = list(blocking)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "action": self.action,
            "task_id": self.task_id,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "new_status": self.new_status.value if self.new_status else None,
            "error_kind": self.error_kind,
            "detail": self.detail,
            "blocking_ids": list(self.blocking_ids),
            "unblocked": list(self.unblocked),
            "drift": list(self.drift),
            "failures": list(self.failures),
            "writes": list(self.writes),
            "simulated": self.simulated,
        }


def _find(tasks: list[Task], task_id: int) -> Task:
    for task in tasks:
        if task.id == task_id:
            return task
    raise NotFoundError(task_id)


def _active_task_id(tasks: list[Task], exclude: Optional[int] = None) -> Optional[int]:
    for task in sorted(tasks, key=lambda t: t.id):
        if task.is_active and task.id != exclude:
            return task.id
    return None


class WorkflowEngine:
    """Apply lifecycle operations to tasks held in a :class:`TaskStore`.

    Parameters
    ----------
    store:
        Board backend.  The engine never caches its contents between calls.
    retry:
        Backoff policy for transient store failures.
    simulate:
        When given, overrides ``store.simulate``.
    """

    def __init__(
        self,
        store: TaskStore,
        retry: Optional[RetryPolicy] = None,
        simulate: Optional[bool] = None,
    ) -> None:
        self.store = store
        self.retry = retry or RetryPolicy()
        if simulate is not None:
            self.store.simulate = simulate

    @property
    def simulate(self) -> bool:
        return bool(self.store.simulate)

    # ------------------------------------------------------------------
    # Operation boundary
    # ------------------------------------------------------------------

    def _run(
        self,
        action: str,
        task_id: Optional[int],
        body: Callable[[OperationResult], None],
    ) -> OperationResult:
        result = OperationResult(ok=True, action=action, task_id=task_id, simulated=self.simulate)
        try:
            body(result)
        except WorkflowError as exc:
            result.fail(exc)
            if isinstance(exc, StoreError) and not isinstance(exc, NotFoundError) and task_id is not None:
                result.new_status = self._confirmed_status(task_id)
                logger.error("{} #{} failed: {}", action, task_id, exc)
            else:
                logger.info("{} #{} refused: {}", action, task_id, exc)
        return result

    def _confirmed_status(self, task_id: int) -> Optional[WorkflowStatus]:
        """Re-read the task after a failed write; the store is the only truth."""
        try:
            return self.store.get_task(task_id).status
        except WorkflowError as exc:
            logger.warning("Could not re-read task #{} after failure: {}", task_id, exc)
            return None

    def _record(self, result: OperationResult, outcome: WriteOutcome) -> None:
        result.writes.append(outcome.description)
        if outcome.simulated:
            result.simulated = True

    # ------------------------------------------------------------------
    # Write sequence
    # ------------------------------------------------------------------

    def _apply(
        self,
        task: Task,
        target: WorkflowStatus,
        result: OperationResult,
        annotation: Optional[str] = None,
        expected_revision: Optional[str] = None,
    ) -> None:
        """Workflow write, then native write, then annotation.

        Only a workflow-field failure fails the operation.  The in-memory task
        is updated once the workflow write is confirmed (or simulated).
        """
        previous = task.status
        outcome = self.retry.call(
            lambda: self.store.set_status_field(
                task.id, FieldKind.WORKFLOW, target, expected_revision=expected_revision
            ),
            f"workflow status write for #{task.id}",
        )
        self._record(result, outcome)
        task.transition(target)
        logger.info("Task #{} {} -> {}", task.id, previous.value, target.value)

        native = project(target)
        try:
            outcome = self.retry.call(
                lambda: self.store.set_status_field(task.id, FieldKind.NATIVE, native),
                f"native status write for #{task.id}",
            )
        except StoreError as exc:
            drift = SyncDriftError(native, task.observed_native, task.id)
            logger.warning("{} (native write failed: {}); run reconcile to repair", drift, exc)
            result.drift.append(drift.to_dict())
        else:
            self._record(result, outcome)
            task.observed_native = native

        if annotation:
            try:
                outcome = self.retry.call(
                    lambda: self.store.post_annotation(task.id, annotation),
                    f"annotation for #{task.id}",
                )
            except StoreError as exc:
                logger.warning("Could not annotate task #{}: {}", task.id, exc)
            else:
                self._record(result, outcome)

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    def start(self, task_id: int) -> OperationResult:
        """``Ready -> In Progress`` when dependencies are done and nothing else is active."""

        def body(result: OperationResult) -> None:
            revision = self.store.revision()
            tasks = self.store.list_tasks()
            task = _find(tasks, task_id)
            result.previous_status = task.status
            ensure_acyclic(tasks, task.id)
            context = TransitionContext(
                Action.START,
                task_id=task.id,
                unmet_ids=frozenset(unmet_dependencies(task, tasks)),
                active_task_id=_active_task_id(tasks, exclude=task.id),
            )
            validate_transition(task.status, WorkflowStatus.IN_PROGRESS, context)
            self._apply(
                task,
                WorkflowStatus.IN_PROGRESS,
                result,
                annotation=annotations.start_comment(task.id),
                expected_revision=revision,
            )
            result.new_status = task.status

        return self._run("start", task_id, body)

    def submit_for_review(self, task_id: int, message: str = DEFAULT_REVIEW_MESSAGE) -> OperationResult:
        text = sanitize_text(message, MAX_MESSAGE_LENGTH) or DEFAULT_REVIEW_MESSAGE

        def body(result: OperationResult) -> None:
            task = self._simple_transition(
                task_id,
                WorkflowStatus.REVIEW,
                Action.SUBMIT_FOR_REVIEW,
                result,
                annotations.review_request_comment(task_id, text),
            )
            result.new_status = task.status

        return self._run("submit_for_review", task_id, body)

    def approve(self, task_id: int, message: str = DEFAULT_APPROVAL_MESSAGE) -> OperationResult:
        text = sanitize_text(message, MAX_MESSAGE_LENGTH) or DEFAULT_APPROVAL_MESSAGE

        def body(result: OperationResult) -> None:
            task = self._simple_transition(
                task_id, WorkflowStatus.DONE, Action.APPROVE, result, annotations.approval_comment(text)
            )
            result.new_status = task.status
            self._propagate(task_id, result)

        return self._run("approve", task_id, body)

    def request_rework(self, task_id: int, feedback: str) -> OperationResult:
        text = sanitize_text(feedback, MAX_FEEDBACK_LENGTH)

        def body(result: OperationResult) -> None:
            task = self._simple_transition(
                task_id,
                WorkflowStatus.IN_PROGRESS,
                Action.REWORK,
                result,
                annotations.rework_comment(text),
                feedback=text,
            )
            result.new_status = task.status

        return self._run("request_rework", task_id, body)

    def complete_direct(self, task_id: int, message: str = DEFAULT_COMPLETION_MESSAGE) -> OperationResult:
        text = sanitize_text(message, MAX_MESSAGE_LENGTH) or DEFAULT_COMPLETION_MESSAGE

        def body(result: OperationResult) -> None:
            task = self._simple_transition(
                task_id, WorkflowStatus.DONE, Action.COMPLETE, result, annotations.completion_comment(text)
            )
            result.new_status = task.status
            self._propagate(task_id, result)

        return self._run("complete_direct", task_id, body)

    def _simple_transition(
        self,
        task_id: int,
        target: WorkflowStatus,
        action: Action,
        result: OperationResult,
        annotation: str,
        feedback: str = "",
    ) -> Task:
        tasks = self.store.list_tasks()
        task = _find(tasks, task_id)
        result.previous_status = task.status
        context = TransitionContext(action, task_id=task.id, feedback=feedback)
        validate_transition(task.status, target, context)
        self._apply(task, target, result, annotation=annotation)
        return task

    def force_ready(self, task_id: int, reason: str = DEFAULT_OVERRIDE_REASON) -> OperationResult:
        """Administrative override to Ready from Backlog or Blocked, dependencies notwithstanding."""
        text = sanitize_text(reason, MAX_MESSAGE_LENGTH) or DEFAULT_OVERRIDE_REASON

        def body(result: OperationResult) -> None:
            tasks = self.store.list_tasks()
            task = _find(tasks, task_id)
            result.previous_status = task.status
            unmet = unmet_dependencies(task, tasks)
            context = TransitionContext(Action.OVERRIDE, task_id=task.id, unmet_ids=frozenset(unmet))
            validate_transition(task.status, WorkflowStatus.READY, context)
            logger.bind(override=True).warning(
                "Override: forcing task #{} {} -> ready (reason: {}; unfinished dependencies: {})",
                task.id,
                task.status.value,
                text,
                sorted(unmet) or "none",
            )
            self._apply(task, WorkflowStatus.READY, result, annotation=annotations.override_comment(text, unmet))
            result.new_status = task.status
            result.blocking_ids = sorted(unmet)

        return self._run("force_ready", task_id, body)

    # ------------------------------------------------------------------
    # Propagation
    # ------------------------------------------------------------------

    def propagate_unblocking(self, task_id: int) -> OperationResult:
        """Move every Blocked dependent of *task_id* whose dependencies are now all Done to Ready."""

        def body(result: OperationResult) -> None:
            tasks = self.store.list_tasks()
            task = _find(tasks, task_id)
            result.previous_status = task.status
            result.new_status = task.status
            self._unblock_dependents(task_id, tasks, result)

        return self._run("propagate_unblocking", task_id, body)

    def _propagate(self, completed_id: int, result: OperationResult) -> None:
        # Simulated completions never reach the store, so reuse the in-memory view.
        if self.simulate:
            tasks = self._simulated_view(completed_id)
        else:
            try:
                tasks = self.store.list_tasks()
            except WorkflowError as exc:
                logger.error("Could not re-read board to propagate #{}: {}", completed_id, exc)
                result.failures.append(exc.to_dict())
                return
        self._unblock_dependents(completed_id, tasks, result)

    def _simulated_view(self, completed_id: int) -> list[Task]:
        tasks = self.store.list_tasks()
        for task in tasks:
            if task.id == completed_id:
                task.status = WorkflowStatus.DONE
        return tasks

    def _unblock_dependents(self, completed_id: int, tasks: list[Task], result: OperationResult) -> None:
        for dependent_id in sorted(find_dependents(completed_id, tasks)):
            dependent = _find(tasks, dependent_id)
            if dependent.status != WorkflowStatus.BLOCKED:
                continue
            try:
                ensure_acyclic(tasks, dependent_id)
                unmet = unmet_dependencies(dependent, tasks)
                if unmet:
                    logger.debug("Task #{} still blocked by {}", dependent_id, sorted(unmet))
                    continue
                validate_transition(
                    WorkflowStatus.BLOCKED,
                    WorkflowStatus.READY,
                    TransitionContext(Action.UNBLOCK, task_id=dependent_id),
                )
                self._apply(
                    dependent,
                    WorkflowStatus.READY,
                    result,
                    annotation=annotations.unblocked_comment(dependent_id, completed_id, dependent.dependencies),
                )
            except WorkflowError as exc:
                logger.error("Could not unblock task #{}: {}", dependent_id, exc)
                result.failures.append(exc.to_dict())
                continue
            result.unblocked.append(dependent_id)

    # ------------------------------------------------------------------
    # Triage and dependency management
    # ------------------------------------------------------------------

    def evaluate(self, task_id: int) -> OperationResult:
        """Triage a Backlog task to Ready/Blocked, or release a Blocked task that is now ready.

        Other statuses are left untouched.
        """

        def body(result: OperationResult) -> None:
            tasks = self.store.list_tasks()
            task = _find(tasks, task_id)
            result.previous_status = task.status
            result.new_status = task.status
            if task.status not in (WorkflowStatus.BACKLOG, WorkflowStatus.BLOCKED):
                result.detail = f"Task #{task_id} is {task.status.value}; nothing to evaluate"
                return

            ensure_acyclic(tasks, task_id)

            unmet = unmet_dependencies(task, tasks)
            result.blocking_ids = sorted(unmet)
            if task.status == WorkflowStatus.BLOCKED:
                if unmet:
                    result.detail = f"Task #{task_id} is still blocked"
                    return
                validate_transition(
                    task.status, WorkflowStatus.READY, TransitionContext(Action.UNBLOCK, task_id=task_id)
                )
                target = WorkflowStatus.READY
            else:
                target = WorkflowStatus.BLOCKED if unmet else WorkflowStatus.READY
                validate_transition(
                    task.status,
                    target,
                    TransitionContext(Action.TRIAGE, task_id=task_id, unmet_ids=frozenset(unmet)),
                )
            self._apply(task, target, result, annotation=annotations.triage_comment(bool(unmet), unmet))
            result.new_status = task.status

        return self._run("evaluate", task_id, body)

    def evaluate_all(self) -> list[OperationResult]:
        """Run :meth:`evaluate` on every Backlog and Blocked task, lowest id first."""
        pending = [
            t.id
            for t in self.store.list_tasks()
            if t.status in (WorkflowStatus.BACKLOG, WorkflowStatus.BLOCKED)
        ]
        return [self.evaluate(task_id) for task_id in sorted(pending)]

    def set_dependencies(self, task_id: int, raw: Any) -> OperationResult:
        """Replace a task's dependency declaration.

        The new declaration is refused, without any write, when it is
        malformed, would close a cycle, targets a Done task, or leaves a
        Ready/active task with unfinished dependencies.
        """

        def body(result: OperationResult) -> None:
            dependency_ids = parse_dependencies(raw)
            tasks = self.store.list_tasks()
            task = _find(tasks, task_id)
            result.previous_status = task.status
            result.new_status = task.status
            if task.is_done:
                raise InvalidTransitionError(
                    task.status, task.status, task_id, reason="dependencies of a done task cannot change"
                )

            hypothetical = [
                Task.from_dict({**t.to_dict(), "dependencies": sorted(dependency_ids)}) if t.id == task_id else t
                for t in tasks
            ]
            cycle = detect_cycle(hypothetical, start=task_id)
            if cycle is not None:
                raise CyclicDependencyError(cycle, task_id)

            candidate = _find(hypothetical, task_id)
            unmet = unmet_dependencies(candidate, hypothetical)
            if task.status in READY_OR_LATER and unmet:
                raise UnmetDependencyError(unmet, task_id)

            outcome = self.retry.call(
                lambda: self.store.set_dependencies_field(task_id, dependency_ids),
                f"dependencies write for #{task_id}",
            )
            self._record(result, outcome)
            task.dependencies = set(dependency_ids)
            result.blocking_ids = sorted(unmet)
            logger.info("Task #{} dependencies set to {}", task_id, sorted(dependency_ids) or "none")

            if task.status == WorkflowStatus.BLOCKED and not unmet:
                validate_transition(
                    task.status, WorkflowStatus.READY, TransitionContext(Action.UNBLOCK, task_id=task_id)
                )
                self._apply(task, WorkflowStatus.READY, result, annotation=annotations.triage_comment(False, ()))
                result.new_status = task.status

        return self._run("set_dependencies", task_id, body)

    # ------------------------------------------------------------------
    # Reconciliation and reporting
    # ------------------------------------------------------------------

    def reconcile(self) -> OperationResult:
        """Re-write the native field of every task whose native value drifted."""

        def body(result: OperationResult) -> None:
            for task in self.store.list_tasks():
                if not detect_drift(task):
                    continue
                drift = drift_error(task).to_dict()
                try:
                    outcome = self.retry.call(
                        lambda: self.store.set_status_field(task.id, FieldKind.NATIVE, task.native_status),
                        f"native status repair for #{task.id}",
                    )
                except StoreError as exc:
                    logger.error("Could not repair native status of #{}: {}", task.id, exc)
                    drift["repaired"] = False
                    result.failures.append(exc.to_dict())
                else:
                    self._record(result, outcome)
                    drift["repaired"] = not outcome.simulated
                    logger.info("Task #{}: native status repaired to {}", task.id, task.native_status.value)
                result.drift.append(drift)
            if result.failures:
                result.ok = False
                result.error_kind = "sync_drift"
                result.detail = f"{len(result.failures)} task(s) still out of sync"
            else:
                result.detail = f"{len(result.drift)} task(s) reconciled"

        return self._run("reconcile", None, body)

    def summary(self) -> dict[str, Any]:
        """Board overview: counts, the active task, ready and blocked work."""
        tasks = self.store.list_tasks()
        counts = {status.value: 0 for status in WorkflowStatus}
        for task in tasks:
            counts[task.status.value] += 1
        blocked = {
            str(t.id): sorted(unmet_dependencies(t, tasks))
            for t in tasks
            if t.status == WorkflowStatus.BLOCKED
        }
        return {
            "total": len(tasks),
            "counts": counts,
            "active_task_id": _active_task_id(tasks),
            "ready": sorted(t.id for t in tasks if t.status == WorkflowStatus.READY),
            "blocked": blocked,
            "execution_order": execution_order(tasks),
            "cycle": detect_cycle(tasks),
            "drift": sorted(t.id for t in tasks if detect_drift(t)),
        }
