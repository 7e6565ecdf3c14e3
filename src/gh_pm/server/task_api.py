"""Task workflow API endpoints.

This module provides a FastAPI router exposing every engine operation.  It is
mounted under ``/api`` by the :func:`create_app` factory.  Refused or failed
operations return the engine's result document as the error ``detail``.
"""

from __future__ import annotations

from typing import Annotated, Any, Callable, Optional, Union

from fastapi import APIRouter, HTTPException, Path, Query
from loguru import logger
from pydantic import BaseModel, Field

from ..constants import (
    DEFAULT_APPROVAL_MESSAGE,
    DEFAULT_COMPLETION_MESSAGE,
    DEFAULT_OVERRIDE_REASON,
    DEFAULT_REVIEW_MESSAGE,
    MAX_TASK_ID,
    MIN_TASK_ID,
)
from ..task_engine.engine import OperationResult, WorkflowEngine
from ..task_engine.errors import WorkflowError
from ..task_engine.transitions import state_machine

STATUS_CODES: dict[str, int] = {
    "not_found": 404,
    "conflict": 409,
    "unmet_dependency": 409,
    "cyclic_dependency": 409,
    "invalid_transition": 409,
    "malformed_dependency": 422,
    "config_error": 422,
    "auth_error": 502,
    "transient_store_error": 502,
    "fatal_store_error": 502,
    "sync_drift": 502,
}


# ---------------------------------------------------------------------------
# Pydantic request / response models
# ---------------------------------------------------------------------------

class MessageRequest(BaseModel):
    message: Optional[str] = None


class ReworkRequest(BaseModel):
    feedback: str


class OverrideRequest(BaseModel):
    reason: str = DEFAULT_OVERRIDE_REASON


class DependenciesRequest(BaseModel):
    dependencies: Union[str, list[int], None] = None


class TaskResponse(BaseModel):
    task: dict[str, Any]


class TaskListResponse(BaseModel):
    tasks: list[dict[str, Any]]
    total: int


class EvaluateAllResponse(BaseModel):
    results: list[dict[str, Any]] = Field(default_factory=list)


def status_code_for(error_kind: Optional[str]) -> int:
    return STATUS_CODES.get(error_kind or "", 400)


def _respond(result: OperationResult) -> dict[str, Any]:
    if not result.ok:
        raise HTTPException(status_code=status_code_for(result.error_kind), detail=result.to_dict())
    return result.to_dict()


def _raise(exc: WorkflowError) -> None:
    raise HTTPException(status_code=status_code_for(exc.kind), detail=exc.to_dict())


TaskId = Annotated[int, Path(ge=MIN_TASK_ID, le=MAX_TASK_ID)]


# ---------------------------------------------------------------------------
# Router factory
# ---------------------------------------------------------------------------

def create_task_router(get_engine: Callable[[bool], WorkflowEngine]) -> APIRouter:
    """Create the workflow API router.

    Parameters
    ----------
    get_engine:
        A callable ``(simulate: bool) -> WorkflowEngine``.  Raises
        :class:`WorkflowError` when the store cannot be built.
    """
    router = APIRouter(prefix="/api", tags=["tasks"])

    def _engine(simulate: bool) -> WorkflowEngine:
        try:
            return get_engine(simulate)
        except WorkflowError as exc:
            logger.error("Cannot build engine: {}", exc)
            _raise(exc)
            raise

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @router.get("/tasks", response_model=TaskListResponse)
    async def list_tasks(status: Optional[str] = Query(None)) -> TaskListResponse:
        engine = _engine(False)
        try:
            tasks = engine.store.list_tasks()
        except WorkflowError as exc:
            _raise(exc)
            raise
        data = [t.to_dict() for t in tasks if status is None or t.status.value == status]
        return TaskListResponse(tasks=data, total=len(data))

    @router.get("/tasks/{task_id}", response_model=TaskResponse)
    async def get_task(task_id: TaskId) -> TaskResponse:
        engine = _engine(False)
        try:
            task = engine.store.get_task(task_id)
        except WorkflowError as exc:
            _raise(exc)
            raise
        return TaskResponse(task=task.to_dict())

    @router.get("/summary")
    async def get_summary() -> dict[str, Any]:
        try:
            return _engine(False).summary()
        except WorkflowError as exc:
            _raise(exc)
            raise

    @router.get("/state-machine")
    async def get_state_machine() -> dict[str, Any]:
        return state_machine()

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    @router.post("/tasks/{task_id}/start")
    async def start_task(task_id: TaskId, simulate: bool = Query(False)) -> dict[str, Any]:
        return _respond(_engine(simulate).start(task_id))

    @router.post("/tasks/{task_id}/review")
    async def submit_for_review(
        task_id: TaskId,
        body: Optional[MessageRequest] = None,
        simulate: bool = Query(False),
    ) -> dict[str, Any]:
        message = (body.message if body else None) or DEFAULT_REVIEW_MESSAGE
        return _respond(_engine(simulate).submit_for_review(task_id, message))

    @router.post("/tasks/{task_id}/approve")
    async def approve_task(
        task_id: TaskId,
        body: Optional[MessageRequest] = None,
        simulate: bool = Query(False),
    ) -> dict[str, Any]:
        message = (body.message if body else None) or DEFAULT_APPROVAL_MESSAGE
        return _respond(_engine(simulate).approve(task_id, message))

    @router.post("/tasks/{task_id}/rework")
    async def request_rework(
        task_id: TaskId,
        body: ReworkRequest,
        simulate: bool = Query(False),
    ) -> dict[str, Any]:
        return _respond(_engine(simulate).request_rework(task_id, body.feedback))

    @router.post("/tasks/{task_id}/complete")
    async def complete_task(
        task_id: TaskId,
        body: Optional[MessageRequest] = None,
        simulate: bool = Query(False),
    ) -> dict[str, Any]:
        message = (body.message if body else None) or DEFAULT_COMPLETION_MESSAGE
        return _respond(_engine(simulate).complete_direct(task_id, message))

    @router.post("/tasks/{task_id}/force-ready")
    async def force_ready(
        task_id: TaskId,
        body: Optional[OverrideRequest] = None,
        simulate: bool = Query(False),
    ) -> dict[str, Any]:
        reason = body.reason if body else DEFAULT_OVERRIDE_REASON
        return _respond(_engine(simulate).force_ready(task_id, reason))

    @router.post("/tasks/{task_id}/evaluate")
    async def evaluate_task(task_id: TaskId, simulate: bool = Query(False)) -> dict[str, Any]:
        return _respond(_engine(simulate).evaluate(task_id))

    @router.post("/evaluate", response_model=EvaluateAllResponse)
    async def evaluate_all(simulate: bool = Query(False)) -> EvaluateAllResponse:
        try:
            results = _engine(simulate).evaluate_all()
        except WorkflowError as exc:
            _raise(exc)
            raise
        return EvaluateAllResponse(results=[r.to_dict() for r in results])

    @router.put("/tasks/{task_id}/dependencies")
    async def set_dependencies(
        task_id: TaskId,
        body: DependenciesRequest,
        simulate: bool = Query(False),
    ) -> dict[str, Any]:
        return _respond(_engine(simulate).set_dependencies(task_id, body.dependencies))

    @router.post("/reconcile")
    async def reconcile(simulate: bool = Query(False)) -> dict[str, Any]:
        return _respond(_engine(simulate).reconcile())

    return router
