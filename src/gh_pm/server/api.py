"""FastAPI application factory."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..config import load_config
from ..constants import STATE_DIR_NAME
from ..task_engine.engine import WorkflowEngine
from ..task_engine.errors import ConfigError
from ..task_engine.retry import RetryPolicy
from ..task_engine.store import LocalTaskStore, TaskStore
from .task_api import create_task_router


def create_app(
    project_dir: Optional[Path] = None,
    store: Optional[TaskStore] = None,
    enable_cors: bool = True,
) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        project_dir: Project directory holding ``.gh_pm/``.
        store: Task store to serve.  When omitted the store is built from the
            project's config on every request.
        enable_cors: Whether to enable CORS.

    Returns:
        Configured FastAPI app.
    """
    app = FastAPI(
        title="gh-pm",
        description="Workflow state machine and dependency engine for GitHub project boards",
        version="1.0.0",
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.project_dir = (project_dir or Path.cwd()).resolve()
    app.state.store = store

    def get_engine(simulate: bool) -> WorkflowEngine:
        cfg, err = load_config(app.state.project_dir)
        if err:
            raise ConfigError(err)
        if app.state.store is not None:
            # simulate applies to this request's copy only
            request_store = copy.copy(app.state.store)
            request_store.simulate = bool(simulate or app.state.store.simulate)
        elif cfg.store == "github":
            from ..github import GitHubTaskStore

            request_store = GitHubTaskStore(cfg.field_map(), simulate=simulate or cfg.dry_run)
        else:
            request_store = LocalTaskStore(
                app.state.project_dir / STATE_DIR_NAME, simulate=simulate or cfg.dry_run
            )
        retry: RetryPolicy = cfg.retry.policy()
        return WorkflowEngine(request_store, retry=retry)

    app.include_router(create_task_router(get_engine))

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {"name": "gh-pm", "version": "1.0.0", "status": "running"}

    return app
