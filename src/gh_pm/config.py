"""Load project configuration from `.gh_pm/config.yaml`.

The file names the GitHub repository and project, and the ids of the project
fields and single-select options the store writes.  Field ids are resolved
once into a :class:`FieldMap`; nothing downstream matches on label strings.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .constants import (
    CONFIG_FILE,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_INITIAL_DELAY,
    DEFAULT_RETRY_MAX_DELAY,
    DRY_RUN_ENV,
    LOG_LEVEL_ENV,
    STATE_DIR_NAME,
)
from .task_engine.errors import ConfigError
from .task_engine.model import Effort, FieldKind, NativeStatus, RiskLevel, TaskType, WorkflowStatus
from .task_engine.retry import RetryPolicy

_OWNER_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,37}[A-Za-z0-9])?$")
_REPO_RE = re.compile(r"^[A-Za-z0-9._-]{1,100}$")
_PROJECT_ID_RE = re.compile(r"^PVT_[A-Za-z0-9_-]+$")
_TRUTHY = {"1", "true", "yes", "on"}


def _is_placeholder(value: str) -> bool:
    return value in ("", "null") or value.startswith("YOUR_") or "FIELD_ID" in value


class OptionConfig(BaseModel):
    """A single-select option: its node id and display name."""

    id: str
    name: str = ""

    @field_validator("id")
    @classmethod
    def _no_placeholder(cls, value: str) -> str:
        if _is_placeholder(value):
            raise ValueError(f"option id is a placeholder: {value!r}")
        return value


class FieldConfig(BaseModel):
    id: str
    name: str = ""
    options: dict[str, OptionConfig] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _no_placeholder(cls, value: str) -> str:
        if _is_placeholder(value):
            raise ValueError(f"field id is a placeholder: {value!r}")
        return value


class FieldsConfig(BaseModel):
    workflow_status: Optional[FieldConfig] = None
    status: Optional[FieldConfig] = None
    dependencies: Optional[FieldConfig] = None
    task_type: Optional[FieldConfig] = None
    risk_level: Optional[FieldConfig] = None
    effort: Optional[FieldConfig] = None


class GitHubConfig(BaseModel):
    owner: str = ""
    repository: str = ""

    @field_validator("owner")
    @classmethod
    def _valid_owner(cls, value: str) -> str:
        if value and (_is_placeholder(value) or not _OWNER_RE.match(value)):
            raise ValueError(f"invalid GitHub owner: {value!r}")
        return value

    @field_validator("repository")
    @classmethod
    def _valid_repository(cls, value: str) -> str:
        if value and (_is_placeholder(value) or not _REPO_RE.match(value)):
            raise ValueError(f"invalid repository name: {value!r}")
        return value


class ProjectConfig(BaseModel):
    id: str = ""
    url: str = ""
    number: Optional[int] = None

    @field_validator("id")
    @classmethod
    def _valid_project_id(cls, value: str) -> str:
        if value and (_is_placeholder(value) or not _PROJECT_ID_RE.match(value)):
            raise ValueError(f"invalid project id (expected PVT_...): {value!r}")
        return value


class RetryConfig(BaseModel):
    attempts: int = Field(default=DEFAULT_RETRY_ATTEMPTS, ge=1, le=10)
    initial_delay: float = Field(default=DEFAULT_RETRY_INITIAL_DELAY, ge=0)
    max_delay: float = Field(default=DEFAULT_RETRY_MAX_DELAY, ge=0)

    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            attempts=self.attempts,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
        )


class GhPmConfig(BaseModel):
    """Top-level configuration document."""

    store: Literal["local", "github"] = "local"
    log_level: str = "INFO"
    log_file: Optional[str] = None
    dry_run: bool = False
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    project: ProjectConfig = Field(default_factory=ProjectConfig)
    fields: FieldsConfig = Field(default_factory=FieldsConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)

    def field_map(self) -> "FieldMap":
        """Build the enum-keyed field lookup used by the GitHub store.

        Raises:
            ConfigError: required repository, project or field entries are missing.
        """
        missing = []
        if not self.github.owner:
            missing.append("github.owner")
        if not self.github.repository:
            missing.append("github.repository")
        if not self.project.id:
            missing.append("project.id")
        for name in ("workflow_status", "status", "dependencies"):
            if getattr(self.fields, name) is None:
                missing.append(f"fields.{name}")
        if missing:
            raise ConfigError(f"Missing configuration: {', '.join(missing)}")

        workflow = _resolve_options(self.fields.workflow_status, WorkflowStatus, "workflow_status")
        native = _resolve_options(self.fields.status, NativeStatus, "status")
        metadata: dict[str, tuple[str, dict[Enum, str]]] = {}
        for name, enum_cls in (("task_type", TaskType), ("risk_level", RiskLevel), ("effort", Effort)):
            cfg = getattr(self.fields, name)
            if cfg is not None:
                metadata[name] = (cfg.id, _resolve_options(cfg, enum_cls, name, required=False))

        return FieldMap(
            owner=self.github.owner,
            repository=self.github.repository,
            project_id=self.project.id,
            field_ids={
                FieldKind.WORKFLOW: self.fields.workflow_status.id,
                FieldKind.NATIVE: self.fields.status.id,
            },
            dependencies_field_id=self.fields.dependencies.id,
            options={FieldKind.WORKFLOW: workflow, FieldKind.NATIVE: native},
            metadata=metadata,
        )


def _resolve_options(
    cfg: FieldConfig,
    enum_cls: type[Enum],
    label: str,
    required: bool = True,
) -> dict[Enum, str]:
    resolved: dict[Enum, str] = {}
    for key, option in cfg.options.items():
        try:
            resolved[enum_cls(key)] = option.id
        except ValueError:
            raise ConfigError(f"fields.{label}.options: unknown value {key!r}") from None
    if required:
        absent = [member.value for member in enum_cls if member not in resolved]
        if absent:
            raise ConfigError(f"fields.{label}.options missing: {', '.join(absent)}")
    return resolved


@dataclass(frozen=True)
class FieldMap:
    """Field and option node ids keyed by :class:`FieldKind` and enum member."""

    owner: str
    repository: str
    project_id: str
    field_ids: dict[FieldKind, str]
    dependencies_field_id: str
    options: dict[FieldKind, dict[Enum, str]]
    metadata: dict[str, tuple[str, dict[Enum, str]]]

    def field_id(self, kind: FieldKind) -> str:
        return self.field_ids[kind]

    def option_id(self, kind: FieldKind, value: Enum) -> str:
        return self.options[kind][value]

    def decode(self, field_id: str, option_id: str) -> Optional[tuple[str, Enum]]:
        """Map a ``(field id, option id)`` pair read from the board back to an enum."""
        for kind, fid in self.field_ids.items():
            if fid == field_id:
                for member, oid in self.options[kind].items():
                    if oid == option_id:
                        return kind.value, member
                return None
        for name, (fid, options) in self.metadata.items():
            if fid == field_id:
                for member, oid in options.items():
                    if oid == option_id:
                        return name, member
        return None


def config_path(project_dir: Path) -> Path:
    return project_dir / STATE_DIR_NAME / CONFIG_FILE


def load_config(project_dir: Path) -> tuple[GhPmConfig, Optional[str]]:
    """Load the config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns
        the defaults and no error.
    """
    path = config_path(project_dir.resolve())
    if not path.exists():
        return _apply_env(GhPmConfig()), None
    try:
        raw: Any = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        return GhPmConfig(), f"{path.name}: {type(exc).__name__}: {exc}"
    if not isinstance(raw, dict):
        return GhPmConfig(), f"{path.name}: expected a mapping at top level"
    try:
        cfg = GhPmConfig.model_validate(raw)
    except ValidationError as exc:
        return GhPmConfig(), f"{path.name}: {exc}"
    return _apply_env(cfg), None


def _apply_env(cfg: GhPmConfig) -> GhPmConfig:
    updates: dict[str, Any] = {}
    if os.environ.get(DRY_RUN_ENV, "").strip().lower() in _TRUTHY:
        updates["dry_run"] = True
    level = os.environ.get(LOG_LEVEL_ENV, "").strip()
    if level:
        updates["log_level"] = level.upper()
    return cfg.model_copy(update=updates) if updates else cfg
