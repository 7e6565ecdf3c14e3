"""Task store backed by a GitHub Projects (v2) board.

Issue number is the task id.  Status fields are single-select fields written
with ``updateProjectV2ItemFieldValue``; the dependencies declaration lives in
a text field; annotations are issue comments.  The board offers no revision
token, so :meth:`GitHubTaskStore.revision` returns ``None``.
"""

from __future__ import annotations

from typing import Any, Optional

from loguru import logger

from ..config import FieldMap
from ..task_engine.dependencies import format_dependencies, parse_dependencies
from ..task_engine.errors import FatalStoreError, MalformedDependencyError, NotFoundError
from ..task_engine.model import Effort, FieldKind, NativeStatus, RiskLevel, Task, TaskType, WorkflowStatus
from ..task_engine.store import TaskStore
from .client import GhClient, GraphQLError

_FIELD_VALUES = """
fieldValues(first: 30) {
  nodes {
    ... on ProjectV2ItemFieldSingleSelectValue {
      optionId
      field { ... on ProjectV2SingleSelectField { id } }
    }
    ... on ProjectV2ItemFieldTextValue {
      text
      field { ... on ProjectV2Field { id } }
    }
  }
}
"""

ITEMS_QUERY = (
    """
query($project: ID!, $cursor: String) {
  node(id: $project) {
    ... on ProjectV2 {
      items(first: 100, after: $cursor) {
        pageInfo { hasNextPage endCursor }
        nodes {
          id
          content {
            ... on Issue { id number title body repository { nameWithOwner } }
          }
"""
    + _FIELD_VALUES
    + """
        }
      }
    }
  }
}
"""
)

ISSUE_QUERY = (
    """
query($owner: String!, $repo: String!, $number: Int!) {
  repository(owner: $owner, name: $repo) {
    issue(number: $number) {
      id
      number
      title
      body
      projectItems(first: 20) {
        nodes {
          id
          project { id }
"""
    + _FIELD_VALUES
    + """
        }
      }
    }
  }
}
"""
)

UPDATE_SELECT_MUTATION = """
mutation($project: ID!, $item: ID!, $field: ID!, $option: String!) {
  updateProjectV2ItemFieldValue(input: {
    projectId: $project, itemId: $item, fieldId: $field,
    value: { singleSelectOptionId: $option }
  }) { projectV2Item { id } }
}
"""

UPDATE_TEXT_MUTATION = """
mutation($project: ID!, $item: ID!, $field: ID!, $text: String!) {
  updateProjectV2ItemFieldValue(input: {
    projectId: $project, itemId: $item, fieldId: $field,
    value: { text: $text }
  }) { projectV2Item { id } }
}
"""

ADD_COMMENT_MUTATION = """
mutation($subject: ID!, $body: String!) {
  addComment(input: { subjectId: $subject, body: $body }) { commentEdge { node { id } } }
}
"""

_METADATA_ENUMS = {"task_type": TaskType, "risk_level": RiskLevel, "effort": Effort}


class GitHubTaskStore(TaskStore):
    """Read and write tasks on one GitHub project board."""

    name = "github"

    def __init__(self, fields: FieldMap, client: Optional[GhClient] = None, simulate: bool = False) -> None:
        super().__init__(simulate=simulate)
        self.fields = fields
        self.client = client or GhClient()
        self._item_ids: dict[int, str] = {}
        self._issue_ids: dict[int, str] = {}

    @property
    def _repo_full_name(self) -> str:
        return f"{self.fields.owner}/{self.fields.repository}".lower()

    # -- decoding -----------------------------------------------------------

    def _to_task(self, number: int, issue: dict[str, Any], item: dict[str, Any]) -> Task:
        task = Task(id=number, title=issue.get("title") or "", body=issue.get("body") or "")
        task.item_id = item.get("id")
        for value in (item.get("fieldValues") or {}).get("nodes") or []:
            field_id = ((value or {}).get("field") or {}).get("id")
            if not field_id:
                continue
            if "text" in value:
                if field_id == self.fields.dependencies_field_id:
                    try:
                        task.dependencies = parse_dependencies(value.get("text"))
                    except MalformedDependencyError as exc:
                        raise MalformedDependencyError(exc.raw_token, number) from None
                continue
            decoded = self.fields.decode(field_id, value.get("optionId") or "")
            if decoded is None:
                if field_id == self.fields.field_id(FieldKind.WORKFLOW):
                    raise FatalStoreError(
                        f"Task #{number}: workflow status option {value.get('optionId')!r} is not in the config",
                        number,
                    )
                continue
            name, member = decoded
            if name == FieldKind.WORKFLOW.value:
                task.status = WorkflowStatus(member)
            elif name == FieldKind.NATIVE.value:
                task.observed_native = NativeStatus(member)
            elif name in _METADATA_ENUMS:
                setattr(task, name, member)
        if task.item_id:
            self._item_ids[number] = task.item_id
        if issue.get("id"):
            self._issue_ids[number] = issue["id"]
        return task

    # -- reads --------------------------------------------------------------

    def get_task(self, task_id: int) -> Task:
        try:
            data = self.client.graphql(
                ISSUE_QUERY,
                {"owner": self.fields.owner, "repo": self.fields.repository, "number": task_id},
            )
        except GraphQLError as exc:
            if exc.error_type == "NOT_FOUND":
                raise NotFoundError(task_id) from exc
            raise
        issue = ((data.get("repository") or {}).get("issue")) or None
        if issue is None:
            raise NotFoundError(task_id)
        for item in (issue.get("projectItems") or {}).get("nodes") or []:
            if ((item or {}).get("project") or {}).get("id") == self.fields.project_id:
                return self._to_task(task_id, issue, item)
        raise NotFoundError(task_id, f"Issue #{task_id} is not on project {self.fields.project_id}")

    def list_tasks(self) -> list[Task]:
        tasks: list[Task] = []
        cursor: Optional[str] = None
        while True:
            data = self.client.graphql(ITEMS_QUERY, {"project": self.fields.project_id, "cursor": cursor})
            items = ((data.get("node") or {}).get("items")) or {}
            for item in items.get("nodes") or []:
                issue = (item or {}).get("content") or {}
                number = issue.get("number")
                if number is None:
                    continue
                repo = ((issue.get("repository") or {}).get("nameWithOwner") or "").lower()
                if repo and repo != self._repo_full_name:
                    continue
                tasks.append(self._to_task(int(number), issue, item))
            page = items.get("pageInfo") or {}
            if not page.get("hasNextPage"):
                break
            cursor = page.get("endCursor")
        logger.debug("Loaded {} tasks from project {}", len(tasks), self.fields.project_id)
        return sorted(tasks, key=lambda t: t.id)

    def _item_id(self, task_id: int) -> str:
        if task_id not in self._item_ids:
            self.get_task(task_id)
        return self._item_ids[task_id]

    def _issue_id(self, task_id: int) -> str:
        if task_id not in self._issue_ids:
            self.get_task(task_id)
        return self._issue_ids[task_id]

    # -- writes -------------------------------------------------------------

    def _apply_status(
        self,
        task_id: int,
        kind: FieldKind,
        value: WorkflowStatus | NativeStatus,
        expected_revision: Optional[str],
    ) -> None:
        member = WorkflowStatus(value) if kind == FieldKind.WORKFLOW else NativeStatus(value)
        self.client.graphql(
            UPDATE_SELECT_MUTATION,
            {
                "project": self.fields.project_id,
                "item": self._item_id(task_id),
                "field": self.fields.field_id(kind),
                "option": self.fields.option_id(kind, member),
            },
        )

    def _apply_annotation(self, task_id: int, text: str) -> None:
        self.client.graphql(ADD_COMMENT_MUTATION, {"subject": self._issue_id(task_id), "body": text})

    def _apply_dependencies(self, task_id: int, dependency_ids: list[int]) -> None:
        self.client.graphql(
            UPDATE_TEXT_MUTATION,
            {
                "project": self.fields.project_id,
                "item": self._item_id(task_id),
                "field": self.fields.dependencies_field_id,
                "text": format_dependencies(dependency_ids),
            },
        )
