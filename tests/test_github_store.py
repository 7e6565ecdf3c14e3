"""Tests for the gh CLI client and the GitHub Projects task store."""

from __future__ import annotations

import json
import subprocess
from typing import Any, Optional

import pytest

from gh_pm.config import GhPmConfig
from gh_pm.github.client import GhClient, GraphQLError
from gh_pm.github.store import (
    ADD_COMMENT_MUTATION,
    ISSUE_QUERY,
    ITEMS_QUERY,
    UPDATE_SELECT_MUTATION,
    UPDATE_TEXT_MUTATION,
    GitHubTaskStore,
)
from gh_pm.task_engine.errors import (
    AuthenticationError,
    FatalStoreError,
    MalformedDependencyError,
    NotFoundError,
    TransientStoreError,
)
from gh_pm.task_engine.model import FieldKind, NativeStatus, RiskLevel, WorkflowStatus
from test_config import sample_config

S = WorkflowStatus
PROJECT = "PVT_kwHOABC123"


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


def _completed(stdout: str = "", stderr: str = "", returncode: int = 0) -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=["gh"], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def gh_run(monkeypatch: pytest.MonkeyPatch):
    """Replace subprocess.run; set ``.result`` to what the next call returns."""

    class Runner:
        result: Any = _completed(stdout="{}")
        calls: list[dict[str, Any]] = []

        def __call__(self, cmd, **kwargs):
            self.calls.append({"cmd": cmd, **kwargs})
            if isinstance(self.result, BaseException):
                raise self.result
            return self.result

    runner = Runner()
    runner.calls = []
    monkeypatch.setattr(subprocess, "run", runner)
    return runner


class TestGhClient:
    def test_returns_data(self, gh_run) -> None:
        gh_run.result = _completed(stdout=json.dumps({"data": {"viewer": {"login": "octo"}}}))
        data = GhClient().graphql("query { viewer { login } }", {"a": 1})
        assert data == {"viewer": {"login": "octo"}}

        call = gh_run.calls[0]
        assert call["cmd"] == ["gh", "api", "graphql", "--input", "-"]
        assert json.loads(call["input"]) == {"query": "query { viewer { login } }", "variables": {"a": 1}}
        assert call["check"] is False

    def test_missing_cli_is_fatal(self, gh_run) -> None:
        gh_run.result = FileNotFoundError("gh")
        with pytest.raises(FatalStoreError, match="not found"):
            GhClient().graphql("query {}")

    def test_timeout_is_transient(self, gh_run) -> None:
        gh_run.result = subprocess.TimeoutExpired(cmd="gh", timeout=30)
        with pytest.raises(TransientStoreError):
            GhClient().graphql("query {}")

    @pytest.mark.parametrize(
        "error_type,exc_type",
        [
            ("RATE_LIMITED", TransientStoreError),
            ("FORBIDDEN", AuthenticationError),
            ("NOT_FOUND", GraphQLError),
        ],
    )
    def test_graphql_error_types(self, gh_run, error_type, exc_type) -> None:
        body = {"data": None, "errors": [{"type": error_type, "message": "nope"}]}
        gh_run.result = _completed(stdout=json.dumps(body), returncode=1)
        with pytest.raises(exc_type) as excinfo:
            GhClient().graphql("query {}")
        if exc_type is GraphQLError:
            assert excinfo.value.error_type == error_type

    @pytest.mark.parametrize(
        "stderr,exc_type",
        [
            ("HTTP 502: Bad Gateway", TransientStoreError),
            ("API rate limit exceeded for user", TransientStoreError),
            ("To get started with GitHub CLI, please run:  gh auth login", AuthenticationError),
            ("HTTP 422: something odd", GraphQLError),
        ],
    )
    def test_stderr_classification(self, gh_run, stderr, exc_type) -> None:
        gh_run.result = _completed(stderr=stderr, returncode=1)
        with pytest.raises(exc_type):
            GhClient().graphql("query {}")

    def test_non_json_output(self, gh_run) -> None:
        gh_run.result = _completed(stdout="<html>")
        with pytest.raises(FatalStoreError, match="non-JSON"):
            GhClient().graphql("query {}")

    def test_auth_ok(self, gh_run) -> None:
        gh_run.result = _completed(returncode=0)
        assert GhClient().auth_ok()
        gh_run.result = FileNotFoundError("gh")
        assert not GhClient().auth_ok()


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


def _select(field_id: str, option_id: str) -> dict[str, Any]:
    return {"optionId": option_id, "field": {"id": field_id}}


def _text(field_id: str, text: str) -> dict[str, Any]:
    return {"text": text, "field": {"id": field_id}}


def _item(
    number: int,
    status: WorkflowStatus,
    native: NativeStatus,
    deps: str = "",
    repo: str = "octo-org/prop-management",
    extra: Optional[list[dict[str, Any]]] = None,
) -> dict[str, Any]:
    values = [
        _select("PVTSSF_workflow", f"wf_{status.value}"),
        _select("PVTSSF_status", f"st_{native.value}"),
    ]
    if deps:
        values.append(_text("PVTF_deps", deps))
    values.extend(extra or [])
    return {
        "id": f"PVTI_{number}",
        "project": {"id": PROJECT},
        "content": {
            "id": f"I_{number}",
            "number": number,
            "title": f"Task {number}",
            "body": "",
            "repository": {"nameWithOwner": repo},
        },
        "fieldValues": {"nodes": values},
    }


class FakeClient(GhClient):
    """Answer queries from a list of project items and record mutations."""

    def __init__(self, items: list[dict[str, Any]], page_size: int = 100) -> None:
        super().__init__()
        self.items = items
        self.page_size = page_size
        self.mutations: list[tuple[str, dict[str, Any]]] = []
        self.queries: list[str] = []
        self.fail_with: Optional[Exception] = None

    def graphql(self, query: str, variables: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        variables = variables or {}
        if self.fail_with is not None:
            raise self.fail_with
        if query == ITEMS_QUERY:
            self.queries.append("items")
            start = int(variables.get("cursor") or 0)
            page = self.items[start:start + self.page_size]
            end = start + len(page)
            return {
                "node": {
                    "items": {
                        "pageInfo": {"hasNextPage": end < len(self.items), "endCursor": str(end)},
                        "nodes": page,
                    }
                }
            }
        if query == ISSUE_QUERY:
            self.queries.append("issue")
            for item in self.items:
                if item["content"]["number"] == variables["number"]:
                    issue = dict(item["content"])
                    issue["projectItems"] = {"nodes": [item]}
                    return {"repository": {"issue": issue}}
            raise GraphQLError("Could not resolve to an Issue", "NOT_FOUND")
        self.mutations.append((query, variables))
        return {}


@pytest.fixture
def fields():
    return GhPmConfig.model_validate(sample_config()).field_map()


class TestGitHubTaskStore:
    def test_list_decodes_fields(self, fields) -> None:
        client = FakeClient(
            [
                _item(2, S.BLOCKED, NativeStatus.TODO, deps="Blocked by #1",
                      extra=[_select("PVTSSF_risk", "risk_high")]),
                _item(1, S.IN_PROGRESS, NativeStatus.IN_PROGRESS),
            ]
        )
        tasks = GitHubTaskStore(fields, client=client).list_tasks()
        assert [t.id for t in tasks] == [1, 2]
        blocked = tasks[1]
        assert blocked.status == S.BLOCKED
        assert blocked.observed_native == NativeStatus.TODO
        assert blocked.dependencies == {1}
        assert blocked.risk_level == RiskLevel.HIGH
        assert blocked.item_id == "PVTI_2"

    def test_list_paginates_and_filters_other_repos(self, fields) -> None:
        items = [_item(n, S.READY, NativeStatus.TODO) for n in range(1, 6)]
        items.append(_item(99, S.READY, NativeStatus.TODO, repo="octo-org/other"))
        client = FakeClient(items, page_size=2)
        tasks = GitHubTaskStore(fields, client=client).list_tasks()
        assert [t.id for t in tasks] == [1, 2, 3, 4, 5]
        assert client.queries.count("items") == 3

    def test_malformed_dependency_names_task(self, fields) -> None:
        client = FakeClient([_item(3, S.BLOCKED, NativeStatus.TODO, deps="after #1 ships")])
        with pytest.raises(MalformedDependencyError) as excinfo:
            GitHubTaskStore(fields, client=client).list_tasks()
        assert excinfo.value.task_id == 3

    def test_unknown_workflow_option_is_fatal(self, fields) -> None:
        item = _item(4, S.READY, NativeStatus.TODO)
        item["fieldValues"]["nodes"][0] = _select("PVTSSF_workflow", "wf_someday")
        client = FakeClient([item])
        with pytest.raises(FatalStoreError, match="wf_someday") as excinfo:
            GitHubTaskStore(fields, client=client).list_tasks()
        assert excinfo.value.task_id == 4

    def test_missing_workflow_value_reads_as_backlog(self, fields) -> None:
        item = _item(4, S.READY, NativeStatus.TODO)
        del item["fieldValues"]["nodes"][0]
        task = GitHubTaskStore(fields, client=FakeClient([item])).get_task(4)
        assert task.status == S.BACKLOG

    def test_get_missing_issue(self, fields) -> None:
        store = GitHubTaskStore(fields, client=FakeClient([]))
        with pytest.raises(NotFoundError) as excinfo:
            store.get_task(42)
        assert excinfo.value.task_id == 42

    def test_get_issue_not_on_project(self, fields) -> None:
        item = _item(7, S.READY, NativeStatus.TODO)
        item["project"] = {"id": "PVT_other"}
        with pytest.raises(NotFoundError, match="not on project"):
            GitHubTaskStore(fields, client=FakeClient([item])).get_task(7)

    def test_status_write_uses_option_ids(self, fields) -> None:
        client = FakeClient([_item(1, S.READY, NativeStatus.TODO)])
        store = GitHubTaskStore(fields, client=client)
        store.set_status_field(1, FieldKind.WORKFLOW, S.IN_PROGRESS)
        store.set_status_field(1, FieldKind.NATIVE, NativeStatus.IN_PROGRESS)

        assert [q for q, _ in client.mutations] == [UPDATE_SELECT_MUTATION, UPDATE_SELECT_MUTATION]
        first, second = (v for _, v in client.mutations)
        assert first == {
            "project": PROJECT,
            "item": "PVTI_1",
            "field": "PVTSSF_workflow",
            "option": "wf_in_progress",
        }
        assert second["field"] == "PVTSSF_status"
        assert second["option"] == "st_in_progress"
        # Item id is looked up once and cached.
        assert client.queries.count("issue") == 1

    def test_annotation_and_dependencies(self, fields) -> None:
        client = FakeClient([_item(4, S.BACKLOG, NativeStatus.TODO)])
        store = GitHubTaskStore(fields, client=client)
        store.post_annotation(4, "hello")
        store.set_dependencies_field(4, [3, 1])

        (q1, v1), (q2, v2) = client.mutations
        assert q1 == ADD_COMMENT_MUTATION
        assert v1 == {"subject": "I_4", "body": "hello"}
        assert q2 == UPDATE_TEXT_MUTATION
        assert v2["text"] == "#1, #3"
        assert v2["field"] == "PVTF_deps"

    def test_simulate_sends_no_mutations(self, fields) -> None:
        client = FakeClient([_item(1, S.READY, NativeStatus.TODO)])
        store = GitHubTaskStore(fields, client=client, simulate=True)
        outcome = store.set_status_field(1, FieldKind.WORKFLOW, S.IN_PROGRESS)
        assert outcome.simulated
        assert store.post_annotation(1, "x").simulated
        assert client.mutations == []

    def test_no_revision_support(self, fields) -> None:
        assert GitHubTaskStore(fields, client=FakeClient([])).revision() is None

    def test_transient_errors_propagate(self, fields) -> None:
        client = FakeClient([])
        client.fail_with = TransientStoreError("HTTP 502")
        with pytest.raises(TransientStoreError):
            GitHubTaskStore(fields, client=client).list_tasks()
