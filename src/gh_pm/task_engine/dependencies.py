"""Dependency graph resolution.

Dependency declarations are parsed once at the boundary into a set of task
ids.  The text grammar is ``#<digits>`` tokens separated by commas,
semicolons, whitespace or the word ``and``, with an optional leading
``Blocked by`` / ``Depends on`` and an optional ``Issue`` qualifier before
each reference (``"Blocked by #122, #124"``, ``"Issue #35, Issue #37"``).
Anything else is rejected rather than skipped.
"""

from __future__ import annotations

import re
from collections import defaultdict
from typing import Any, Iterable, Optional

from loguru import logger

from ..utils import validate_task_id
from .errors import CyclicDependencyError, MalformedDependencyError
from .model import Task, WorkflowStatus

_EMPTY_DECLARATIONS = {"", "none", "no dependencies", "n/a", "-"}
_PREFIX_RE = re.compile(r"^\s*(?:blocked\s+by|depends\s+on|dependencies)\s*:?\s*", re.I)
_QUALIFIER_RE = re.compile(r"\bissues?\s+(?=#)", re.I)
_SEPARATOR_RE = re.compile(r"(?:\s*[,;]\s*|\s+and\s+|\s+)", re.I)
_REFERENCE_RE = re.compile(r"#([0-9]+)")
_DIGITS_RE = re.compile(r"[0-9]+")


def _parse_reference(token: str) -> int:
    match = _REFERENCE_RE.fullmatch(token)
    if not match:
        raise MalformedDependencyError(token)
    try:
        return validate_task_id(match.group(1))
    except ValueError:
        raise MalformedDependencyError(token) from None


def _parse_text(raw: str) -> set[int]:
    text = raw.strip()
    if text.lower() in _EMPTY_DECLARATIONS:
        return set()
    text = _PREFIX_RE.sub("", text, count=1)
    text = _QUALIFIER_RE.sub("", text)
    ids: set[int] = set()
    for token in _SEPARATOR_RE.split(text):
        if not token:
            continue
        ids.add(_parse_reference(token))
    return ids


def parse_dependencies(raw: Any) -> set[int]:
    """Parse a dependency declaration into a set of task ids.

    *raw* may be ``None``, free text in the board's grammar, or an iterable of
    ints / ``"#N"`` / ``"N"`` strings (the structured form).

    Raises:
        MalformedDependencyError: a token is not a well-formed task reference.
    """
    if raw is None:
        return set()
    if isinstance(raw, str):
        return _parse_text(raw)
    if isinstance(raw, int) and not isinstance(raw, bool):
        raw = [raw]

    ids: set[int] = set()
    for item in raw:
        if isinstance(item, bool):
            raise MalformedDependencyError(str(item))
        if isinstance(item, int):
            try:
                ids.add(validate_task_id(item))
            except ValueError:
                raise MalformedDependencyError(str(item)) from None
            continue
        token = str(item).strip()
        if _DIGITS_RE.fullmatch(token):
            token = f"#{token}"
        ids.add(_parse_reference(token))
    return ids


def format_dependencies(ids: Iterable[int]) -> str:
    """Render ids back into the board's text form (``"#1, #2"``)."""
    return ", ".join(f"#{i}" for i in sorted(set(ids)))


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------

def _status_index(tasks: Iterable[Task]) -> dict[int, WorkflowStatus]:
    return {t.id: t.status for t in tasks}


def unmet_dependencies(task: Task, tasks: Iterable[Task]) -> set[int]:
    """Ids among ``task.dependencies`` that are not Done (unknown ids count as unmet)."""
    statuses = _status_index(tasks)
    return {dep for dep in task.dependencies if statuses.get(dep) != WorkflowStatus.DONE}


def is_ready(task: Task, tasks: Iterable[Task]) -> bool:
    return not unmet_dependencies(task, tasks)


def find_dependents(task_id: int, tasks: Iterable[Task]) -> set[int]:
    return {t.id for t in tasks if task_id in t.dependencies}


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------

def build_graph(tasks: Iterable[Task], *, open_only: bool = True) -> dict[int, set[int]]:
    """Adjacency ``{task_id: dependency_ids}``.

    With *open_only* the graph keeps only tasks that are not Done, and only
    edges between such tasks.
    """
    task_list = list(tasks)
    if open_only:
        task_list = [t for t in task_list if not t.is_done]
    nodes = {t.id for t in task_list}
    if open_only:
        return {t.id: {d for d in t.dependencies if d in nodes} for t in task_list}
    return {t.id: set(t.dependencies) for t in task_list}


def _canonical_cycle(cycle: list[int]) -> list[int]:
    start = cycle.index(min(cycle))
    return cycle[start:] + cycle[:start]


def detect_cycle(tasks: Iterable[Task], start: Optional[int] = None) -> Optional[list[int]]:
    """Depth-first search for a cycle among tasks that are not Done.

    Returns the cycle as an ordered id list starting at its smallest id, or
    ``None``.  Traversal is in ascending id order, so the answer is stable.
    With *start* the search covers only what that task can reach through its
    dependencies, so any cycle it depends on (directly or not) is found.
    """
    graph = build_graph(tasks)
    visiting, finished = 1, 2
    state: dict[int, int] = {}
    if start is None:
        roots = sorted(graph)
    else:
        roots = [start] if start in graph else []

    for root in roots:
        if state.get(root):
            continue
        state[root] = visiting
        path = [root]
        stack = [(root, iter(sorted(graph[root])))]
        while stack:
            node, children = stack[-1]
            child = next(children, None)
            if child is None:
                state[node] = finished
                stack.pop()
                path.pop()
                continue
            seen = state.get(child, 0)
            if seen == visiting:
                return _canonical_cycle(path[path.index(child):])
            if seen == 0:
                state[child] = visiting
                path.append(child)
                stack.append((child, iter(sorted(graph[child]))))
    return None


def ensure_acyclic(tasks: Iterable[Task], task_id: Optional[int] = None) -> None:
    """Raise :class:`CyclicDependencyError` on a cycle.

    With *task_id* only cycles reachable from that task count; otherwise any
    cycle in the open dependency graph does.
    """
    cycle = detect_cycle(tasks, start=task_id)
    if cycle is not None:
        raise CyclicDependencyError(cycle, task_id)


def execution_order(tasks: Iterable[Task]) -> list[list[int]]:
    """Topological sort of open tasks into batches (Kahn's algorithm).

    Tasks caught in a cycle are left out and logged.
    """
    graph = build_graph(tasks)
    in_degree: dict[int, int] = {tid: len(deps) for tid, deps in graph.items()}
    dependents: dict[int, list[int]] = defaultdict(list)
    for tid, deps in graph.items():
        for dep in deps:
            dependents[dep].append(tid)

    batches: list[list[int]] = []
    queue = sorted(tid for tid, deg in in_degree.items() if deg == 0)
    while queue:
        batches.append(queue)
        next_queue: list[int] = []
        for tid in queue:
            for child in dependents.get(tid, []):
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    next_queue.append(child)
        queue = sorted(next_queue)

    remaining = sorted(tid for tid, deg in in_degree.items() if deg > 0)
    if remaining:
        logger.warning("Dependency cycle detected among tasks: {}", remaining)
    return batches
