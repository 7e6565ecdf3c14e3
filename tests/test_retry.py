"""Tests for RetryPolicy backoff."""

from __future__ import annotations

import pytest

from gh_pm.task_engine.errors import FatalStoreError, InvalidTransitionError, TransientStoreError
from gh_pm.task_engine.model import WorkflowStatus
from gh_pm.task_engine.retry import RetryPolicy


def test_delays_double_and_cap() -> None:
    policy = RetryPolicy(attempts=6, initial_delay=1.0, max_delay=5.0)
    assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_succeeds_after_transient_failures() -> None:
    slept: list[float] = []
    calls = {"n": 0}

    def flaky() -> str:
        calls["n"] += 1
        if calls["n"] < 3:
            raise TransientStoreError("rate limited")
        return "ok"

    policy = RetryPolicy(attempts=3, sleep=slept.append)
    assert policy.call(flaky) == "ok"
    assert slept == [1.0, 2.0]


def test_exhaustion_becomes_fatal() -> None:
    slept: list[float] = []

    def always() -> None:
        raise TransientStoreError("timeout", 4)

    with pytest.raises(FatalStoreError, match="after 3 attempts") as excinfo:
        RetryPolicy(attempts=3, sleep=slept.append).call(always, "write")
    assert excinfo.value.task_id == 4
    assert isinstance(excinfo.value.__cause__, TransientStoreError)
    assert len(slept) == 2


def test_non_transient_errors_propagate_immediately() -> None:
    slept: list[float] = []
    calls = {"n": 0}

    def invalid() -> None:
        calls["n"] += 1
        raise InvalidTransitionError(WorkflowStatus.DONE, WorkflowStatus.DONE, 1)

    with pytest.raises(InvalidTransitionError):
        RetryPolicy(sleep=slept.append).call(invalid)
    assert calls["n"] == 1
    assert slept == []
