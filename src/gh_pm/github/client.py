"""Thin wrapper around ``gh api graphql``.

Every call pipes a JSON payload to ``gh api graphql --input -`` and classifies
failures: rate limits, 5xx responses, timeouts and network errors are
retryable (:class:`TransientStoreError`); authentication problems raise
:class:`AuthenticationError`; anything else is a :class:`GraphQLError`.
"""

from __future__ import annotations

import json
import subprocess
from typing import Any, Optional

from loguru import logger

from ..task_engine.errors import AuthenticationError, FatalStoreError, TransientStoreError

DEFAULT_TIMEOUT = 30.0

_TRANSIENT_MARKERS = (
    "rate limit",
    "ratelimit",
    "abuse detection",
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
    "could not resolve host",
    "temporary failure",
    "eof",
    "http 500",
    "http 502",
    "http 503",
    "http 504",
    "bad gateway",
    "service unavailable",
)
_AUTH_MARKERS = (
    "gh auth login",
    "authentication",
    "bad credentials",
    "http 401",
    "http 403",
    "forbidden",
    "must have",
    "resource not accessible",
)
_TRANSIENT_TYPES = {"RATE_LIMITED", "SERVICE_UNAVAILABLE", "TIMEOUT"}
_AUTH_TYPES = {"FORBIDDEN", "INSUFFICIENT_SCOPES", "UNAUTHORIZED"}


class GraphQLError(FatalStoreError):
    """A GraphQL-level error returned by the API."""

    def __init__(self, message: str, error_type: Optional[str] = None) -> None:
        super().__init__(message)
        self.error_type = error_type


class GhClient:
    """Run GraphQL queries and mutations through the ``gh`` CLI."""

    def __init__(self, gh_command: str = "gh", timeout: float = DEFAULT_TIMEOUT) -> None:
        self.gh_command = gh_command
        self.timeout = timeout

    def _run_gh(self, args: list[str], payload: Optional[str] = None) -> subprocess.CompletedProcess:
        cmd = [self.gh_command] + args
        return subprocess.run(
            cmd,
            input=payload,
            capture_output=True,
            text=True,
            check=False,
            timeout=self.timeout,
        )

    def auth_ok(self) -> bool:
        """True when ``gh auth status`` succeeds."""
        try:
            return self._run_gh(["auth", "status"]).returncode == 0
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return False

    def graphql(self, query: str, variables: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Execute *query* and return its ``data`` object.

        Raises:
            TransientStoreError: retryable failure.
            AuthenticationError: not logged in or not permitted.
            GraphQLError: the API reported an error (``error_type`` carries its type).
        """
        payload = json.dumps({"query": query, "variables": variables or {}})
        try:
            proc = self._run_gh(["api", "graphql", "--input", "-"], payload)
        except FileNotFoundError as exc:
            raise FatalStoreError(f"{self.gh_command} CLI not found; install GitHub CLI") from exc
        except subprocess.TimeoutExpired as exc:
            raise TransientStoreError(f"gh api graphql timed out after {self.timeout:.0f}s") from exc

        body = _parse_json(proc.stdout)
        if body is not None and body.get("errors"):
            _raise_for_errors(body["errors"])
        if proc.returncode != 0:
            _raise_for_stderr(proc.stderr or proc.stdout or "", proc.returncode)
        if body is None:
            raise FatalStoreError(f"gh api graphql returned non-JSON output: {proc.stdout[:200]!r}")
        logger.trace("graphql ok: {} bytes", len(proc.stdout))
        return body.get("data") or {}


def _parse_json(text: str) -> Optional[dict[str, Any]]:
    if not text or not text.strip():
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _raise_for_errors(errors: list[dict[str, Any]]) -> None:
    first = errors[0] if errors else {}
    error_type = str(first.get("type") or "")
    message = "; ".join(str(e.get("message", "")) for e in errors) or "GraphQL error"
    if error_type in _TRANSIENT_TYPES or "rate limit" in message.lower():
        raise TransientStoreError(message)
    if error_type in _AUTH_TYPES:
        raise AuthenticationError(message)
    raise GraphQLError(message, error_type or None)


def _raise_for_stderr(stderr: str, returncode: int) -> None:
    text = stderr.strip()
    lowered = text.lower()
    if any(marker in lowered for marker in _TRANSIENT_MARKERS):
        raise TransientStoreError(text or f"gh exited with {returncode}")
    if any(marker in lowered for marker in _AUTH_MARKERS):
        raise AuthenticationError(text)
    raise GraphQLError(text or f"gh exited with {returncode}")
