"""Comment bodies posted on a task alongside status changes."""

from __future__ import annotations

from typing import Iterable

from ..utils import _now_display

_FOOTER = "---\n*Automated update from gh-pm*"


def start_comment(task_id: int) -> str:
    return (
        "🟡 **Work Started**\n\n"
        f"Task #{task_id} moved to In Progress. All dependencies are complete.\n\n"
        f"**Started:** {_now_display()}\n\n{_FOOTER}"
    )


def review_request_comment(task_id: int, message: str) -> str:
    return (
        "## 🟣 Ready for Review\n\n"
        f"{message}\n\n"
        "### 📋 Review Request\n"
        "This task has been completed and is ready for human review and approval.\n\n"
        "### 🔍 What to Review\n"
        "- Implementation meets all acceptance criteria\n"
        "- Code quality and standards compliance\n"
        "- Integration with existing systems\n"
        "- Documentation completeness\n\n"
        "### 🎯 Next Steps for Reviewer\n"
        f"- **✅ Approve**: `gh-pm approve {task_id}` - Move to Done\n"
        f"- **🔄 Request Changes**: `gh-pm rework {task_id} \"specific feedback\"` - Return to In Progress\n\n"
        f"**Submitted:** {_now_display()}\n\n{_FOOTER}"
    )


def approval_comment(message: str) -> str:
    return (
        "✅ **Task Approved**\n\n"
        f"{message}\n\n"
        "Task reviewed and approved. Moving to Done status.\n\n"
        f"**Approval date:** {_now_display()}\n\n{_FOOTER}"
    )


def rework_comment(feedback: str) -> str:
    return (
        "🔄 **Rework Requested**\n\n"
        "### Feedback\n"
        f"{feedback}\n\n"
        "Task returned to In Progress. Submit for review again once the feedback is addressed.\n\n"
        f"**Requested:** {_now_display()}\n\n{_FOOTER}"
    )


def completion_comment(message: str) -> str:
    return (
        "✅ **Task Completed**\n\n"
        f"{message}\n\n"
        f"**Completed:** {_now_display()}\n\n{_FOOTER}"
    )


def unblocked_comment(task_id: int, completed_id: int, dependencies: Iterable[int]) -> str:
    deps = ", ".join(f"#{d}" for d in sorted(dependencies)) or "none"
    return (
        "🔵 **Unblocked**\n\n"
        f"Task #{completed_id} is done, so all dependencies of #{task_id} ({deps}) are now complete. "
        "Moved to Ready.\n\n"
        f"{_FOOTER}"
    )


def triage_comment(blocked: bool, unmet: Iterable[int]) -> str:
    if blocked:
        waiting = ", ".join(f"#{d}" for d in sorted(unmet))
        return f"🔒 **Blocked**\n\nWaiting on: {waiting}\n\n{_FOOTER}"
    return f"🔵 **Ready**\n\nNo open dependencies. Ready to start.\n\n{_FOOTER}"


def override_comment(reason: str, unmet: Iterable[int]) -> str:
    pending = sorted(unmet)
    lines = [
        "⚠️ **Manually moved to Ready**",
        "",
        f"**Reason:** {reason}",
    ]
    if pending:
        lines.append("**Unfinished dependencies:** " + ", ".join(f"#{d}" for d in pending))
    lines += ["", _FOOTER]
    return "\n".join(lines)
