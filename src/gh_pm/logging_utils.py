"""Configure loguru sinks and format engine results for logs."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
    "{message}"
)


def configure_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Configure loguru logger with the specified level.

    Args:
        level: Minimum level for the stderr sink.
        log_file: Optional path for a rotating file sink (always DEBUG).
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=_FORMAT)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_file),
            level="DEBUG",
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {module}:{line} | {extra} | {message}",
            rotation="5 MB",
            retention=3,
        )


def summarize_result(result: Any) -> dict[str, Any]:
    """Render a compact, JSON-friendly summary of an :class:`OperationResult`.

    Empty collections are omitted.
    """
    if result is None:
        return {"result": None}
    data = result.to_dict() if hasattr(result, "to_dict") else dict(result)
    return {k: v for k, v in data.items() if v not in ([], {}, None, "")}


def pretty(obj: Any, *, indent: int = 2) -> str:
    """Serialize an object as JSON for readable logs.

    Returns:
        A JSON string when possible; otherwise `str(obj)`.
    """
    try:
        return json.dumps(obj, indent=indent, default=str)
    except (TypeError, ValueError):
        return str(obj)
