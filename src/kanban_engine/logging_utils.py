"""Configure loguru output and format engine payloads for logs."""

from __future__ import annotations

import json
import sys
from typing import Any

from loguru import logger


def configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


def summarize_task(task: Any) -> dict[str, Any]:
    """Render a compact, JSON-friendly summary of a task for log lines.

    Args:
        task: Task instance (or None).

    Returns:
        A dictionary with the fields that matter when reading logs.
    """
    if task is None:
        return {"task": None}
    return {
        "task": task.id,
        "state": task.state.value,
        "assignee": task.assignee,
        "iteration": f"{task.iteration}/{task.max_iterations}",
    }


def pretty(obj: Any, *, indent: int = 2) -> str:
    """Serialize an object as JSON for readable logs.

    Args:
        obj: Object to serialize.
        indent: Indentation level for JSON output.

    Returns:
        A JSON string when possible; otherwise `str(obj)`.
    """
    try:
        return json.dumps(obj, indent=indent, default=str)
    except (TypeError, ValueError):
        return str(obj)
