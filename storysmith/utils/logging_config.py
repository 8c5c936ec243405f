"""
Logging configuration using structlog for structured, JSON-based logging.

Every module logs through ``structlog.get_logger(__name__)`` with snake_case
event names and keyword context; this module wires the processor chain once
at process start.
"""

from typing import Any

import structlog


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structured logging.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Render JSON lines; when False use the console renderer
            for interactive terminals
    """
    renderer: Any = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level.upper()),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_story_context(story_id: str, project_id: str | None = None) -> None:
    """Attach story identifiers to every log line emitted in this task.

    Uses structlog contextvars, so the binding is scoped to the current
    asyncio task and does not leak into concurrently running stories.
    """
    structlog.contextvars.bind_contextvars(story_id=story_id)
    if project_id is not None:
        structlog.contextvars.bind_contextvars(project_id=project_id)


def clear_story_context() -> None:
    structlog.contextvars.unbind_contextvars("story_id", "project_id")
