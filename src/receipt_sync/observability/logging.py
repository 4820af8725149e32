"""Structured logging with per-recipe context using structlog and contextvars."""

import logging

import structlog

_configured = False


def setup_structured_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog with JSON (or console) output and per-recipe context.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_output: Render JSON lines; otherwise a human-readable console format
    """
    global _configured
    if _configured:
        return

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,  # Inject recipe context
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper()),
    )

    _configured = True


def bind_recipe_context(run_id: str, supplier: str, recipe_version: str) -> None:
    """Bind recipe context for all subsequent logs in this async context."""
    structlog.contextvars.bind_contextvars(run_id=run_id, supplier=supplier, recipe_version=recipe_version)


def clear_recipe_context() -> None:
    """Clear recipe context after the recipe completes."""
    structlog.contextvars.clear_contextvars()


def get_recipe_logger(name: str = "receipt_sync") -> structlog.stdlib.BoundLogger:
    """Get a structlog logger carrying the bound recipe context."""
    return structlog.get_logger(name)
