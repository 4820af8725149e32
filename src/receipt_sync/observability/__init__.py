"""Observability module for structured logging and recipe run history."""

from .logging import bind_recipe_context, clear_recipe_context, get_recipe_logger, setup_structured_logging
from .models import RunRecord, RunStatus
from .store import RunStore

__all__ = [
    "RunRecord",
    "RunStatus",
    "RunStore",
    "bind_recipe_context",
    "clear_recipe_context",
    "get_recipe_logger",
    "setup_structured_logging",
]
