"""Data models for recipe run history."""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    """Recipe run status."""

    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


class RunRecord(BaseModel):
    """One recipe execution, as kept in the run history."""

    run_id: str
    supplier: str
    recipe_version: str = ""
    credential_id: str = ""
    status: RunStatus = RunStatus.RUNNING

    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    status_text: str | None = None
    last_step_id: str | None = None
    last_step_description: str | None = None
    last_error_message: str | None = None
    new_files_count: int = 0

    @property
    def duration_seconds(self) -> float | None:
        """Run duration in seconds, or None while running."""
        if not self.completed_at:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def is_terminal(self) -> bool:
        return self.status != RunStatus.RUNNING
