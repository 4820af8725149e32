"""Per-recipe state shared between the engine and the drivers."""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ..archive import DocumentArchive
from ..exceptions import ArchiveHashError
from ..vault import Credentials
from .models import Recipe, Step, StepAction, StepOutcome

logger = logging.getLogger(__name__)

StepHandler = Callable[[Step], Awaitable[StepOutcome]]


@dataclass
class RecipeSession:
    """Everything a driver needs for one recipe execution.

    The archive is owned by the caller and passed in explicitly; the session
    only counts the documents it adds.
    """

    recipe: Recipe
    credentials: Credentials
    archive: DocumentArchive
    staging_dir: Path
    documents_dir: Path
    new_files_count: int = 0

    def archive_file(self, path: Path) -> bool:
        """Copy a staged file into the documents directory if its content is new.

        Blocking; call it off the event loop. A file that cannot be hashed is
        logged and skipped.

        Returns:
            True if the file was archived and counted.
        """
        target = self.documents_dir / path.name
        try:
            stored = self.archive.store_if_new(path, target)
        except ArchiveHashError as e:
            logger.warning(f"Skipping {path.name}: {e}")
            return False
        if stored:
            self.new_files_count += 1
        return stored


class RecipeDriver(Protocol):
    """Execution strategy selected by a recipe's type."""

    session: RecipeSession

    @property
    def new_files_count(self) -> int: ...

    async def start(self) -> None: ...

    async def close(self) -> None: ...

    def handlers(self) -> dict[StepAction, StepHandler]: ...

    async def current_url(self) -> str: ...

    def continue_after_timeout(self, step: Step) -> bool:
        """Whether a timed-out step should count as a soft error instead of aborting."""
        ...
