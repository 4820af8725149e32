"""Sync runner: schedule recipes for vault items and execute them one by one.

A sync run
1. builds the archive index over the documents root,
2. loads the recipe database plus local recipes,
3. matches every vault item to a recipe by its login URLs,
4. executes the scheduled recipes sequentially, recording each in the run history.

A failed recipe does not stop the run; its result carries the error and the
next supplier is processed.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path

from anyio import to_thread

from .archive import DocumentArchive
from .config import settings
from .exceptions import VaultError
from .observability import RunRecord, RunStatus, RunStore, bind_recipe_context, clear_recipe_context, get_recipe_logger
from .progress import NullProgressSink, ProgressSink, StatusUpdate
from .recipes.engine import RecipeEngine
from .recipes.models import Recipe, RecipeResult
from .recipes.store import LOCAL_RECIPES_SUBDIR, RecipeStore
from .vault import OnePasswordProvider, VaultItem, VaultProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduledRecipe:
    """A recipe paired with the vault item whose credentials it runs with."""

    recipe: Recipe
    item: VaultItem


class SyncRunner:
    """Runs all recipes matching the user's vault items.

    Usage:
        runner = SyncRunner()
        results = await runner.run(supplier=None, progress=sink)
    """

    def __init__(
        self,
        provider: VaultProvider | None = None,
        recipe_store: RecipeStore | None = None,
        run_store: RunStore | None = None,
        documents_root: Path | None = None,
        engine: RecipeEngine | None = None,
    ):
        self.documents_root = Path(documents_root) if documents_root else settings.get_documents_dir()
        self.provider = provider or OnePasswordProvider(
            binary=settings.vault.binary,
            vault=settings.vault.effective_vault(),
            tag=settings.vault.tag,
        )
        self.recipe_store = recipe_store or RecipeStore(
            settings.get_recipe_database_path(),
            local_dir=self.documents_root / LOCAL_RECIPES_SUBDIR,
        )
        self.run_store = run_store or RunStore()
        self.archive = engine.archive if engine else DocumentArchive(self.documents_root)
        self.engine = engine or RecipeEngine(self.archive, self.documents_root)

    async def build_archive(self) -> int:
        """Hash every archived document; returns the index size."""
        return await to_thread.run_sync(self.archive.build, settings.engine.archive_hash_workers)

    async def schedule(self, supplier: str | None = None) -> list[ScheduledRecipe]:
        """Match vault items to recipes.

        Items without a matching recipe are skipped. With `supplier` set only
        that supplier's recipe is scheduled.

        Raises:
            VaultError: If the vault items cannot be listed.
        """
        await self.recipe_store.load_async()
        items = await self.provider.load_vault_items()

        scheduled: list[ScheduledRecipe] = []
        for item in items:
            recipe = self.recipe_store.find_for_urls(item.urls)
            if recipe is None:
                logger.debug(f"No recipe for vault item {item.title!r}")
                continue
            if supplier and recipe.supplier != supplier:
                continue
            scheduled.append(ScheduledRecipe(recipe=recipe, item=item))

        logger.info(f"Scheduled {len(scheduled)} of {len(items)} vault items")
        return scheduled

    async def run(self, supplier: str | None = None, progress: ProgressSink | None = None) -> list[RecipeResult]:
        """Execute a full sync.

        Raises:
            VaultError: If the vault items cannot be listed.
            asyncio.CancelledError: On interrupt, after the current recipe is recorded as cancelled.
        """
        sink = progress or NullProgressSink()

        sink.status(StatusUpdate(message="Build archive index"))
        await self.build_archive()

        scheduled = await self.schedule(supplier)
        if not scheduled:
            sink.status(StatusUpdate(message="No recipes to run", completed=True, should_quit=True))
            return []

        title = "Running one recipe..." if len(scheduled) == 1 else f"Running recipes for {len(scheduled)} suppliers..."
        sink.status(StatusUpdate(message=title))

        total_steps = sum(s.recipe.step_count for s in scheduled)
        steps_done = 0
        results: list[RecipeResult] = []
        for entry in scheduled:
            sink.status(StatusUpdate(message=f"Downloading invoices from {entry.recipe.supplier}:"))
            results.append(await self.run_one(entry, sink, steps_done=steps_done, total_steps=total_steps))
            steps_done += entry.recipe.step_count

        sink.status(StatusUpdate(message="Sync finished", completed=True, should_quit=True))
        return results

    async def run_one(
        self,
        entry: ScheduledRecipe,
        progress: ProgressSink,
        *,
        steps_done: int = 0,
        total_steps: int | None = None,
    ) -> RecipeResult:
        """Execute one scheduled recipe and record it in the run history."""
        recipe = entry.recipe
        run_id = str(uuid.uuid4())
        bind_recipe_context(run_id, recipe.supplier, recipe.version)
        log = get_recipe_logger(__name__)
        await self.run_store.create_run(
            RunRecord(run_id=run_id, supplier=recipe.supplier, recipe_version=recipe.version, credential_id=entry.item.id)
        )
        try:
            log.info("recipe_started", steps=recipe.step_count, type=recipe.type.value)
            try:
                credentials = await self.provider.get_credentials_by_item_id(entry.item.id)
            except VaultError as e:
                result = RecipeResult(
                    status="error",
                    status_text=f"{recipe.supplier} aborted with error.",
                    last_error_message=self.provider.human_readable_error(e),
                )
            else:
                result = await self.engine.execute(recipe, credentials, progress, steps_done=steps_done, total_steps=total_steps)

            await self.run_store.complete_run(
                run_id,
                RunStatus.SUCCESS if result.ok else RunStatus.ERROR,
                status_text=result.status_text,
                last_step_id=result.last_step_id,
                last_step_description=result.last_step_description,
                last_error_message=result.last_error_message or None,
                new_files_count=result.new_files_count,
            )
            log.info(
                "recipe_completed",
                status=result.status,
                new_files=result.new_files_count,
                duration=round(result.duration, 2),
                error=result.last_error_message or None,
            )
            return result
        except asyncio.CancelledError:
            log.warning("recipe_cancelled")
            await self.run_store.complete_run(run_id, RunStatus.CANCELLED, status_text=f"{recipe.supplier} cancelled.")
            raise
        finally:
            clear_recipe_context()
