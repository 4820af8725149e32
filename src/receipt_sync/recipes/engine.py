"""Recipe execution engine.

Runs the steps of one recipe in order against the driver selected by the
recipe type. Every step handler runs as its own asyncio task bounded by the
step timeout; an expired task is cancelled and awaited before the engine moves
on, so no browser or HTTP call outlives its step.

Outcomes fold into a single RecipeResult:
- success: continue with the next step
- soft error: logged, continue with the next step
- fatal error or timeout: stop, clean up, return an error result

The result always describes the last executed step, so a success after a soft
error (oauth2-check-tokens followed by oauth2-authenticate) ends successfully.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from pathlib import Path

from anyio import to_thread

from ..archive import DocumentArchive
from ..config import settings
from ..exceptions import StepHandlerError
from ..progress import NullProgressSink, ProgressSink, StatusUpdate
from ..utils import init_supplier_directories, truncate_directory
from ..vault import Credentials
from .browser_driver import BrowserDriver
from .client_driver import ClientDriver
from .models import Recipe, RecipeResult, RecipeType, Step, StepOutcome, format_new_documents
from .session import RecipeDriver, RecipeSession, StepHandler

logger = logging.getLogger(__name__)

DriverFactory = Callable[[RecipeSession], RecipeDriver]


def default_drivers() -> dict[RecipeType, DriverFactory]:
    return {
        RecipeType.BROWSER: BrowserDriver,
        RecipeType.CLIENT: ClientDriver,
    }


class RecipeEngine:
    """Executes recipes against an archive rooted at `documents_root`.

    Usage:
        engine = RecipeEngine(archive, documents_root)
        result = await engine.execute(recipe, credentials, sink)
    """

    def __init__(
        self,
        archive: DocumentArchive,
        documents_root: Path,
        drivers: dict[RecipeType, DriverFactory] | None = None,
        browser_step_timeout: float | None = None,
        client_step_timeout: float | None = None,
    ):
        self.archive = archive
        self.documents_root = Path(documents_root)
        self.drivers = drivers or default_drivers()
        self.browser_step_timeout = browser_step_timeout or settings.engine.browser_step_timeout
        self.client_step_timeout = client_step_timeout or settings.engine.client_step_timeout

    def step_timeout(self, recipe_type: RecipeType) -> float:
        if recipe_type == RecipeType.CLIENT:
            return self.client_step_timeout
        return self.browser_step_timeout

    async def execute(
        self,
        recipe: Recipe,
        credentials: Credentials,
        progress: ProgressSink | None = None,
        *,
        steps_done: int = 0,
        total_steps: int | None = None,
    ) -> RecipeResult:
        """Run all steps of `recipe` and return the aggregated result.

        Args:
            recipe: Recipe to run
            credentials: Credentials for the supplier login
            progress: Sink receiving status and progress updates
            steps_done: Steps already completed by earlier recipes in this run
            total_steps: Steps scheduled across all recipes (defaults to this recipe's)

        Raises:
            asyncio.CancelledError: On external interrupt, after teardown.
        """
        sink = progress or NullProgressSink()
        total = total_steps or recipe.step_count
        started = time.monotonic()

        staging_dir, documents_dir = await to_thread.run_sync(init_supplier_directories, self.documents_root, recipe.supplier)
        session = RecipeSession(
            recipe=recipe,
            credentials=credentials,
            archive=self.archive,
            staging_dir=staging_dir,
            documents_dir=documents_dir,
        )

        factory = self.drivers.get(recipe.type)
        if factory is None:
            return RecipeResult(
                status="error",
                status_text=f"{recipe.supplier} aborted with error.",
                last_error_message=f"No driver for recipe type {recipe.type.value}",
            )
        driver = factory(session)
        timeout = self.step_timeout(recipe.type)

        result = RecipeResult(status="success", status_text="")
        logger.info(f"Executing recipe {recipe.supplier} v{recipe.version} ({recipe.type.value}, {recipe.step_count} steps)")
        try:
            try:
                await driver.start()
            except Exception as e:
                logger.error(f"Driver start failed for {recipe.supplier}: {e}")
                result.status = "error"
                result.status_text = f"{recipe.supplier} aborted with error."
                result.last_error_message = str(e)
                return result

            handlers = driver.handlers()
            for n, step in enumerate(recipe.steps, start=1):
                sink.status(
                    StatusUpdate(
                        message=f"{recipe.supplier}: {step.description or step.action.value}",
                        details=f"Step {n} of {recipe.step_count}",
                    )
                )

                outcome, timed_out = await self._run_step(driver, handlers, step, timeout)
                sink.progress((steps_done + n) / total)

                result.last_step_id = recipe.step_id(n, step)
                result.last_step_description = step.description
                result.status = outcome.status
                result.last_error_message = "" if outcome.ok else outcome.message

                if outcome.ok:
                    logger.debug(f"Step {result.last_step_id} succeeded")
                    continue

                if not outcome.fatal:
                    logger.warning(f"Step {result.last_step_id} failed, continuing: {outcome.message}")
                    continue

                reason = "timeout" if timed_out else "error"
                logger.error(f"Step {result.last_step_id} failed, aborting recipe: {outcome.message}")
                result.status_text = f"{recipe.supplier} aborted with {reason}."
                sink.status(StatusUpdate(message=result.status_text, details=step.description, error=outcome.message))
                return result

            result.new_files_count = driver.new_files_count
            if result.ok:
                result.status_text = f"{recipe.supplier}: {format_new_documents(result.new_files_count)}"
            else:
                result.status_text = f"{recipe.supplier} aborted with error."
            sink.status(StatusUpdate(message=result.status_text, completed=result.ok, error=result.last_error_message or None))
            return result
        finally:
            result.duration = time.monotonic() - started
            await self._teardown(driver, staging_dir)

    async def _run_step(
        self,
        driver: RecipeDriver,
        handlers: dict,
        step: Step,
        timeout: float,
    ) -> tuple[StepOutcome, bool]:
        """Run one step in its own task, bounded by `timeout`.

        Returns:
            The outcome and whether it was produced by the timeout.
        """
        handler = handlers.get(step.action)
        if handler is None:
            return StepOutcome.fatal_error(f"No handler for action {step.action.value}"), False

        task = asyncio.create_task(self._dispatch(driver, handler, step), name=f"step-{step.action.value}")
        try:
            # wait_for cancels the task on expiry and waits for it to finish.
            return await asyncio.wait_for(task, timeout=timeout), False
        except TimeoutError:
            logger.warning(f"Step {step.action.value} exceeded {timeout:.0f}s, cancelled")
            message = f"Step {step.action.value} timeout after {timeout:.0f}s"
            if driver.continue_after_timeout(step):
                return StepOutcome.soft_error(f"{message}, continuing with completed downloads"), True
            return StepOutcome.fatal_error(message), True

    async def _dispatch(self, driver: RecipeDriver, handler: StepHandler, step: Step) -> StepOutcome:
        """Run a handler, turning every exception except cancellation into an outcome."""
        try:
            if step.when_url:
                current = await driver.current_url()
                if current != step.when_url:
                    logger.debug(f"Skipping {step.action.value}: page is {current!r}, step expects {step.when_url!r}")
                    return StepOutcome.success("skipped")
            return await handler(step)
        except StepHandlerError as e:
            return StepOutcome.fatal_error(str(e))
        except Exception as e:
            logger.exception(f"Unexpected error in {step.action.value} handler")
            return StepOutcome.fatal_error(f"{type(e).__name__}: {e}")

    async def _teardown(self, driver: RecipeDriver, staging_dir: Path) -> None:
        try:
            await driver.close()
        except Exception as e:
            logger.warning(f"Error closing driver: {e}")
        try:
            await to_thread.run_sync(truncate_directory, staging_dir)
        except OSError as e:
            logger.warning(f"Could not clean staging directory {staging_dir}: {e}")
