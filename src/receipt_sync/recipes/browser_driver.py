"""Browser automation driver.

Executes UI steps against one browser-use `BrowserSession` per recipe. All
page interaction goes through session-scoped CDP commands (`session_id`) so
browser-use's watchdogs never sit between a step and the page:

- Page.navigate + the `networkIdle` lifecycle event for `open`
- Runtime.evaluate for selector lookups, clicks and scripts
- Input.insertText for typing
- Browser.downloadProgress events to wait for downloads
- Fetch.requestPaused to fail image requests
"""

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any

from anyio import to_thread

from ..config import settings
from ..exceptions import AuthenticationError, BrowserError
from ..utils import find_files, truncate_directory, unzip_file
from .models import TRANSFORM_UNZIP, SelectorType, Step, StepAction, StepOutcome
from .session import RecipeSession, StepHandler

if TYPE_CHECKING:
    from browser_use.browser.session import BrowserSession

logger = logging.getLogger(__name__)

DEFAULT_DOWNLOAD_CLICK_DELAY = 1.5
SELECTOR_POLL_INTERVAL = 0.1

# Resolves (selector, selectorType) to an array of elements in page context.
_FIND_ELEMENTS_JS = """
(function(selector, type) {
    const byXPath = (expr, ctx) => {
        const snapshot = document.evaluate(expr, ctx || document, null, XPathResult.ORDERED_NODE_SNAPSHOT_TYPE, null);
        const nodes = [];
        for (let i = 0; i < snapshot.snapshotLength; i++) nodes.push(snapshot.snapshotItem(i));
        return nodes;
    };
    switch (type) {
        case "XPath":
            return byXPath(selector);
        case "JSPath": {
            const el = eval(selector);
            return el ? [el] : [];
        }
        case "ID": {
            const el = document.getElementById(selector);
            return el ? [el] : [];
        }
        case "Query":
            return Array.from(document.querySelectorAll(selector));
        default:
            try {
                return Array.from(document.querySelectorAll(selector));
            } catch (e) {
                return byXPath(selector);
            }
    }
})
"""


def _find_expr(selector: str, selector_type: SelectorType) -> str:
    return f"{_FIND_ELEMENTS_JS}({json.dumps(selector)}, {json.dumps(selector_type)})"


class BrowserPage:
    """One browser session and the CDP primitives the drivers build on.

    Usage:
        page = BrowserPage(download_dir=staging)
        await page.start()
        try:
            await page.navigate("https://example.com/login")
            await page.type_text("#email", "user@example.com")
        finally:
            await page.close()
    """

    def __init__(self, download_dir: Path, block_images: bool | None = None):
        self.download_dir = Path(download_dir)
        self.block_images = settings.browser.block_images if block_images is None else block_images
        self.browser_session: BrowserSession | None = None
        self.session_id: str | None = None

        self._network_idle = asyncio.Event()
        self._download_changed = asyncio.Event()
        self.downloads_started = 0
        self.downloads_completed = 0
        self.downloads_canceled = 0

    @property
    def downloads_finished(self) -> int:
        return self.downloads_completed + self.downloads_canceled

    @property
    def cdp(self) -> Any:
        if self.browser_session is None:
            raise BrowserError("Browser session is not started")
        return self.browser_session.cdp_client

    def _create_browser_session(self) -> "BrowserSession":
        from browser_use import BrowserProfile
        from browser_use.browser.session import BrowserSession

        profile = BrowserProfile(
            headless=settings.browser.headless,
            downloads_path=str(self.download_dir),
            accept_downloads=True,
            cdp_url=settings.browser.cdp_url,
        )
        if settings.browser.cdp_url:
            logger.info(f"Using external browser via CDP: {settings.browser.cdp_url}")
        return BrowserSession(browser_profile=profile)

    async def start(self) -> None:
        """Launch (or attach to) the browser and enable the CDP domains used."""
        self.browser_session = self._create_browser_session()
        await self.browser_session.start()

        cdp_session = await self.browser_session.get_or_create_cdp_session()
        self.session_id = cdp_session.session_id
        cdp = self.cdp

        await cdp.send.Page.enable(session_id=self.session_id)
        await cdp.send.Page.setLifecycleEventsEnabled(params={"enabled": True}, session_id=self.session_id)
        await cdp.send.Runtime.enable(session_id=self.session_id)

        cdp.register.Page.lifecycleEvent(self._on_lifecycle_event)
        cdp.register.Browser.downloadWillBegin(self._on_download_will_begin)
        cdp.register.Browser.downloadProgress(self._on_download_progress)
        await self.set_download_behavior("allow")

        if self.block_images:
            cdp.register.Fetch.requestPaused(self._on_request_paused)
            await cdp.send.Fetch.enable(
                params={"patterns": [{"resourceType": "Image", "requestStage": "Request"}]},
                session_id=self.session_id,
            )
        logger.debug(f"Browser page ready, downloads go to {self.download_dir}")

    async def close(self) -> None:
        if self.browser_session is None:
            return
        session, self.browser_session = self.browser_session, None
        self.session_id = None
        await session.stop()
        logger.debug("Browser session stopped")

    # --- CDP events ---

    def _on_lifecycle_event(self, event: dict, session_id: str | None) -> None:
        if event.get("name") == "networkIdle":
            self._network_idle.set()

    def _on_download_will_begin(self, event: dict, session_id: str | None) -> None:
        self.downloads_started += 1
        logger.debug(f"Download begins: {event.get('suggestedFilename') or event.get('url', '')[:80]}")

    def _on_download_progress(self, event: dict, session_id: str | None) -> None:
        state = event.get("state")
        if state == "completed":
            self.downloads_completed += 1
            logger.debug(f"Download completed: {event.get('guid')} ({event.get('receivedBytes', 0)} bytes)")
        elif state == "canceled":
            self.downloads_canceled += 1
            logger.debug(f"Download canceled: {event.get('guid')}")
        else:
            return
        self._download_changed.set()

    def _on_request_paused(self, event: dict, session_id: str | None) -> None:
        request_id = event.get("requestId")
        if not request_id:
            return
        if event.get("resourceType") == "Image":
            coro = self.cdp.send.Fetch.failRequest(params={"requestId": request_id, "errorReason": "BlockedByClient"}, session_id=session_id)
        else:
            coro = self.cdp.send.Fetch.continueRequest(params={"requestId": request_id}, session_id=session_id)
        task = asyncio.get_running_loop().create_task(coro)
        task.add_done_callback(_log_task_error)

    # --- Primitives ---

    async def set_download_behavior(self, behavior: str) -> None:
        """Set Browser.setDownloadBehavior (`allow` keeps names, `allowAndName` uses the download GUID)."""
        await self.cdp.send.Browser.setDownloadBehavior(
            params={"behavior": behavior, "downloadPath": str(self.download_dir), "eventsEnabled": True}
        )

    async def navigate(self, url: str, wait_for_idle: bool = True) -> None:
        """Navigate and wait (bounded) for the networkIdle lifecycle event."""
        self._network_idle.clear()
        result = await self.cdp.send.Page.navigate(
            params={"url": url, "transitionType": "address_bar"},
            session_id=self.session_id,
        )
        # Downloads abort the navigation with net::ERR_ABORTED, which is expected.
        error_text = result.get("errorText")
        if error_text and "ERR_ABORTED" not in error_text:
            raise BrowserError(f"Navigation to {url} failed: {error_text}")
        if wait_for_idle:
            await self.wait_for_network_idle()

    async def wait_for_network_idle(self, timeout: float | None = None) -> bool:
        timeout = settings.browser.navigation_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(self._network_idle.wait(), timeout=timeout)
            return True
        except TimeoutError:
            logger.debug(f"No networkIdle event within {timeout:.0f}s, continuing")
            return False

    async def evaluate(self, expression: str, await_promise: bool = False) -> Any:
        """Evaluate JavaScript in the page and return the value by value."""
        result = await self.cdp.send.Runtime.evaluate(
            params={"expression": expression, "returnByValue": True, "awaitPromise": await_promise},
            session_id=self.session_id,
        )
        details = result.get("exceptionDetails")
        if details:
            text = (details.get("exception") or {}).get("description") or details.get("text", "Unknown error")
            raise BrowserError(f"Script evaluation failed: {text}")
        return (result.get("result") or {}).get("value")

    async def current_url(self) -> str:
        result = await self.cdp.send.Page.getFrameTree(session_id=self.session_id)
        return result.get("frameTree", {}).get("frame", {}).get("url", "")

    async def count(self, selector: str, selector_type: SelectorType = "Search") -> int:
        return int(await self.evaluate(f"{_find_expr(selector, selector_type)}.length") or 0)

    async def wait_for_selector(self, selector: str, selector_type: SelectorType = "Search", visible: bool = False) -> int:
        """Poll until the selector matches; bounded only by the caller's timeout.

        Returns:
            Number of matching elements.
        """
        check = f"{_find_expr(selector, selector_type)}"
        if visible:
            check += ".filter(el => !!(el.offsetWidth || el.offsetHeight || el.getClientRects().length))"
        while True:
            found = int(await self.evaluate(f"{check}.length") or 0)
            if found:
                return found
            await asyncio.sleep(SELECTOR_POLL_INTERVAL)

    async def click(self, selector: str, selector_type: SelectorType = "Search", index: int = 0) -> None:
        await self.wait_for_selector(selector, selector_type)
        clicked = await self.evaluate(
            f"(function(nodes) {{ const el = nodes[{index}]; if (!el) return false; "
            f"el.scrollIntoView({{block: 'center'}}); el.click(); return true; }})({_find_expr(selector, selector_type)})"
        )
        if not clicked:
            raise BrowserError(f"No element #{index} for selector {selector!r}")

    async def click_relative(self, selector: str, selector_type: SelectorType, index: int, sub_xpath: str) -> None:
        """Wait for `sub_xpath` (relative to match `index`) to be visible and click it."""
        expr = (
            f"(function(nodes) {{ const base = nodes[{index}]; if (!base) return null; "
            f"return document.evaluate({json.dumps('.' + sub_xpath)}, base, null, XPathResult.FIRST_ORDERED_NODE_TYPE, null).singleNodeValue; }})"
            f"({_find_expr(selector, selector_type)})"
        )
        while not await self.evaluate(f"(function(el) {{ return !!(el && (el.offsetWidth || el.offsetHeight)); }})({expr})"):
            await asyncio.sleep(SELECTOR_POLL_INTERVAL)
        await self.evaluate(f"(function(el) {{ el.click(); return true; }})({expr})")

    async def type_text(self, selector: str, text: str, selector_type: SelectorType = "Search") -> None:
        await self.wait_for_selector(selector, selector_type)
        focused = await self.evaluate(
            f"(function(nodes) {{ const el = nodes[0]; if (!el) return false; el.focus(); return true; }})({_find_expr(selector, selector_type)})"
        )
        if not focused:
            raise BrowserError(f"Cannot focus element {selector!r}")
        await self.cdp.send.Input.insertText(params={"text": text}, session_id=self.session_id)

    async def remove_element(self, selector: str, selector_type: SelectorType = "Search") -> None:
        removed = await self.evaluate(
            f"(function(nodes) {{ const el = nodes[0]; if (!el) return false; el.parentNode.removeChild(el); return true; }})"
            f"({_find_expr(selector, selector_type)})"
        )
        if not removed:
            raise BrowserError(f"No element to remove for selector {selector!r}")

    async def wait_for_downloads(self, expected: int) -> None:
        """Block until `expected` downloads finished (completed or canceled)."""
        while self.downloads_finished < expected:
            self._download_changed.clear()
            await self._download_changed.wait()


def _log_task_error(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug(f"Fetch interception call failed: {task.exception()}")


async def resolve_credential_placeholders(value: str, session: RecipeSession) -> str:
    """Substitute `{{ username }}`, `{{ password }}` and `{{ totp }}`.

    Raises:
        AuthenticationError: If a TOTP is required but cannot be fetched.
    """
    credentials = session.credentials
    value = value.replace("{{ username }}", credentials.username).replace("{{ password }}", credentials.password)
    if "{{ totp }}" not in value:
        return value

    try:
        totp = await credentials.get_totp()
    except Exception as e:
        raise AuthenticationError(f"Error processing credentials: could not fetch TOTP for {credentials.id}: {e}") from e
    if not totp:
        raise AuthenticationError(f"Fetched TOTP for credential ID {credentials.id} is empty. Please check the vault item")
    logger.info(f"Fetched TOTP on demand for credential {credentials.id}")
    return value.replace("{{ totp }}", totp)


class BrowserDriver:
    """Driver for `browser` recipes."""

    def __init__(self, session: RecipeSession, page: BrowserPage | None = None):
        self.session = session
        self.page = page or BrowserPage(download_dir=session.staging_dir)
        self.max_files_downloaded = settings.browser.max_files_downloaded
        self.download_click_delay = settings.browser.download_click_delay
        self._download_baseline = 0

    @property
    def new_files_count(self) -> int:
        return self.session.new_files_count

    async def start(self) -> None:
        await self.page.start()

    async def close(self) -> None:
        await self.page.close()

    async def current_url(self) -> str:
        return await self.page.current_url()

    def continue_after_timeout(self, step: Step) -> bool:
        """A timed-out downloadAll hands the downloads it completed itself to the next steps."""
        return step.action == StepAction.DOWNLOAD_ALL and self.page.downloads_completed > self._download_baseline

    def handlers(self) -> dict[StepAction, StepHandler]:
        handlers = {
            StepAction.OPEN: self.step_open,
            StepAction.CLICK: self.step_click,
            StepAction.TYPE: self.step_type,
            StepAction.SLEEP: self.step_sleep,
            StepAction.WAIT_FOR: self.step_wait_for,
            StepAction.DOWNLOAD_ALL: self.step_download_all,
            StepAction.REMOVE_ELEMENT: self.step_remove_element,
            StepAction.TRANSFORM: self.step_transform,
            StepAction.MOVE: self.step_move,
            StepAction.RUN_SCRIPT: self.step_run_script,
            StepAction.RUN_SCRIPT_DOWNLOAD_URLS: self.step_run_script_download_urls,
        }
        return {action: self._truncating_on_error(handler) for action, handler in handlers.items()}

    def _truncating_on_error(self, handler: StepHandler) -> StepHandler:
        """Empty the staging directory whenever a step fails, so partial downloads are never counted later."""

        async def run(step: Step) -> StepOutcome:
            try:
                outcome = await handler(step)
            except Exception:
                await to_thread.run_sync(truncate_directory, self.session.staging_dir)
                raise
            if not outcome.ok:
                await to_thread.run_sync(truncate_directory, self.session.staging_dir)
            return outcome

        return run

    # --- Handlers ---

    async def step_open(self, step: Step) -> StepOutcome:
        logger.debug(f"Opening {step.url}")
        await self.page.navigate(step.url)
        return StepOutcome.success()

    async def step_click(self, step: Step) -> StepOutcome:
        await self.page.click(step.selector, step.selector_type)
        return StepOutcome.success()

    async def step_type(self, step: Step) -> StepOutcome:
        try:
            value = await resolve_credential_placeholders(step.value, self.session)
        except AuthenticationError as e:
            logger.error(f"Failed to resolve credential placeholders: {e}")
            return StepOutcome.fatal_error(str(e))
        await self.page.type_text(step.selector, value, step.selector_type)
        return StepOutcome.success()

    async def step_sleep(self, step: Step) -> StepOutcome:
        await asyncio.sleep(int(step.value))
        return StepOutcome.success()

    async def step_wait_for(self, step: Step) -> StepOutcome:
        await self.page.wait_for_selector(step.selector, step.selector_type)
        return StepOutcome.success()

    async def step_remove_element(self, step: Step) -> StepOutcome:
        await self.page.remove_element(step.selector, step.selector_type)
        return StepOutcome.success()

    async def step_download_all(self, step: Step) -> StepOutcome:
        self._download_baseline = self.page.downloads_completed
        found = await self.page.wait_for_selector(step.selector, step.selector_type)
        limit = found if self.max_files_downloaded <= 0 else min(found, self.max_files_downloaded)
        delay = step.sleep_duration_ms / 1000 if step.sleep_duration_ms > 0 else self.download_click_delay
        logger.debug(f"downloadAll: {found} matches, clicking {limit}")

        baseline = self.page.downloads_finished
        for index in range(limit):
            await self.page.click(step.selector, step.selector_type, index=index)
            if step.value:
                await self.page.click_relative(step.selector, step.selector_type, index, step.value)
            # Spaced clicks avoid supplier rate limiting.
            await asyncio.sleep(delay)

        await self.page.wait_for_downloads(baseline + limit)
        logger.info(f"All downloads completed ({self.page.downloads_completed} completed, {self.page.downloads_canceled} canceled)")
        return StepOutcome.success()

    async def step_transform(self, step: Step) -> StepOutcome:
        if step.value != TRANSFORM_UNZIP:
            return StepOutcome.fatal_error(f"Unsupported transform {step.value!r}")

        staging = self.session.staging_dir

        def _unzip_all() -> int:
            archives = find_files(staging, ".zip")
            for path in archives:
                logger.info(f"Unzipping {path.name}")
                unzip_file(path, staging)
            return len(archives)

        count = await to_thread.run_sync(_unzip_all)
        return StepOutcome.success(f"Unzipped {count} archives")

    async def step_move(self, step: Step) -> StepOutcome:
        pattern = re.compile(step.value)

        def _move_matching() -> int:
            moved = 0
            for path in sorted(p for p in self.session.staging_dir.rglob("*") if p.is_file()):
                if not pattern.search(path.name):
                    continue
                if self.session.archive_file(path):
                    moved += 1
            return moved

        moved = await to_thread.run_sync(_move_matching)
        logger.info(f"Moved {moved} new documents to {self.session.documents_dir}")
        return StepOutcome.success()

    async def step_run_script(self, step: Step) -> StepOutcome:
        await self.page.evaluate(step.value, await_promise=True)
        return StepOutcome.success()

    async def step_run_script_download_urls(self, step: Step) -> StepOutcome:
        urls = await self.page.evaluate(f"Object.values({step.value});", await_promise=True) or []
        await self.page.set_download_behavior("allowAndName")
        for url in urls:
            if not isinstance(url, str) or not url:
                continue
            logger.debug(f"Downloading {url[:80]}")
            await self.page.navigate(url)
        return StepOutcome.success()
