"""Tests for browser recipe handlers with a mocked page."""

import asyncio
import zipfile
from unittest.mock import AsyncMock, MagicMock, call

import pytest

from receipt_sync.exceptions import AuthenticationError, BrowserError
from receipt_sync.recipes.browser_driver import BrowserDriver, BrowserPage, _find_expr, resolve_credential_placeholders
from receipt_sync.recipes.models import Step, StepAction
from receipt_sync.vault import Credentials


@pytest.fixture
def page():
    page = MagicMock(spec=BrowserPage)
    page.downloads_completed = 0
    page.downloads_canceled = 0
    page.downloads_finished = 0
    return page


@pytest.fixture
def make_driver(make_recipe, make_session, page):
    def _make(*steps, credentials=None):
        recipe = make_recipe(*(steps or ({"action": "sleep", "value": "0"},)))
        return BrowserDriver(make_session(recipe, credentials), page=page)

    return _make


def staged(driver, name, content=b"%PDF"):
    path = driver.session.staging_dir / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


class TestType:
    async def test_placeholders_are_resolved(self, make_driver, page):
        driver = make_driver()
        step = Step.from_dict({"action": "type", "selector": "#email", "value": "{{ username }}"})

        outcome = await driver.step_type(step)

        assert outcome.ok
        page.type_text.assert_awaited_once_with("#email", "user@example.com", "Search")

    async def test_totp_is_fetched_on_demand(self, make_driver, page):
        creds = Credentials(id="item-1", username="u", password="p", totp_fetcher=AsyncMock(return_value="123456"))
        driver = make_driver(credentials=creds)
        step = Step.from_dict({"action": "type", "selector": "otp", "selectorType": "ID", "value": "{{ totp }}"})

        await driver.step_type(step)

        page.type_text.assert_awaited_once_with("otp", "123456", "ID")

    async def test_empty_totp_is_fatal_and_clears_staging(self, make_driver, page):
        driver = make_driver()
        staged(driver, "partial.pdf")
        step = Step.from_dict({"action": "type", "selector": "#otp", "value": "{{ totp }}"})

        outcome = await driver.handlers()[StepAction.TYPE](step)

        assert outcome.fatal
        assert "empty" in outcome.message
        page.type_text.assert_not_awaited()
        assert list(driver.session.staging_dir.iterdir()) == []

    async def test_totp_fetch_error(self, make_recipe, make_session):
        creds = Credentials(id="item-1", username="u", password="p", totp_fetcher=AsyncMock(side_effect=RuntimeError("vault locked")))
        session = make_session(make_recipe({"action": "sleep", "value": "0"}), creds)
        with pytest.raises(AuthenticationError, match="vault locked"):
            await resolve_credential_placeholders("{{ totp }}", session)


class TestDownloads:
    async def test_clicks_are_capped(self, make_driver, page):
        driver = make_driver()
        driver.max_files_downloaded = 2
        page.wait_for_selector.return_value = 5
        step = Step.from_dict({"action": "downloadAll", "selector": "a.invoice", "sleepDuration": 1})

        outcome = await driver.step_download_all(step)

        assert outcome.ok
        assert page.click.await_args_list == [call("a.invoice", "Search", index=0), call("a.invoice", "Search", index=1)]
        page.click_relative.assert_not_awaited()
        page.wait_for_downloads.assert_awaited_once_with(2)

    async def test_unlimited_with_sub_selector(self, make_driver, page):
        driver = make_driver()
        driver.max_files_downloaded = 0
        page.wait_for_selector.return_value = 3
        page.downloads_finished = 1
        step = Step.from_dict({"action": "downloadAll", "selector": "//tr", "selectorType": "XPath", "value": "/td/a", "sleepDuration": 1})

        await driver.step_download_all(step)

        assert page.click.await_count == 3
        page.click_relative.assert_awaited_with("//tr", "XPath", 2, "/td/a")
        page.wait_for_downloads.assert_awaited_once_with(4)

    def test_timeout_continues_only_with_completed_downloads(self, make_driver, page):
        driver = make_driver()
        download = Step.from_dict({"action": "downloadAll", "selector": "a"})
        click = Step.from_dict({"action": "click", "selector": "a"})

        assert not driver.continue_after_timeout(download)
        page.downloads_completed = 1
        assert driver.continue_after_timeout(download)
        assert not driver.continue_after_timeout(click)

    async def test_timeout_ignores_downloads_of_earlier_steps(self, make_driver, page):
        driver = make_driver()
        first = Step.from_dict({"action": "downloadAll", "selector": "a.first", "sleepDuration": 1})
        second = Step.from_dict({"action": "downloadAll", "selector": "a.second", "sleepDuration": 1})

        page.wait_for_selector.return_value = 1
        page.downloads_completed = 1
        await driver.step_download_all(first)

        async def never_found(*args, **kwargs):
            await asyncio.sleep(10)

        page.wait_for_selector.side_effect = never_found
        with pytest.raises(TimeoutError):
            await asyncio.wait_for(driver.step_download_all(second), timeout=0.05)

        assert not driver.continue_after_timeout(second)
        page.downloads_completed = 2
        assert driver.continue_after_timeout(second)

    async def test_script_download_urls(self, make_driver, page):
        driver = make_driver()
        page.evaluate.return_value = ["https://acme.example/1.pdf", "", None, "https://acme.example/2.pdf"]
        step = Step.from_dict({"action": "runScriptDownloadUrls", "value": "window.invoiceLinks"})

        await driver.step_run_script_download_urls(step)

        page.evaluate.assert_awaited_once_with("Object.values(window.invoiceLinks);", await_promise=True)
        page.set_download_behavior.assert_awaited_once_with("allowAndName")
        assert page.navigate.await_args_list == [call("https://acme.example/1.pdf"), call("https://acme.example/2.pdf")]


class TestFiles:
    async def test_move_archives_matching_files(self, make_driver):
        driver = make_driver()
        staged(driver, "invoice-1.pdf", b"one")
        staged(driver, "nested/invoice-2.PDF", b"two")
        staged(driver, "readme.txt", b"three")
        step = Step.from_dict({"action": "move", "value": "(?i)\\.pdf$"})

        outcome = await driver.step_move(step)

        assert outcome.ok
        assert driver.new_files_count == 2
        assert sorted(p.name for p in driver.session.documents_dir.iterdir()) == ["invoice-1.pdf", "invoice-2.PDF"]
        assert (driver.session.staging_dir / "readme.txt").exists()

    async def test_move_skips_known_content(self, make_driver):
        driver = make_driver()
        staged(driver, "a.pdf", b"same")
        staged(driver, "b.pdf", b"same")

        await driver.step_move(Step.from_dict({"action": "move", "value": ".*"}))

        assert driver.new_files_count == 1

    async def test_transform_unzips_in_place(self, make_driver):
        driver = make_driver()
        with zipfile.ZipFile(driver.session.staging_dir / "export.zip", "w") as zf:
            zf.writestr("2024/jan.pdf", b"jan")
            zf.writestr("2024/feb.pdf", b"feb")

        outcome = await driver.step_transform(Step.from_dict({"action": "transform", "value": "unzip"}))

        assert outcome.ok
        assert (driver.session.staging_dir / "jan.pdf").read_bytes() == b"jan"
        assert (driver.session.staging_dir / "feb.pdf").exists()


class TestInteraction:
    async def test_click_and_wait(self, make_driver, page):
        driver = make_driver()
        await driver.step_click(Step.from_dict({"action": "click", "selector": "#login"}))
        await driver.step_wait_for(Step.from_dict({"action": "waitFor", "selector": "#dashboard"}))
        await driver.step_remove_element(Step.from_dict({"action": "removeElement", "selector": "#cookie-banner"}))

        page.click.assert_awaited_once_with("#login", "Search")
        page.wait_for_selector.assert_awaited_once_with("#dashboard", "Search")
        page.remove_element.assert_awaited_once_with("#cookie-banner", "Search")

    async def test_open(self, make_driver, page):
        driver = make_driver()
        await driver.step_open(Step.from_dict({"action": "open", "url": "https://acme.example/login"}))
        page.navigate.assert_awaited_once_with("https://acme.example/login")

    async def test_handler_exception_clears_staging(self, make_driver, page):
        driver = make_driver()
        staged(driver, "partial.pdf")
        page.click.side_effect = BrowserError("No element #0 for selector '#gone'")

        with pytest.raises(BrowserError):
            await driver.handlers()[StepAction.CLICK](Step.from_dict({"action": "click", "selector": "#gone"}))
        assert list(driver.session.staging_dir.iterdir()) == []

    async def test_lifecycle_delegates_to_page(self, make_driver, page):
        driver = make_driver()
        page.current_url.return_value = "https://acme.example/home"

        await driver.start()
        assert await driver.current_url() == "https://acme.example/home"
        await driver.close()

        page.start.assert_awaited_once()
        page.close.assert_awaited_once()


def test_selector_is_embedded_as_json_literal():
    expr = _find_expr('a[title="x"]', "Query")
    assert expr.endswith('("a[title=\\"x\\"]", "Query")')
