"""Tests for the sync runner: scheduling, sequencing and run history."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from receipt_sync.exceptions import ProviderConnectionError
from receipt_sync.observability import RunStatus, RunStore
from receipt_sync.recipes.models import RecipeResult
from receipt_sync.recipes.store import RecipeStore
from receipt_sync.sync import SyncRunner
from receipt_sync.vault import Credentials, VaultItem


def recipe_data(supplier, domain, steps=2):
    return {
        "provider": supplier,
        "domains": [domain],
        "version": "1.0.0",
        "type": "browser",
        "steps": [{"action": "sleep", "value": "0"}] * steps,
    }


class RecordingSink:
    def __init__(self):
        self.statuses = []

    def status(self, update):
        self.statuses.append(update)

    def progress(self, fraction):
        pass


@pytest.fixture
def recipe_store(tmp_path):
    path = tmp_path / "oicdb.json"
    path.write_text(
        json.dumps(
            {
                "version": "1",
                "recipes": [recipe_data("acme", "acme.example", steps=2), recipe_data("globex", "globex.example", steps=3)],
            }
        )
    )
    return RecipeStore(path)


@pytest.fixture
def provider():
    provider = MagicMock()
    provider.load_vault_items = AsyncMock(
        return_value=[
            VaultItem(id="item-1", title="Acme", urls=("https://acme.example/login",)),
            VaultItem(id="item-2", title="Bank", urls=("https://bank.example",)),
            VaultItem(id="item-3", title="Globex", urls=("globex.example",)),
        ]
    )
    provider.get_credentials_by_item_id = AsyncMock(side_effect=lambda item_id: Credentials(id=item_id, username="u", password="p"))
    provider.human_readable_error = MagicMock(return_value="could not connect to 1Password vault")
    return provider


@pytest.fixture
def engine(archive):
    engine = MagicMock()
    engine.archive = archive
    engine.execute = AsyncMock(
        side_effect=lambda recipe, *args, **kwargs: RecipeResult(status="success", status_text=f"{recipe.supplier}: One new document", new_files_count=1)
    )
    return engine


@pytest.fixture
def run_store(tmp_path):
    return RunStore(db_path=tmp_path / "runs.db")


@pytest.fixture
def runner(provider, recipe_store, run_store, documents_root, engine):
    return SyncRunner(provider=provider, recipe_store=recipe_store, run_store=run_store, documents_root=documents_root, engine=engine)


class TestSchedule:
    async def test_items_are_matched_by_url(self, runner):
        scheduled = await runner.schedule()
        assert [(s.recipe.supplier, s.item.id) for s in scheduled] == [("acme", "item-1"), ("globex", "item-3")]

    async def test_supplier_filter(self, runner):
        scheduled = await runner.schedule("globex")
        assert [s.recipe.supplier for s in scheduled] == ["globex"]

    async def test_vault_errors_propagate(self, runner, provider):
        provider.load_vault_items.side_effect = ProviderConnectionError("op item list", "not signed in")
        with pytest.raises(ProviderConnectionError):
            await runner.run()


class TestRun:
    async def test_recipes_run_sequentially_with_shared_progress(self, runner, engine, run_store):
        sink = RecordingSink()
        results = await runner.run(progress=sink)

        assert [r.status_text for r in results] == ["acme: One new document", "globex: One new document"]
        calls = engine.execute.await_args_list
        assert [c.args[0].supplier for c in calls] == ["acme", "globex"]
        assert [c.args[1].id for c in calls] == ["item-1", "item-3"]
        assert [(c.kwargs["steps_done"], c.kwargs["total_steps"]) for c in calls] == [(0, 5), (2, 5)]
        assert sink.statuses[-1].should_quit

        history = await run_store.get_history()
        assert {r.supplier: r.status for r in history} == {"acme": RunStatus.SUCCESS, "globex": RunStatus.SUCCESS}
        assert all(r.new_files_count == 1 and r.completed_at is not None for r in history)

    async def test_failed_credentials_do_not_stop_the_run(self, runner, provider, engine, run_store):
        async def credentials(item_id):
            if item_id == "item-1":
                raise ProviderConnectionError("op item get item-1", "locked")
            return Credentials(id=item_id, username="u", password="p")

        provider.get_credentials_by_item_id.side_effect = credentials
        results = await runner.run()

        assert results[0].status == "error"
        assert results[0].status_text == "acme aborted with error."
        assert results[0].last_error_message == "could not connect to 1Password vault"
        assert results[1].ok
        assert engine.execute.await_count == 1

        acme = (await run_store.get_history(supplier="acme"))[0]
        assert acme.status == RunStatus.ERROR
        assert acme.last_error_message == "could not connect to 1Password vault"

    async def test_cancellation_is_recorded(self, runner, engine, run_store):
        engine.execute.side_effect = asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await runner.run()

        history = await run_store.get_history()
        assert [r.status for r in history] == [RunStatus.CANCELLED]

    async def test_nothing_to_run(self, runner, provider):
        provider.load_vault_items.return_value = []
        sink = RecordingSink()

        assert await runner.run(progress=sink) == []
        assert sink.statuses[-1].message == "No recipes to run"
        assert sink.statuses[-1].should_quit

    async def test_archive_is_built_first(self, runner, documents_root, archive):
        (documents_root / "acme").mkdir()
        (documents_root / "acme" / "old.pdf").write_bytes(b"archived")

        await runner.run()

        assert len(archive) == 1
