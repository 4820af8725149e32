"""CLI interface for receipt-sync."""

import asyncio

import typer

from .config import settings
from .exceptions import RecipeValidationError, VaultError
from .observability import RunStore, setup_structured_logging
from .progress import ProgressUpdate, QueueProgressSink, StatusUpdate
from .sync import SyncRunner
from .vault import OnePasswordProvider

RENDER_DRAIN_TIMEOUT = 1.0

NO_VAULTS_HINT = "Use `receipt-sync vault add` to add one."

app = typer.Typer(help="Sync invoices from your suppliers into a local document archive")
vault_app = typer.Typer(help="Manage the 1Password vaults credentials are read from")
app.add_typer(vault_app, name="vault")


def _provider() -> OnePasswordProvider:
    return OnePasswordProvider(binary=settings.vault.binary, vault=settings.vault.effective_vault(), tag=settings.vault.tag)


async def _render(queue: asyncio.Queue) -> None:
    """Print progress updates as plain lines until the sync finishes."""
    last_percent = -1
    while True:
        update = await queue.get()
        if isinstance(update, ProgressUpdate):
            percent = int(update.fraction * 100)
            if percent // 10 != last_percent // 10:
                print(f"  [{percent:3d}%]")
            last_percent = percent
        elif isinstance(update, StatusUpdate):
            line = update.message
            if update.details:
                line += f"  {update.details}"
            if update.error:
                line += f"  ERROR: {update.error}"
            print(line)
            if update.should_quit:
                return


@app.command()
def sync(
    supplier: str = typer.Argument(None, help="Only run the recipe of this supplier"),
) -> None:
    """Synchronize all invoices from your suppliers."""
    setup_structured_logging(level=settings.log.level, json_output=settings.log.json_output)
    provider = _provider()

    async def _sync() -> int:
        await provider.initialize()
        sink = QueueProgressSink()
        renderer = asyncio.create_task(_render(sink.queue))
        try:
            results = await SyncRunner(provider=provider).run(supplier=supplier, progress=sink)
            try:
                await asyncio.wait_for(renderer, timeout=RENDER_DRAIN_TIMEOUT)
            except TimeoutError:
                pass
        finally:
            renderer.cancel()

        print()
        for result in results:
            line = f"{result.status_text} ({result.duration:.0f}s)"
            if result.last_error_message:
                line += f"\n    {result.last_error_message}"
            print(line)
        return 0 if all(r.ok for r in results) else 1

    try:
        code = asyncio.run(_sync())
    except VaultError as e:
        print(provider.human_readable_error(e))
        raise typer.Exit(0)
    except RecipeValidationError as e:
        print(f"Error: {e}")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        print("Interrupted")
        raise typer.Exit(130)
    raise typer.Exit(code)


@app.command()
def vaults() -> None:
    """List the vaults the 1Password CLI can access."""
    provider = _provider()
    try:
        found = asyncio.run(provider.get_vaults())
    except VaultError as e:
        print(provider.human_readable_error(e))
        raise typer.Exit(1)
    for vault in found:
        print(f"{vault.id}  {vault.name}")


@vault_app.command("add")
def vault_add(
    vault: str = typer.Argument(..., help="Vault id or name as listed by `receipt-sync vaults`"),
) -> None:
    """Register a 1Password vault for receipt-sync.

    The first registered vault becomes the default. Adding a vault again
    refreshes its name and keeps its default flag.
    """
    provider = _provider()
    try:
        available = asyncio.run(provider.get_vaults())
    except VaultError as e:
        print(provider.human_readable_error(e))
        raise typer.Exit(1)

    match = next((v for v in available if vault in (v.id, v.name)), None)
    if match is None:
        print(f"1Password has no vault {vault!r}. Run `receipt-sync vaults` to see the available ones.")
        raise typer.Exit(1)

    settings.vault.add_vault(match.id, match.name)
    if settings.vault.selected_vault() is None:
        settings.vault.select_vault(match.id)
    path = settings.save()
    print(f"Added 1Password vault '{match.name}' to {path}")


@vault_app.command("select")
def vault_select(vault: str = typer.Argument(..., help="Id or name of a configured vault")) -> None:
    """Use a configured vault as the default for syncs."""
    target = settings.vault.select_vault(vault)
    if target is None:
        print(f"No configured vault {vault!r}. {NO_VAULTS_HINT}")
        raise typer.Exit(1)
    settings.save()
    print(f"Configured 1Password vault '{target.name}' as new default")


@vault_app.command("remove")
def vault_remove(vault: str = typer.Argument(..., help="Id or name of a configured vault")) -> None:
    """Remove a vault from the configuration."""
    target = settings.vault.remove_vault(vault)
    if target is None:
        print(f"No configured vault {vault!r}. {NO_VAULTS_HINT}")
        raise typer.Exit(1)
    settings.save()
    print(f"Removed vault '{target.name}' from configuration")


@vault_app.command("list")
def vault_list() -> None:
    """List the vaults configured for receipt-sync."""
    if not settings.vault.vaults:
        print(f"No vaults configured yet. {NO_VAULTS_HINT}")
        return
    for configured in settings.vault.vaults:
        marker = " (default)" if configured.selected else ""
        print(f"{configured.id}  {configured.name}{marker}")
    if settings.vault.vault:
        print(f"The vault setting {settings.vault.vault!r} overrides the default")


@app.command()
def history(
    supplier: str = typer.Option(None, "--supplier", "-s", help="Only show runs of this supplier"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of runs to show"),
    prune: int = typer.Option(None, "--prune", help="First delete finished runs older than this many days"),
) -> None:
    """Show recent recipe runs."""
    store = RunStore()

    async def _history():
        if prune is not None:
            deleted = await store.cleanup_old_runs(days=prune)
            print(f"Deleted {deleted} runs older than {prune} days")
        return await store.get_history(limit=limit, supplier=supplier)

    runs = asyncio.run(_history())
    if not runs:
        print("No runs recorded yet.")
        return
    for run in runs:
        duration = f"{run.duration_seconds:.0f}s" if run.duration_seconds is not None else "-"
        print(f"{run.started_at:%Y-%m-%d %H:%M}  {run.supplier:<20} {run.status.value:<9} {run.new_files_count:>3} new  {duration:>5}  {run.status_text or ''}")
        if run.last_error_message:
            print(f"    {run.last_error_message}")


@app.command()
def config() -> None:
    """Show current configuration."""
    print(f"Documents: {settings.get_documents_dir()}")
    print(f"Recipe database: {settings.get_recipe_database_path()}")
    print(f"Token cache: {settings.get_token_file_path()}")
    print(f"Run history: {settings.get_run_history_path()}")
    print(f"Headless: {settings.browser.headless}")
    print(f"Max files per downloadAll: {settings.browser.max_files_downloaded}")
    print(f"Step timeout (browser/client): {settings.engine.browser_step_timeout:.0f}s / {settings.engine.client_step_timeout:.0f}s")
    print(f"Vault: {settings.vault.effective_vault() or '(all)'}  Tag: {settings.vault.tag or '(none)'}")
    print(f"1Password CLI: {settings.vault.binary}")


if __name__ == "__main__":
    app()
