"""Configuration management using Pydantic settings with optional file persistence."""

import json
import os
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Paths ---

APP_NAME = "receipt-sync"


def get_config_dir() -> Path:
    """Get the configuration directory (e.g. ~/.config/receipt-sync)."""
    if os.name == "nt":
        base = Path(os.environ.get("APPDATA", Path.home() / ".config")).expanduser()
    else:
        base = Path("~/.config").expanduser()

    path = base / APP_NAME
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_default_documents_dir() -> Path:
    """Get the default archive root for downloaded documents."""
    base = Path("~/Documents").expanduser()
    if not base.exists():
        base = Path.home()

    return base / "receipt-sync"


CONFIG_FILE = get_config_dir() / "config.json"


def load_config_file() -> dict[str, Any]:
    """Load settings from the JSON config file if it exists."""
    if not CONFIG_FILE.exists():
        return {}

    try:
        text = CONFIG_FILE.read_text(encoding="utf-8")
        if not text.strip():
            return {}
        return json.loads(text)
    except (OSError, ValueError):
        return {}


def save_config_file(config_data: dict[str, Any]) -> None:
    """Save settings to the JSON config file."""
    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    CONFIG_FILE.write_text(json.dumps(config_data, indent=2), encoding="utf-8")


class PathSettings(BaseSettings):
    """Storage locations."""

    model_config = SettingsConfigDict(env_prefix="RECEIPT_SYNC_PATHS_")

    documents_dir: Optional[str] = Field(default=None, description="Archive root; one sub-directory per supplier")
    config_dir: Optional[str] = Field(default=None, description="Directory holding the recipe database and token cache")
    recipe_database: str = Field(default="oicdb.json", description="Recipe database file name inside the config dir")
    token_file: str = Field(default=".secrets.json", description="OAuth2 token cache file name inside the config dir")
    run_history_db: str = Field(default="runs.db", description="SQLite run history file name inside the config dir")


class BrowserSettings(BaseSettings):
    """Browser configuration."""

    model_config = SettingsConfigDict(env_prefix="RECEIPT_SYNC_BROWSER_")

    headless: bool = Field(default=True)
    max_files_downloaded: int = Field(default=2, description="Maximum downloads triggered per downloadAll step (0 = no limit)")
    download_click_delay: float = Field(default=1.5, description="Seconds between two download clicks")
    navigation_timeout: float = Field(default=30.0, description="Seconds to wait for the networkIdle lifecycle event")
    block_images: bool = Field(default=True, description="Fail image requests to speed up page loads")
    cdp_url: Optional[str] = Field(default=None, description="Attach to an already running browser instead of launching one")


class EngineSettings(BaseSettings):
    """Recipe engine behavior."""

    model_config = SettingsConfigDict(env_prefix="RECEIPT_SYNC_ENGINE_")

    browser_step_timeout: float = Field(default=60.0, description="Timeout per step for browser recipes (seconds)")
    client_step_timeout: float = Field(default=120.0, description="Timeout per step for OAuth2 client recipes (seconds)")
    archive_hash_workers: int = Field(default=4, description="Threads used to hash the archive at startup")


class ConfiguredVault(BaseModel):
    """A 1Password vault registered with `receipt-sync vault add`."""

    id: str
    name: str
    selected: bool = False


class VaultSettings(BaseSettings):
    """Credential vault (1Password CLI) configuration."""

    model_config = SettingsConfigDict(env_prefix="RECEIPT_SYNC_VAULT_")

    binary: str = Field(default="op", description="Path or name of the 1Password CLI binary")
    vault: str = Field(default="", description="Restrict lookups to this vault; overrides the selected configured vault")
    tag: str = Field(default="receipt-sync", description="Only use items carrying this tag")
    vaults: list[ConfiguredVault] = Field(default_factory=list, description="Vaults registered for receipt-sync")

    def find_vault(self, ref: str) -> Optional[ConfiguredVault]:
        """Find a configured vault by id or name."""
        for configured in self.vaults:
            if ref in (configured.id, configured.name):
                return configured
        return None

    def selected_vault(self) -> Optional[ConfiguredVault]:
        return next((v for v in self.vaults if v.selected), None)

    def effective_vault(self) -> str:
        """Vault passed to the 1Password CLI: explicit `vault`, else the selected one."""
        if self.vault:
            return self.vault
        selected = self.selected_vault()
        return selected.id if selected else ""

    def add_vault(self, vault_id: str, name: str) -> ConfiguredVault:
        """Register a vault, replacing an entry with the same id but keeping its selection."""
        for index, configured in enumerate(self.vaults):
            if configured.id == vault_id:
                entry = ConfiguredVault(id=vault_id, name=name, selected=configured.selected)
                self.vaults[index] = entry
                return entry
        entry = ConfiguredVault(id=vault_id, name=name)
        self.vaults.append(entry)
        return entry

    def select_vault(self, ref: str) -> Optional[ConfiguredVault]:
        """Mark one configured vault as the default, clearing the others."""
        target = self.find_vault(ref)
        if target is None:
            return None
        for configured in self.vaults:
            configured.selected = configured is target
        return target

    def remove_vault(self, ref: str) -> Optional[ConfiguredVault]:
        target = self.find_vault(ref)
        if target is not None:
            self.vaults.remove(target)
        return target


class LogSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(env_prefix="RECEIPT_SYNC_LOG_")

    level: str = Field(default="INFO")
    json_output: bool = Field(default=True, description="Render structured logs as JSON")


class AppSettings(BaseSettings):
    """Root application settings.

    Priority: Environment Variables > Config File > Defaults
    """

    model_config = SettingsConfigDict(env_prefix="RECEIPT_SYNC_", extra="ignore")

    paths: PathSettings = Field(default_factory=PathSettings)
    browser: BrowserSettings = Field(default_factory=BrowserSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    vault: VaultSettings = Field(default_factory=VaultSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    def save(self) -> Path:
        """Save current configuration to file."""
        data = self.model_dump(mode="json", exclude_none=True)
        save_config_file(data)
        return CONFIG_FILE

    def get_documents_dir(self) -> Path:
        """Get the archive root, creating if needed."""
        if self.paths.documents_dir:
            path = Path(self.paths.documents_dir).expanduser()
        else:
            path = get_default_documents_dir()
        path.mkdir(parents=True, exist_ok=True)
        return path

    def get_config_dir(self) -> Path:
        if self.paths.config_dir:
            path = Path(self.paths.config_dir).expanduser()
            path.mkdir(parents=True, exist_ok=True)
            return path
        return get_config_dir()

    def get_recipe_database_path(self) -> Path:
        return self.get_config_dir() / self.paths.recipe_database

    def get_token_file_path(self) -> Path:
        return self.get_config_dir() / self.paths.token_file

    def get_run_history_path(self) -> Path:
        return self.get_config_dir() / self.paths.run_history_db


def _load_settings() -> AppSettings:
    """Load settings with file config as base, env vars overlay."""
    file_data = load_config_file()
    # Pydantic will overlay env vars on top
    return AppSettings(**file_data)


settings = _load_settings()
