"""Tests for configuration loading and path resolution."""

import json
import os

import pytest

from receipt_sync import config as config_module
from receipt_sync.config import AppSettings, BrowserSettings, ConfiguredVault, EngineSettings, PathSettings, VaultSettings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove receipt-sync env vars so defaults apply."""
    for var in list(os.environ.keys()):
        if var.startswith("RECEIPT_SYNC_"):
            monkeypatch.delenv(var, raising=False)


class TestDefaults:
    """Default values of the settings groups."""

    def test_engine_timeouts(self):
        engine = EngineSettings()
        assert engine.browser_step_timeout == 60.0
        assert engine.client_step_timeout == 120.0

    def test_browser_defaults(self):
        browser = BrowserSettings()
        assert browser.headless is True
        assert browser.max_files_downloaded == 2
        assert browser.download_click_delay == 1.5

    def test_file_names(self):
        paths = PathSettings()
        assert paths.recipe_database == "oicdb.json"
        assert paths.token_file == ".secrets.json"

    def test_vault_binary(self):
        assert VaultSettings().binary == "op"


class TestEnvironmentOverrides:
    """Environment variables take priority over defaults."""

    def test_browser_env(self, monkeypatch):
        monkeypatch.setenv("RECEIPT_SYNC_BROWSER_HEADLESS", "false")
        monkeypatch.setenv("RECEIPT_SYNC_BROWSER_MAX_FILES_DOWNLOADED", "0")
        browser = BrowserSettings()
        assert browser.headless is False
        assert browser.max_files_downloaded == 0

    def test_engine_env(self, monkeypatch):
        monkeypatch.setenv("RECEIPT_SYNC_ENGINE_CLIENT_STEP_TIMEOUT", "30")
        assert EngineSettings().client_step_timeout == 30.0

    def test_vault_env(self, monkeypatch):
        monkeypatch.setenv("RECEIPT_SYNC_VAULT_TAG", "invoices")
        assert VaultSettings().tag == "invoices"


class TestPaths:
    def test_configured_directories(self, tmp_path):
        settings = AppSettings(paths=PathSettings(documents_dir=str(tmp_path / "docs"), config_dir=str(tmp_path / "cfg")))

        assert settings.get_documents_dir() == tmp_path / "docs"
        assert (tmp_path / "docs").is_dir()
        assert settings.get_recipe_database_path() == tmp_path / "cfg" / "oicdb.json"
        assert settings.get_token_file_path() == tmp_path / "cfg" / ".secrets.json"
        assert settings.get_run_history_path() == tmp_path / "cfg" / "runs.db"


class TestConfigFile:
    def test_save_and_load(self, tmp_path, monkeypatch):
        config_file = tmp_path / "config.json"
        monkeypatch.setattr(config_module, "CONFIG_FILE", config_file)

        settings = AppSettings(browser=BrowserSettings(headless=False))
        assert settings.save() == config_file

        data = config_module.load_config_file()
        assert data["browser"]["headless"] is False
        assert AppSettings(**data).browser.headless is False

    def test_missing_or_broken_file(self, tmp_path, monkeypatch):
        config_file = tmp_path / "config.json"
        monkeypatch.setattr(config_module, "CONFIG_FILE", config_file)
        assert config_module.load_config_file() == {}

        config_file.write_text("{broken")
        assert config_module.load_config_file() == {}

        config_file.write_text(json.dumps({"engine": {"browser_step_timeout": 90}}))
        assert AppSettings(**config_module.load_config_file()).engine.browser_step_timeout == 90


class TestConfiguredVaults:
    def test_add_keeps_selection_and_refreshes_name(self):
        vault = VaultSettings(vaults=[ConfiguredVault(id="v1", name="Private", selected=True)])

        vault.add_vault("v1", "Personal")
        vault.add_vault("v2", "Shared")

        assert [(v.id, v.name, v.selected) for v in vault.vaults] == [("v1", "Personal", True), ("v2", "Shared", False)]

    def test_select_clears_previous_default(self):
        vault = VaultSettings(vaults=[ConfiguredVault(id="v1", name="Private", selected=True), ConfiguredVault(id="v2", name="Shared")])

        assert vault.select_vault("Shared").id == "v2"
        assert [v.selected for v in vault.vaults] == [False, True]
        assert vault.select_vault("missing") is None

    def test_remove(self):
        vault = VaultSettings(vaults=[ConfiguredVault(id="v1", name="Private")])
        assert vault.remove_vault("v1").name == "Private"
        assert vault.vaults == []
        assert vault.remove_vault("v1") is None

    def test_effective_vault(self):
        vault = VaultSettings(vaults=[ConfiguredVault(id="v1", name="Private"), ConfiguredVault(id="v2", name="Shared", selected=True)])
        assert vault.effective_vault() == "v2"

        vault.vault = "Work"
        assert vault.effective_vault() == "Work"

        assert VaultSettings().effective_vault() == ""

    def test_persisted_in_config_file(self, tmp_path, monkeypatch):
        monkeypatch.setattr(config_module, "CONFIG_FILE", tmp_path / "config.json")
        settings = AppSettings()
        settings.vault.add_vault("v1", "Private")
        settings.vault.select_vault("v1")
        settings.save()

        loaded = AppSettings(**config_module.load_config_file())
        assert loaded.vault.selected_vault() == ConfiguredVault(id="v1", name="Private", selected=True)
