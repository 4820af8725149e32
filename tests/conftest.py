"""Pytest configuration and fixtures for receipt-sync tests."""

from pathlib import Path

import pytest

from receipt_sync.archive import DocumentArchive
from receipt_sync.recipes.models import Recipe
from receipt_sync.recipes.session import RecipeSession
from receipt_sync.utils import init_supplier_directories
from receipt_sync.vault import Credentials


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: Tests that need a real browser")


@pytest.fixture
def credentials():
    """Credentials without a TOTP fetcher."""
    return Credentials(id="item-1", username="user@example.com", password="s3cret")


@pytest.fixture
def documents_root(tmp_path) -> Path:
    root = tmp_path / "documents"
    root.mkdir()
    return root


@pytest.fixture
def archive(documents_root) -> DocumentArchive:
    return DocumentArchive(documents_root)


@pytest.fixture
def make_recipe():
    """Factory for a browser recipe (or client recipe with recipe_type="client")."""

    def _make(*steps: dict, supplier: str = "acme", recipe_type: str = "browser") -> Recipe:
        return Recipe.from_dict(
            {
                "provider": supplier,
                "domains": ["acme.example"],
                "version": "1.0.0",
                "type": recipe_type,
                "steps": list(steps),
            }
        )

    return _make


@pytest.fixture
def make_session(archive, documents_root, credentials):
    """Factory for a RecipeSession with real supplier directories."""

    def _make(recipe: Recipe, creds: Credentials | None = None) -> RecipeSession:
        staging, documents = init_supplier_directories(documents_root, recipe.supplier)
        return RecipeSession(
            recipe=recipe,
            credentials=creds or credentials,
            archive=archive,
            staging_dir=staging,
            documents_dir=documents,
        )

    return _make
