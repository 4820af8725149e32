"""Recipe database loading and lookup.

Recipes come from the recipe database, a JSON file in the config directory::

    {"name": "...", "version": "...", "recipes": [{...}, ...]}

Local recipes in ``<documents-root>/_local/recipes`` (JSON or YAML, one recipe
per file) replace database entries of the same supplier or add new ones.
"""

import json
import logging
import re
from pathlib import Path
from typing import Any

import yaml
from anyio import to_thread

from ..exceptions import RecipeValidationError
from .models import Recipe

logger = logging.getLogger(__name__)

LOCAL_RECIPES_SUBDIR = Path("_local") / "recipes"
_LOCAL_SUFFIXES = {".json", ".yaml", ".yml"}


def domain_pattern(domain: str) -> re.Pattern[str]:
    """Pattern matching URLs that start with `domain`, with or without scheme."""
    return re.compile(r"^(https?://)?" + re.escape(domain))


def _read_structured(path: Path) -> Any:
    """Parse a JSON or YAML file depending on its suffix."""
    with path.open("r", encoding="utf-8") as f:
        if path.suffix.lower() == ".json":
            return json.load(f)
        return yaml.safe_load(f)


class RecipeStore:
    """In-memory recipe registry loaded from the database and local overrides."""

    def __init__(self, database_path: Path, local_dir: Path | None = None):
        """Initialize recipe store.

        Args:
            database_path: Path of the recipe database JSON file.
            local_dir: Directory of local recipe files. None disables overrides.
        """
        self.database_path = Path(database_path).expanduser()
        self.local_dir = Path(local_dir).expanduser() if local_dir else None
        self.name = ""
        self.version = ""
        self._recipes: dict[str, Recipe] = {}

    def __len__(self) -> int:
        return len(self._recipes)

    @property
    def recipes(self) -> list[Recipe]:
        return list(self._recipes.values())

    def _load_database(self) -> None:
        if not self.database_path.exists():
            logger.warning(f"Recipe database not found at {self.database_path}")
            return

        try:
            data = _read_structured(self.database_path)
        except (OSError, json.JSONDecodeError) as e:
            raise RecipeValidationError(f"Cannot read recipe database {self.database_path}: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("recipes", []), list):
            raise RecipeValidationError(f"Recipe database {self.database_path} has an unexpected layout")

        self.name = str(data.get("name", ""))
        self.version = str(data.get("version", ""))

        for raw in data.get("recipes", []):
            try:
                recipe = Recipe.from_dict(raw)
            except (RecipeValidationError, AttributeError, TypeError) as e:
                logger.error(f"Skipping invalid recipe in {self.database_path.name}: {e}")
                continue
            self._recipes[recipe.supplier] = recipe

    def _load_local(self) -> int:
        if self.local_dir is None or not self.local_dir.is_dir():
            return 0

        loaded = 0
        for path in sorted(self.local_dir.iterdir()):
            if not path.is_file() or path.suffix.lower() not in _LOCAL_SUFFIXES:
                continue
            try:
                data = _read_structured(path)
                if not data:
                    logger.warning(f"Empty recipe file: {path}")
                    continue
                recipe = Recipe.from_dict(data)
            except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
                logger.error(f"Cannot parse local recipe {path}: {e}")
                continue
            except (RecipeValidationError, AttributeError, TypeError) as e:
                logger.error(f"Invalid local recipe {path}: {e}")
                continue

            action = "Replaced" if recipe.supplier in self._recipes else "Added"
            self._recipes[recipe.supplier] = recipe
            loaded += 1
            logger.info(f"{action} recipe {recipe.supplier} from local file {path.name}")
        return loaded

    def load(self) -> list[Recipe]:
        """(Re)load the database, then apply local overrides.

        Raises:
            RecipeValidationError: If the database file itself is unreadable.
        """
        self._recipes.clear()
        self.name = ""
        self.version = ""
        self._load_database()
        if self._load_local():
            self.version = f"{self.version}-local" if self.version else "local"
        logger.info(f"Loaded {len(self._recipes)} recipes (database version {self.version or 'unknown'})")
        return self.recipes

    async def load_async(self) -> list[Recipe]:
        """Async wrapper for load() to avoid blocking the event loop."""
        return await to_thread.run_sync(self.load)

    def get(self, supplier: str) -> Recipe | None:
        return self._recipes.get(supplier)

    def find_for_urls(self, urls: list[str] | tuple[str, ...]) -> Recipe | None:
        """Find the first recipe with a domain matching any of the given URLs.

        Recipes are tried in load order, domains in declaration order.
        """
        for recipe in self._recipes.values():
            for domain in recipe.domains:
                pattern = domain_pattern(domain)
                if any(pattern.match(url) for url in urls):
                    return recipe
        return None
