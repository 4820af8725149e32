"""Recipes: declarative supplier scripts and the engine that runs them.

A recipe is a versioned list of steps for one supplier. Its type selects the
driver:

1. BROWSER recipes drive a real browser (open, click, type, downloadAll, ...)
   and move downloaded files from the staging directory into the archive.

2. CLIENT recipes log in once through an OAuth2 Authorization Code + PKCE flow,
   then list and download documents over plain HTTP with the bearer token.

Both drivers share the RecipeEngine step loop: per-step timeout with
cancellation, fatal vs. soft outcomes, progress reporting and staging cleanup.
"""

from .browser_driver import BrowserDriver, BrowserPage
from .client_driver import ClientDriver
from .engine import RecipeEngine, default_drivers
from .extract import extract_values
from .models import (
    Oauth2Config,
    Recipe,
    RecipeResult,
    RecipeType,
    Step,
    StepAction,
    StepOutcome,
    format_new_documents,
)
from .session import RecipeDriver, RecipeSession
from .store import RecipeStore

__all__ = [
    # Models
    "Recipe",
    "Step",
    "StepAction",
    "RecipeType",
    "Oauth2Config",
    "StepOutcome",
    "RecipeResult",
    "format_new_documents",
    # Execution
    "RecipeEngine",
    "RecipeSession",
    "RecipeDriver",
    "BrowserDriver",
    "BrowserPage",
    "ClientDriver",
    "default_drivers",
    # Loading
    "RecipeStore",
    "extract_values",
]
