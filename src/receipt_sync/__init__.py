"""Fetch supplier invoices into a local, de-duplicated document archive."""

from .config import settings
from .exceptions import ReceiptSyncError, RecipeValidationError, StepHandlerError, VaultError
from .sync import SyncRunner

__all__ = [
    "SyncRunner",
    "settings",
    "ReceiptSyncError",
    "RecipeValidationError",
    "StepHandlerError",
    "VaultError",
]
