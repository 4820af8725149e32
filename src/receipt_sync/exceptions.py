"""Custom exceptions for receipt-sync."""


class ReceiptSyncError(Exception):
    """Base exception for receipt-sync errors."""

    pass


class RecipeValidationError(ReceiptSyncError):
    """Raised when a recipe definition is malformed."""

    pass


class StepHandlerError(ReceiptSyncError):
    """Raised by a step handler when its action cannot be completed."""

    pass


class AuthenticationError(StepHandlerError):
    """Raised when interacting with a login form fails."""

    pass


class TokenRefreshError(StepHandlerError):
    """Raised when a refresh-token grant is rejected."""

    pass


class NetworkError(StepHandlerError):
    """Raised when an API call or document download fails."""

    pass


class ArchiveHashError(ReceiptSyncError):
    """Raised when a single file cannot be hashed.

    Only aborts processing of that file, never the whole recipe.
    """

    pass


class BrowserError(StepHandlerError):
    """Raised when browser operations fail."""

    pass


# --- Vault errors ---

PROVIDER_NOT_INSTALLED_ERROR_CODE = 9001
PROVIDER_CONNECTION_ERROR_CODE = 9002
PROVIDER_RESPONSE_PARSING_ERROR_CODE = 9003
COMMAND_EXECUTION_ERROR_CODE = 9004


class VaultError(ReceiptSyncError):
    """Base exception for credential vault failures."""

    code = 0
    summary = "vault error"

    def __init__(self, cmd: str, err: BaseException | str):
        self.cmd = cmd
        self.err = err
        super().__init__(f"Error {self.code} {self.summary} {cmd!r}: {err}")


class ProviderNotInstalledError(VaultError):
    code = PROVIDER_NOT_INSTALLED_ERROR_CODE
    summary = "provider could not be found"


class ProviderConnectionError(VaultError):
    code = PROVIDER_CONNECTION_ERROR_CODE
    summary = "could not connect to password vault"


class ProviderResponseParsingError(VaultError):
    code = PROVIDER_RESPONSE_PARSING_ERROR_CODE
    summary = "reading password vault response"


class CommandExecutionError(VaultError):
    code = COMMAND_EXECUTION_ERROR_CODE
    summary = "executing command"


class TokenStoreError(ReceiptSyncError):
    """Raised when the persisted token cache cannot be read."""

    pass
