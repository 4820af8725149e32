"""Credential vault access through the 1Password CLI (`op`).

The provider shells out to `op` for every call; the CLI session must already
be signed in (``eval $(op signin)``). Items are limited to the configured vault
and tag.
"""

import asyncio
import json
import logging
import shutil
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from .exceptions import (
    CommandExecutionError,
    ProviderConnectionError,
    ProviderNotInstalledError,
    ProviderResponseParsingError,
    VaultError,
)

logger = logging.getLogger(__name__)

BINARY_NAME_1PASSWORD = "op"

TOTP_WINDOW_SECONDS = 30
TOTP_MIN_VALIDITY_SECONDS = 5
TOTP_WAIT_BUFFER_SECONDS = 1


async def wait_for_totp_window(
    now: Callable[[], float] = time.time,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> float:
    """Block until the current TOTP window has enough validity left.

    If fewer than TOTP_MIN_VALIDITY_SECONDS remain in the 30 second window,
    sleeps until one second into the next window.

    Returns:
        Seconds waited (0 when no wait was needed).
    """
    consumed = int(now()) % TOTP_WINDOW_SECONDS
    remaining = TOTP_WINDOW_SECONDS - consumed
    if remaining >= TOTP_MIN_VALIDITY_SECONDS:
        return 0.0

    wait = float(remaining + TOTP_WAIT_BUFFER_SECONDS)
    logger.info(f"Current TOTP window expires in {remaining}s, waiting {wait:.0f}s for the next one")
    await sleep(wait)
    return wait


@dataclass(frozen=True)
class Credentials:
    """Login data for one vault item.

    `totp_fetcher` is bound to the provider that produced the credentials, so
    codes are always fetched fresh and window-aware.
    """

    id: str
    username: str
    password: str
    totp_fetcher: Callable[[], Awaitable[str]] | None = field(default=None, repr=False, compare=False)

    async def get_totp(self) -> str:
        if self.totp_fetcher is None:
            return ""
        return await self.totp_fetcher()

    def __repr__(self) -> str:
        return f"Credentials(id={self.id!r}, username={self.username!r}, password='***')"


@dataclass(frozen=True)
class VaultItem:
    """Summary of a vault item as returned by `op item list`."""

    id: str
    title: str
    urls: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VaultItem":
        urls = tuple(u.get("href", "") for u in data.get("urls") or [] if u.get("href"))
        return cls(id=data["id"], title=data.get("title", ""), urls=urls)


@dataclass(frozen=True)
class Vault:
    id: str
    name: str


class VaultProvider(Protocol):
    """Boundary the sync runner and engine rely on."""

    async def load_vault_items(self) -> list[VaultItem]: ...

    async def get_credentials_by_item_id(self, item_id: str) -> Credentials: ...

    async def get_totp_for_item(self, item_id: str) -> str: ...

    async def get_vaults(self) -> list[Vault]: ...

    def human_readable_error(self, err: Exception) -> str: ...


def determine_binary(binary: str) -> str:
    """Resolve the configured `op` binary, falling back to PATH lookup.

    Raises:
        ProviderNotInstalledError: If no executable can be found.
    """
    configured = binary.strip()
    if configured and configured != BINARY_NAME_1PASSWORD:
        path = Path(configured).expanduser().resolve()
        if not path.exists():
            raise ProviderNotInstalledError(configured, f"could not find executable {str(path)!r}")
        return str(path)

    found = shutil.which(BINARY_NAME_1PASSWORD)
    if not found:
        raise ProviderNotInstalledError(BINARY_NAME_1PASSWORD, "not found in PATH")
    return found


def get_value_by_field(item: dict[str, Any], field_name: str) -> str:
    """Read a field value from an `op item get` response.

    ``totp`` resolves to the current code of the item's OTP field; any other
    name matches a field id.
    """
    for item_field in item.get("fields") or []:
        if field_name == "totp" and item_field.get("type") == "OTP":
            return item_field.get("totp", "")
        if item_field.get("id") == field_name:
            return item_field.get("value", "")
    return ""


class OnePasswordProvider:
    """VaultProvider backed by the 1Password CLI."""

    def __init__(self, binary: str = BINARY_NAME_1PASSWORD, vault: str = "", tag: str = ""):
        self._configured_binary = binary
        self._binary: str | None = None
        self.vault = vault
        self.tag = tag
        self.version = ""

    def _build_args(self, base: list[str], limit_vault: bool, include_tag: bool) -> list[str]:
        args = list(base)
        if limit_vault and self.vault:
            args += ["--vault", self.vault]
        if include_tag and self.tag:
            args += ["--tags", self.tag]
        args += ["--format", "json"]
        return args

    async def _run(self, args: list[str], error_cls: type[VaultError]) -> bytes:
        binary = self._binary or determine_binary(self._configured_binary)
        self._binary = binary
        cmd = " ".join([binary, *args])
        try:
            proc = await asyncio.create_subprocess_exec(
                binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProviderNotInstalledError(cmd, e) from e

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            raise
        if proc.returncode != 0:
            raise error_cls(cmd, stderr.decode(errors="replace").strip() or f"exit status {proc.returncode}")
        return stdout

    async def _run_json(self, args: list[str], error_cls: type[VaultError]) -> Any:
        raw = await self._run(args, error_cls)
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise ProviderResponseParsingError(" ".join(args), e) from e

    async def initialize(self) -> str:
        """Check that the CLI is installed and record its version."""
        raw = await self._run(["--version"], ProviderNotInstalledError)
        self.version = raw.decode().strip()
        logger.debug(f"1Password CLI version {self.version}")
        return self.version

    async def load_vault_items(self) -> list[VaultItem]:
        data = await self._run_json(self._build_args(["item", "list"], True, True), ProviderConnectionError)
        try:
            items = [VaultItem.from_dict(d) for d in data]
        except (KeyError, TypeError, AttributeError) as e:
            raise ProviderResponseParsingError("item list", e) from e
        logger.info(f"Loaded {len(items)} vault items")
        return items

    async def _get_item(self, item_id: str) -> dict[str, Any]:
        data = await self._run_json(self._build_args(["item", "get", item_id], True, False), ProviderConnectionError)
        if not isinstance(data, dict):
            raise ProviderResponseParsingError(f"item get {item_id}", "expected a JSON object")
        return data

    async def get_credentials_by_item_id(self, item_id: str) -> Credentials:
        item = await self._get_item(item_id)
        return Credentials(
            id=item_id,
            username=get_value_by_field(item, "username"),
            password=get_value_by_field(item, "password"),
            totp_fetcher=lambda: self.get_totp_for_item(item_id),
        )

    async def get_totp_for_item(self, item_id: str) -> str:
        """Fetch the item's current TOTP code, never near the end of a window."""
        await wait_for_totp_window()
        item = await self._get_item(item_id)
        return get_value_by_field(item, "totp")

    async def get_vaults(self) -> list[Vault]:
        data = await self._run_json(self._build_args(["vault", "list"], False, False), ProviderConnectionError)
        try:
            return [Vault(id=v["id"], name=v.get("name", "")) for v in data]
        except (KeyError, TypeError) as e:
            raise ProviderResponseParsingError("vault list", e) from e

    def human_readable_error(self, err: Exception) -> str:
        """Translate a vault error into a message for the user."""
        if isinstance(err, ProviderNotInstalledError):
            return (
                "could not find out 1Password cli version. Install 1Password cli, first.\n"
                'Please read "Get started with 1Password CLI" at https://developer.1password.com/docs/cli/get-started/'
            )
        if isinstance(err, ProviderConnectionError):
            return (
                'could not connect to 1Password vault. Open 1Password vault with "eval $(op signin)", first.\n'
                'Please read "Sign in to 1Password CLI" at https://developer.1password.com/docs/cli/reference/commands/signin/'
            )
        if isinstance(err, ProviderResponseParsingError):
            return "could not read response data from 1Password vault"
        if isinstance(err, CommandExecutionError):
            return f"an error occurred while executing a command '{err.cmd}': {err.err}"
        return str(err)
