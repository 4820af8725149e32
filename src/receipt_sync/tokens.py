"""Persisted OAuth2 token cache.

Tokens are stored per identity (``"<supplier>|<credentialId>"``) in a JSON file
in the config directory. Every save is a read-modify-write of the whole file,
replaced atomically and readable only by the owner.
"""

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from anyio import to_thread

from .exceptions import TokenStoreError
from .utils import atomic_write_text

logger = logging.getLogger(__name__)

TOKEN_FILE_MODE = 0o600


def token_identity(supplier: str, credential_id: str) -> str:
    """Cache key scoping tokens to one supplier/credential pair."""
    return f"{supplier}|{credential_id}"


@dataclass
class Oauth2Tokens:
    """Token set returned by an OAuth2 token endpoint."""

    access_token: str
    refresh_token: str = ""
    token_type: str = "Bearer"
    scope: str = ""
    state: str = ""
    expires_in: int = 0
    created_at: int = 0  # epoch seconds

    def is_valid(self, now: float | None = None) -> bool:
        """True while `now < created_at + expires_in`."""
        if not self.access_token:
            return False
        now = time.time() if now is None else now
        return now < self.created_at + self.expires_in

    @classmethod
    def from_token_response(cls, data: dict[str, Any]) -> "Oauth2Tokens":
        """Build tokens from a token endpoint JSON response (snake_case keys)."""
        access_token = data.get("access_token")
        if not access_token:
            raise ValueError("Token response has no access_token")
        return cls(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or "",
            token_type=data.get("token_type") or "Bearer",
            scope=data.get("scope") or "",
            state=data.get("state") or "",
            expires_in=int(data.get("expires_in") or 0),
            created_at=int(data.get("created_at") or 0),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Oauth2Tokens":
        """Create tokens from their on-disk (camelCase) representation."""
        return cls(
            access_token=data.get("accessToken", ""),
            refresh_token=data.get("refreshToken", ""),
            token_type=data.get("tokenType", "Bearer"),
            scope=data.get("scope", ""),
            state=data.get("state", ""),
            expires_in=int(data.get("expiresIn", 0)),
            created_at=int(data.get("createdAt", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "tokenType": self.token_type,
            "scope": self.scope,
            "state": self.state,
            "expiresIn": self.expires_in,
            "createdAt": self.created_at,
        }

    def __repr__(self) -> str:
        # Never leak token material into logs.
        fields = asdict(self)
        fields["access_token"] = "***"
        fields["refresh_token"] = "***" if self.refresh_token else ""
        return f"Oauth2Tokens({', '.join(f'{k}={v!r}' for k, v in fields.items())})"


class TokenStore:
    """JSON-file backed token cache.

    File layout::

        {"secrets": [{"id": "<supplier>|<credentialId>", "accessTokens": {...}}]}
    """

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {"secrets": []}
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise TokenStoreError(f"Cannot read token file {self.path}: {e}") from e
        if not raw.strip():
            return {"secrets": []}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise TokenStoreError(f"Token file {self.path} is not valid JSON: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("secrets", []), list):
            raise TokenStoreError(f"Token file {self.path} has an unexpected layout")
        data.setdefault("secrets", [])
        return data

    def get(self, identity: str) -> Oauth2Tokens | None:
        """Return cached tokens for an identity, or None."""
        with self._lock:
            data = self._read()
        for entry in data["secrets"]:
            if entry.get("id") == identity:
                return Oauth2Tokens.from_dict(entry.get("accessTokens") or {})
        return None

    def save(self, identity: str, tokens: Oauth2Tokens, now: float | None = None) -> Oauth2Tokens:
        """Stamp `created_at` and persist tokens, keeping all other identities.

        Returns:
            The stamped tokens.
        """
        tokens.created_at = int(time.time() if now is None else now)
        with self._lock:
            data = self._read()
            for entry in data["secrets"]:
                if entry.get("id") == identity:
                    entry["accessTokens"] = tokens.to_dict()
                    break
            else:
                data["secrets"].append({"id": identity, "accessTokens": tokens.to_dict()})
            atomic_write_text(self.path, json.dumps(data, indent=4) + "\n", mode=TOKEN_FILE_MODE)
        logger.info(f"Saved OAuth2 tokens for {identity}")
        return tokens

    async def get_async(self, identity: str) -> Oauth2Tokens | None:
        """Async wrapper for get() to avoid blocking the event loop."""
        return await to_thread.run_sync(self.get, identity)

    async def save_async(self, identity: str, tokens: Oauth2Tokens) -> Oauth2Tokens:
        """Async wrapper for save() to avoid blocking the event loop."""
        return await to_thread.run_sync(self.save, identity, tokens)
