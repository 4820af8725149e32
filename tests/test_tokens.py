"""Tests for OAuth2 token freshness and the token cache file."""

import json
import os
import stat

import pytest

from receipt_sync.exceptions import TokenStoreError
from receipt_sync.tokens import Oauth2Tokens, TokenStore, token_identity


class TestOauth2Tokens:
    def test_valid_until_expiry(self):
        tokens = Oauth2Tokens(access_token="at", expires_in=3600, created_at=1_000)
        assert tokens.is_valid(now=1_000)
        assert tokens.is_valid(now=4_599)
        assert not tokens.is_valid(now=4_600)

    def test_empty_access_token_is_never_valid(self):
        assert not Oauth2Tokens(access_token="", expires_in=3600, created_at=1_000).is_valid(now=1_000)

    def test_from_token_response(self):
        tokens = Oauth2Tokens.from_token_response(
            {"access_token": "at", "refresh_token": "rt", "token_type": "bearer", "scope": "openid", "expires_in": 300}
        )
        assert tokens.access_token == "at"
        assert tokens.refresh_token == "rt"
        assert tokens.expires_in == 300
        assert tokens.created_at == 0

    def test_from_token_response_requires_access_token(self):
        with pytest.raises(ValueError):
            Oauth2Tokens.from_token_response({"error": "invalid_grant"})

    def test_disk_format_is_camel_case(self):
        tokens = Oauth2Tokens(access_token="at", refresh_token="rt", expires_in=60, created_at=5)
        data = tokens.to_dict()
        assert data["accessToken"] == "at"
        assert data["refreshToken"] == "rt"
        assert data["expiresIn"] == 60
        assert Oauth2Tokens.from_dict(data) == tokens

    def test_repr_masks_tokens(self):
        text = repr(Oauth2Tokens(access_token="secret-access", refresh_token="secret-refresh"))
        assert "secret" not in text


def test_token_identity():
    assert token_identity("acme", "item-1") == "acme|item-1"


class TestTokenStore:
    def test_get_from_missing_file(self, tmp_path):
        assert TokenStore(tmp_path / ".secrets.json").get("acme|item-1") is None

    def test_save_stamps_creation_time(self, tmp_path):
        store = TokenStore(tmp_path / ".secrets.json")
        saved = store.save("acme|item-1", Oauth2Tokens(access_token="at", expires_in=60), now=1_700_000_000)

        assert saved.created_at == 1_700_000_000
        loaded = store.get("acme|item-1")
        assert loaded.access_token == "at"
        assert loaded.created_at == 1_700_000_000

    def test_save_keeps_other_identities(self, tmp_path):
        store = TokenStore(tmp_path / ".secrets.json")
        store.save("acme|item-1", Oauth2Tokens(access_token="first"))
        store.save("globex|item-2", Oauth2Tokens(access_token="second"))
        store.save("acme|item-1", Oauth2Tokens(access_token="replaced"))

        data = json.loads((tmp_path / ".secrets.json").read_text())
        assert [entry["id"] for entry in data["secrets"]] == ["acme|item-1", "globex|item-2"]
        assert store.get("acme|item-1").access_token == "replaced"
        assert store.get("globex|item-2").access_token == "second"

    def test_file_is_private(self, tmp_path):
        path = tmp_path / ".secrets.json"
        TokenStore(path).save("acme|item-1", Oauth2Tokens(access_token="at"))
        if os.name == "posix":
            assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / ".secrets.json"
        path.write_text("{not json")
        with pytest.raises(TokenStoreError):
            TokenStore(path).get("acme|item-1")

    def test_unexpected_layout_raises(self, tmp_path):
        path = tmp_path / ".secrets.json"
        path.write_text('{"secrets": {"id": "x"}}')
        with pytest.raises(TokenStoreError):
            TokenStore(path).get("acme|item-1")

    async def test_async_wrappers(self, tmp_path):
        store = TokenStore(tmp_path / ".secrets.json")
        await store.save_async("acme|item-1", Oauth2Tokens(access_token="at", expires_in=60))

        loaded = await store.get_async("acme|item-1")
        assert loaded is not None
        assert loaded.is_valid()
