"""Tests for directory, file and PKCE helpers."""

import base64
import hashlib
import os
import stat
import zipfile

import pytest

from receipt_sync.utils import (
    atomic_write_text,
    base64url_encode,
    copy_file,
    find_files,
    init_supplier_directories,
    oauth2_pkce,
    random_string,
    truncate_directory,
    unique_path,
    unzip_file,
)


class TestDirectories:
    def test_init_supplier_directories(self, tmp_path):
        staging, documents = init_supplier_directories(tmp_path, "acme")
        assert staging == tmp_path / "_tmp" / "acme"
        assert documents == tmp_path / "acme"
        assert staging.is_dir() and documents.is_dir()

    def test_truncate_keeps_directory(self, tmp_path):
        (tmp_path / "nested").mkdir()
        (tmp_path / "nested" / "a.pdf").write_bytes(b"x")
        (tmp_path / "b.zip").write_bytes(b"y")

        truncate_directory(tmp_path)

        assert tmp_path.is_dir()
        assert list(tmp_path.iterdir()) == []

    def test_truncate_missing_directory(self, tmp_path):
        truncate_directory(tmp_path / "missing")

    def test_find_files_is_case_insensitive(self, tmp_path):
        (tmp_path / "sub").mkdir()
        (tmp_path / "a.ZIP").write_bytes(b"")
        (tmp_path / "sub" / "b.zip").write_bytes(b"")
        (tmp_path / "c.pdf").write_bytes(b"")

        assert [p.name for p in find_files(tmp_path, ".zip")] == ["a.ZIP", "b.zip"]


class TestFiles:
    def test_copy_file(self, tmp_path):
        src = tmp_path / "src.pdf"
        src.write_bytes(b"content")
        dst = tmp_path / "out" / "dst.pdf"

        assert copy_file(src, dst) == len(b"content")
        assert dst.read_bytes() == b"content"
        assert [p.name for p in dst.parent.iterdir()] == ["dst.pdf"]

    def test_copy_rejects_directories(self, tmp_path):
        with pytest.raises(ValueError):
            copy_file(tmp_path, tmp_path / "x")

    def test_unique_path(self, tmp_path):
        target = tmp_path / "invoice.pdf"
        assert unique_path(target) == target
        target.write_bytes(b"")
        assert unique_path(target) == tmp_path / "invoice_1.pdf"
        (tmp_path / "invoice_1.pdf").write_bytes(b"")
        assert unique_path(target) == tmp_path / "invoice_2.pdf"

    def test_atomic_write_text_sets_mode(self, tmp_path):
        path = tmp_path / "secrets.json"
        atomic_write_text(path, '{"secrets": []}', mode=0o600)

        assert path.read_text() == '{"secrets": []}'
        if os.name == "posix":
            assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_unzip_discards_directory_components(self, tmp_path):
        source = tmp_path / "bundle.zip"
        with zipfile.ZipFile(source, "w") as zf:
            zf.writestr("2024/invoice-01.pdf", b"one")
            zf.writestr("../../escape.pdf", b"two")
            zf.writestr("folder/", b"")

        dest = tmp_path / "out"
        extracted = unzip_file(source, dest)

        assert sorted(p.name for p in extracted) == ["escape.pdf", "invoice-01.pdf"]
        assert (dest / "escape.pdf").read_bytes() == b"two"
        assert not (tmp_path / "escape.pdf").exists()


class TestPkce:
    def test_random_string(self):
        value = random_string(64)
        assert len(value) == 64
        assert value.isalnum()
        assert random_string(64) != value

    def test_base64url_has_no_padding(self):
        assert base64url_encode(b"\xff\xfe") == "__4"

    def test_challenge_is_sha256_of_verifier(self):
        verifier, challenge = oauth2_pkce(64)
        expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")
        assert len(verifier) == 64
        assert challenge == expected
        assert "=" not in challenge
