"""Utilities for staging directories, file copies and PKCE helpers."""

import base64
import hashlib
import logging
import os
import secrets
import shutil
import string
import tempfile
import zipfile
from pathlib import Path

logger = logging.getLogger(__name__)

STAGING_DIR_NAME = "_tmp"

_RANDOM_ALPHABET = string.ascii_letters + string.digits


def init_supplier_directories(documents_root: Path, supplier: str) -> tuple[Path, Path]:
    """Create and return the (staging, documents) directories for a supplier."""
    staging = documents_root / STAGING_DIR_NAME / supplier
    documents = documents_root / supplier
    staging.mkdir(parents=True, exist_ok=True)
    documents.mkdir(parents=True, exist_ok=True)
    return staging, documents


def truncate_directory(path: Path) -> None:
    """Remove everything below `path`, keeping the directory itself."""
    if not path.exists():
        return
    for child in path.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink(missing_ok=True)
    logger.debug(f"Truncated directory {path}")


def find_files(root: Path, suffix: str) -> list[Path]:
    """Recursively find files below root with the given suffix (case-insensitive)."""
    suffix = suffix.lower()
    return sorted(p for p in root.rglob("*") if p.is_file() and p.suffix.lower() == suffix)


def copy_file(src: Path, dst: Path) -> int:
    """Copy a regular file via a temp file in the destination directory.

    Returns:
        Number of bytes copied.
    """
    if not src.is_file():
        raise ValueError(f"{src} is not a regular file")

    dst.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dst.name}.tmp.", dir=dst.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as out, src.open("rb") as source:
            shutil.copyfileobj(source, out)
            out.flush()
            os.fsync(out.fileno())
        os.replace(tmp_path, dst)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return dst.stat().st_size


def unzip_file(source: Path, dest: Path) -> list[Path]:
    """Extract all file members of a zip archive flat into `dest`.

    Directory components inside the archive are discarded so members
    cannot escape `dest`.
    """
    extracted: list[Path] = []
    dest.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(source) as archive:
        for member in archive.infolist():
            if member.is_dir():
                continue
            name = Path(member.filename.replace("\\", "/")).name
            if not name:
                continue
            target = dest / name
            with archive.open(member) as src, target.open("wb") as out:
                shutil.copyfileobj(src, out)
            extracted.append(target)
    return extracted


def random_string(length: int) -> str:
    """Cryptographically random alphanumeric string of exactly `length` chars."""
    return "".join(secrets.choice(_RANDOM_ALPHABET) for _ in range(length))


def base64url_encode(raw: bytes) -> str:
    """Base64url without padding (RFC 7636 appendix A)."""
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def oauth2_pkce(length: int) -> tuple[str, str]:
    """Create a PKCE (verifier, S256 challenge) pair."""
    verifier = random_string(length)
    challenge = base64url_encode(hashlib.sha256(verifier.encode("ascii")).digest())
    return verifier, challenge


def unique_path(path: Path) -> Path:
    """Return `path`, or `<stem>_<n><suffix>` if it is already taken."""
    if not path.exists():
        return path
    for i in range(1, 10_000):
        candidate = path.with_name(f"{path.stem}_{i}{path.suffix}")
        if not candidate.exists():
            return candidate
    raise RuntimeError(f"Failed to allocate a unique filename for {path} after 10,000 attempts")


def atomic_write_text(path: Path, content: str, mode: int | None = None) -> None:
    """Atomically write text to `path` using temp + fsync + os.replace.

    When `mode` is given the file gets those permissions before it is moved
    into place.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.tmp.", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
