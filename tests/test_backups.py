"""Tests for instance backups."""
from __future__ import annotations

import hashlib
import json
import shutil
import tarfile
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import pytest

from ghoslerctl import backups
from ghoslerctl.backups import (
    BackupError,
    BackupRegistryError,
    BackupsRegistry,
    create_backup,
    current_date_stamp,
    list_backups,
    pick_compression,
    sha256_of,
)

requires_tar = pytest.mark.skipif(shutil.which("tar") is None, reason="tar not available")


def _populate(root: Path) -> None:
    for name in ("node_modules/express", ".logs", ".idea", "files/images"):
        (root / name).mkdir(parents=True, exist_ok=True)
    (root / "node_modules" / "express" / "index.js").write_text("//", encoding="utf-8")
    (root / ".logs" / "error.log").write_text("boom", encoding="utf-8")
    (root / "files" / "images" / "logo.png").write_bytes(b"\x89PNG")


def test_current_date_stamp_format() -> None:
    """Stamps use the ``YYYY-MM-DD_hh-mm-ss`` layout."""
    moment = datetime(2026, 3, 4, 5, 6, 7, tzinfo=UTC)

    assert current_date_stamp(moment) == "2026-03-04_05-06-07"


def test_pick_compression_prefers_zstd_when_available(monkeypatch: pytest.MonkeyPatch) -> None:
    """``auto`` prefers zstd when available and falls back to gzip."""
    monkeypatch.setattr(backups, "zstd_available", lambda: False)
    assert pick_compression("auto") == "gzip"
    monkeypatch.setattr(backups, "zstd_available", lambda: True)
    assert pick_compression("AUTO") == "zstd"
    assert pick_compression("none") == "none"
    with pytest.raises(BackupError, match="Unsupported compression"):
        pick_compression("rar")


def test_sha256_of_matches_hashlib(tmp_path: Path) -> None:
    """Checksums are plain hex SHA-256 digests of the file contents."""
    payload = tmp_path / "blob.bin"
    payload.write_bytes(b"ghosler" * 1000)

    assert sha256_of(payload) == hashlib.sha256(b"ghosler" * 1000).hexdigest()


@requires_tar
def test_create_backup_excludes_transient_directories(
    make_instance: Callable[..., Path],
) -> None:
    """Dependencies, logs and editor folders are left out of the archive."""
    root = make_instance()
    _populate(root)

    result = create_backup("site", root, compression="gzip")

    assert result.archive.parent == root / ".backups"
    assert result.archive.name.startswith("backup_")
    assert result.archive.name.endswith(".tar.gz")
    with tarfile.open(result.archive, "r:gz") as bundle:
        names = {Path(member).relative_to(result.id).as_posix() for member in bundle.getnames() if member != result.id}
    assert "package.json" in names
    assert "files/images/logo.png" in names
    assert not any(name.startswith(("node_modules", ".logs", ".idea", ".backups")) for name in names)
    assert not (root / ".temp-backup").exists()


@requires_tar
def test_create_backup_writes_checksum_and_index(make_instance: Callable[..., Path]) -> None:
    """Each backup gets a sha256 sidecar and an index entry."""
    root = make_instance()

    result = create_backup("site", root, compression="none")

    sidecar = result.archive.with_name(f"{result.archive.name}.sha256")
    assert sidecar.read_text(encoding="utf-8").split()[0] == result.checksum
    (entry,) = list_backups(root)
    assert entry["id"] == result.id
    assert entry["instance"] == "site"
    assert entry["algorithm"] == "none"
    assert entry["checksum"] == {"algorithm": "sha256", "value": result.checksum}


@requires_tar
def test_same_second_backups_never_overwrite(
    make_instance: Callable[..., Path],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A collision within one second gets a numeric suffix."""
    monkeypatch.setattr(backups, "current_date_stamp", lambda now=None: "2026-01-01_00-00-00")
    root = make_instance()

    first = create_backup("site", root, compression="none")
    second = create_backup("site", root, compression="none")

    assert first.archive.name == "backup_2026-01-01_00-00-00.tar"
    assert second.archive.name == "backup_2026-01-01_00-00-00-1.tar"
    assert first.archive.exists() and second.archive.exists()
    assert [entry["id"] for entry in list_backups(root)] == [first.id, second.id]


def test_create_backup_missing_directory(tmp_path: Path) -> None:
    """Backing up a missing directory fails cleanly."""
    with pytest.raises(BackupError, match="does not exist"):
        create_backup("site", tmp_path / "missing")


def test_create_backup_archive_failure_cleans_up(
    make_instance: Callable[..., Path],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A tar failure removes the partial archive and the staging copy."""
    root = make_instance()

    def fail_archive(_source: Path, archive: Path, *_args: object) -> None:
        archive.write_bytes(b"partial")
        raise BackupError("tar: write error")

    monkeypatch.setattr(backups, "_run_tar", fail_archive)

    with pytest.raises(BackupError, match="write error"):
        create_backup("site", root, compression="gzip")

    assert not (root / ".temp-backup").exists()
    assert list((root / ".backups").glob("backup_*")) == []


def test_registry_rejects_corrupt_index(tmp_path: Path) -> None:
    """A corrupt index is reported instead of being silently replaced."""
    registry = BackupsRegistry(tmp_path)
    registry.index.write_text("{broken", encoding="utf-8")

    with pytest.raises(BackupRegistryError, match="corrupted"):
        registry.list_entries()


def test_registry_append_preserves_existing_entries(tmp_path: Path) -> None:
    """Appending keeps earlier entries and skips malformed ones."""
    registry = BackupsRegistry(tmp_path)
    registry.index.write_text(json.dumps({"backups": [{"id": "a"}, "junk"]}), encoding="utf-8")

    registry.append({"id": "b"})

    assert [entry["id"] for entry in registry.list_entries()] == ["a", "b"]
