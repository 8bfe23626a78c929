"""Timestamped backups of instance directories.

Backups live in ``<instance>/.backups``. Each one is a compressed tarball
named after the moment it was taken plus a ``.sha256`` sidecar, and is listed
in ``backups.json`` in the same directory. Archives are never overwritten
or pruned.
"""
from __future__ import annotations

import hashlib
import json
import os
import shutil
import subprocess
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .config import ALLOWED_BACKUP_COMPRESSION

BACKUP_DIR_NAME = ".backups"
TEMP_DIR_NAME = ".temp-backup"
INDEX_NAME = "backups.json"
EXCLUDED_NAMES = frozenset(
    {".idea", "node_modules", ".logs", BACKUP_DIR_NAME, TEMP_DIR_NAME, ".update"}
)

# algorithm -> (file extension, tar compression flag, level environment variable)
TAR_FORMATS: dict[str, tuple[str, str | None, str | None]] = {
    "zstd": ("tar.zst", "--zstd", "ZSTD_CLEVEL"),
    "gzip": ("tar.gz", "--gzip", "GZIP"),
    "none": ("tar", None, None),
}


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class BackupRegistryError(BackupError):
    """Raised when backup index interactions fail."""


def zstd_available() -> bool:
    """True when tar can hand archives to a ``zstd`` binary."""
    return all(shutil.which(tool) for tool in ("tar", "zstd"))


def pick_compression(preference: str) -> str:
    """Map a configured compression preference onto a ``TAR_FORMATS`` key."""
    choice = preference.strip().lower()
    if choice not in ALLOWED_BACKUP_COMPRESSION:
        raise BackupError(
            f"Unsupported compression '{preference}'. "
            f"Choose one of: {', '.join(sorted(ALLOWED_BACKUP_COMPRESSION))}."
        )
    if choice != "auto":
        return choice
    return "zstd" if zstd_available() else "gzip"


def _run_tar(source: Path, archive: Path, algorithm: str, level: int | None) -> None:
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise BackupError("The 'tar' command is required to create backups.")
    _extension, flag, level_var = TAR_FORMATS[algorithm]
    env = dict(os.environ)
    if level is not None and level_var is not None:
        env[level_var] = f"-{level}" if algorithm == "gzip" else str(level)
    command = [tar_bin, "-cf", str(archive)]
    if flag is not None:
        command.append(flag)
    command.extend(["-C", str(source.parent), source.name])
    completed = subprocess.run(  # noqa: S603 - argv built from resolved paths
        command,
        capture_output=True,
        text=True,
        env=env,
        check=False,
    )
    if completed.returncode != 0:
        detail = (completed.stderr or completed.stdout or "").strip()
        raise BackupError(f"tar exited with {completed.returncode}: {detail or 'no output'}")
    archive.chmod(0o640)


def sha256_of(path: Path) -> str:
    """Hex SHA-256 digest of the file at *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        chunk = handle.read(1 << 20)
        while chunk:
            digest.update(chunk)
            chunk = handle.read(1 << 20)
    return digest.hexdigest()


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def current_date_stamp(now: datetime | None = None) -> str:
    """Return a ``YYYY-MM-DD_hh-mm-ss`` stamp (UTC)."""
    moment = now or datetime.now(tz=UTC)
    return moment.strftime("%Y-%m-%d_%H-%M-%S")


@dataclass(slots=True)
class BackupsRegistry:
    """Manage the JSON backup index under an instance's backup directory."""

    root: Path

    @property
    def index(self) -> Path:
        """Location of the JSON index."""
        return self.root / INDEX_NAME

    def ensure_root(self) -> None:
        """Ensure the backup directory exists."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupRegistryError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def read(self) -> dict[str, object]:
        """Return the parsed backups index (empty structure when missing)."""
        if not self.index.exists():
            return {"backups": []}
        try:
            data = json.loads(self.index.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {"backups": []}
        except json.JSONDecodeError as exc:
            raise BackupRegistryError(f"Backup index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupRegistryError(f"Backup index must be a JSON object ({self.index}).")
        return dict(data)

    def write(self, payload: Mapping[str, object]) -> None:
        """Atomically persist *payload* to the backups index."""
        self.ensure_root()
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{INDEX_NAME}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
            os.replace(tmp_path, self.index)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write backup index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def append(self, entry: Mapping[str, object]) -> None:
        """Append *entry* to the backups index."""
        entries = self.list_entries()
        entries.append(dict(entry))
        self.write({"backups": entries})

    def list_entries(self) -> list[dict[str, object]]:
        """Return a list of backup entries."""
        backups = self.read().get("backups", [])
        entries: list[dict[str, object]] = []
        if isinstance(backups, list):
            for item in backups:
                if isinstance(item, Mapping):
                    entries.append(dict(item))
        return entries


@dataclass(frozen=True, slots=True)
class BackupResult:
    """Details of a freshly created backup."""

    id: str
    archive: Path
    checksum: str
    size_bytes: int
    algorithm: str


def _unique_archive_path(root: Path, stamp: str, extension: str) -> Path:
    candidate = root / f"backup_{stamp}.{extension}"
    counter = 1
    while candidate.exists():
        candidate = root / f"backup_{stamp}-{counter}.{extension}"
        counter += 1
    return candidate


def _ignore_excluded(excluded: Iterable[str]):
    names_to_skip = frozenset(excluded)

    def _ignore(_directory: str, names: list[str]) -> set[str]:
        return {name for name in names if name in names_to_skip}

    return _ignore


def create_backup(
    instance: str,
    instance_path: Path,
    *,
    compression: str = "auto",
    compression_level: int | None = None,
    excluded: Iterable[str] = EXCLUDED_NAMES,
) -> BackupResult:
    """Archive *instance_path* into its ``.backups`` directory."""
    instance_path = Path(instance_path)
    if not instance_path.is_dir():
        raise BackupError(f"Instance directory {instance_path} does not exist.")

    algorithm = pick_compression(compression)

    registry = BackupsRegistry(instance_path / BACKUP_DIR_NAME)
    registry.ensure_root()
    temp_root = instance_path / TEMP_DIR_NAME
    shutil.rmtree(temp_root, ignore_errors=True)

    archive_path = _unique_archive_path(
        registry.root, current_date_stamp(), TAR_FORMATS[algorithm][0]
    )
    backup_id = archive_path.name.split(".", 1)[0]
    payload_root = temp_root / backup_id
    try:
        shutil.copytree(
            instance_path,
            payload_root,
            ignore=_ignore_excluded(excluded),
            symlinks=True,
        )
        _run_tar(payload_root, archive_path, algorithm, compression_level)
    except (OSError, shutil.Error, BackupError) as exc:
        archive_path.unlink(missing_ok=True)
        raise BackupError(f"Backup of '{instance}' failed: {exc}") from exc
    finally:
        shutil.rmtree(temp_root, ignore_errors=True)

    checksum = sha256_of(archive_path)
    archive_path.with_name(f"{archive_path.name}.sha256").write_text(
        f"{checksum}  {archive_path.name}\n", encoding="utf-8"
    )
    size_bytes = archive_path.stat().st_size
    registry.append(
        {
            "id": backup_id,
            "instance": instance,
            "created_at": _now_iso(),
            "path": str(archive_path),
            "algorithm": algorithm,
            "compression_level": compression_level,
            "size_bytes": size_bytes,
            "checksum": {"algorithm": "sha256", "value": checksum},
        }
    )
    return BackupResult(
        id=backup_id,
        archive=archive_path,
        checksum=checksum,
        size_bytes=size_bytes,
        algorithm=algorithm,
    )


def list_backups(instance_path: Path) -> list[dict[str, object]]:
    """Return the recorded backups of the instance at *instance_path*."""
    return BackupsRegistry(Path(instance_path) / BACKUP_DIR_NAME).list_entries()


__all__ = [
    "BACKUP_DIR_NAME",
    "BackupError",
    "BackupRegistryError",
    "BackupResult",
    "BackupsRegistry",
    "EXCLUDED_NAMES",
    "TAR_FORMATS",
    "create_backup",
    "current_date_stamp",
    "list_backups",
    "pick_compression",
    "sha256_of",
]
