"""Read and edit the files that describe a Ghosler instance on disk.

Two documents matter:

* ``package.json`` (the manifest) identifies a directory as a Ghosler
  installation and carries its version.
* ``config.production.json`` holds the application settings. Older releases
  keep it at the instance root, newer ones under ``configuration/``. Both
  locations are read (root first); writes always go to the root location.
"""
from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .ports import find_available_port

MANIFEST_FILE = "package.json"
MANIFEST_PACKAGE_NAME = "ghosler"
CONFIG_FILE_NAME = "config.production.json"
CONFIG_SUBDIR = "configuration"
APP_SECTION = "ghosler"


class InstanceConfigError(RuntimeError):
    """Raised when an instance configuration cannot be read or written."""


@dataclass(frozen=True, slots=True)
class Manifest:
    """The parts of ``package.json`` ghoslerctl relies on."""

    name: str
    version: str


def _load_json(path: Path) -> dict[str, object] | None:
    """Return the parsed JSON object at *path*, or None if unusable."""
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def read_manifest(instance_path: Path) -> Manifest | None:
    """Return the Ghosler manifest for *instance_path* if it is an installation."""
    payload = _load_json(Path(instance_path) / MANIFEST_FILE)
    if payload is None:
        return None
    name = payload.get("name")
    version = payload.get("version")
    if name != MANIFEST_PACKAGE_NAME or not isinstance(version, str) or not version.strip():
        return None
    return Manifest(name=name, version=version.strip())


@dataclass(slots=True)
class ConfigurationStore:
    """Logical view over the instance configuration file locations."""

    instance_path: Path

    @property
    def candidates(self) -> tuple[Path, ...]:
        """Paths consulted when reading, in priority order."""
        return (self.canonical_path, self.nested_path)

    @property
    def canonical_path(self) -> Path:
        """The only location configuration is written to."""
        return self.instance_path / CONFIG_FILE_NAME

    @property
    def nested_path(self) -> Path:
        """Location used by releases that keep configuration in a subdirectory."""
        return self.instance_path / CONFIG_SUBDIR / CONFIG_FILE_NAME

    def read(self) -> dict[str, object] | None:
        """Return the configuration document, or None when absent or malformed."""
        for candidate in self.candidates:
            document = _load_json(candidate)
            if document is not None:
                return document
        return None

    def write(self, document: Mapping[str, object]) -> Path:
        """Persist *document* to the canonical path and return it."""
        target = self.canonical_path
        try:
            target.write_text(json.dumps(document), encoding="utf-8")
        except OSError as exc:
            raise InstanceConfigError(f"Failed to write configuration {target}: {exc}") from exc
        return target


def read_app_settings(instance_path: Path) -> dict[str, object]:
    """Return the ``ghosler`` section of the configuration.

    Raises :class:`InstanceConfigError` when no readable configuration exists
    or the section is not an object; a missing section reads as empty.
    """
    document = ConfigurationStore(Path(instance_path)).read()
    if document is None:
        raise InstanceConfigError(
            f"No readable {CONFIG_FILE_NAME} found under {instance_path}."
        )
    section = document.get(APP_SECTION)
    if section is None:
        return {}
    if not isinstance(section, Mapping):
        raise InstanceConfigError(
            f"The '{APP_SECTION}' section of {CONFIG_FILE_NAME} must be an object."
        )
    return dict(section)


def apply_instance_identity(
    instance_path: Path,
    branch: str,
    name: str,
    *,
    change_port: bool = True,
    default_port: int = 2369,
    is_migration: bool = False,
) -> bool:
    """Record *branch* and *name* (and optionally a free port) in the configuration.

    In migration mode values are only backfilled when absent and the port is
    never touched. The document is written (to the root location) only when
    a value changed; the return value reports whether it did.
    """
    store = ConfigurationStore(Path(instance_path))
    document = store.read()
    if document is None:
        raise InstanceConfigError(
            f"No readable {CONFIG_FILE_NAME} found under {instance_path}."
        )

    section = document.get(APP_SECTION)
    if section is None:
        section = {}
        document[APP_SECTION] = section
    if not isinstance(section, dict):
        raise InstanceConfigError(
            f"The '{APP_SECTION}' section of {CONFIG_FILE_NAME} must be an object."
        )

    before = dict(section)
    if is_migration:
        if not section.get("branch"):
            section["branch"] = branch
        if not section.get("instance"):
            section["instance"] = name
    else:
        section["branch"] = branch
        section["instance"] = name
        if change_port:
            section["port"] = find_available_port(default_port)

    changed = section != before
    if changed:
        store.write(document)
    return changed


__all__ = [
    "APP_SECTION",
    "CONFIG_FILE_NAME",
    "CONFIG_SUBDIR",
    "ConfigurationStore",
    "InstanceConfigError",
    "MANIFEST_FILE",
    "Manifest",
    "apply_instance_identity",
    "read_app_settings",
    "read_manifest",
]
