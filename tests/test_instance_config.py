"""Tests for instance manifest and configuration handling."""
from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import pytest

from ghoslerctl import instance_config
from ghoslerctl.instance_config import (
    ConfigurationStore,
    InstanceConfigError,
    apply_instance_identity,
    read_app_settings,
    read_manifest,
)


def _section(path: Path) -> dict[str, object]:
    return json.loads(path.read_text(encoding="utf-8"))["ghosler"]


def test_read_manifest_accepts_ghosler_package(make_instance: Callable[..., Path]) -> None:
    """A package.json named ``ghosler`` identifies an installation."""
    root = make_instance(version="1.0.83")

    manifest = read_manifest(root)

    assert manifest is not None
    assert manifest.version == "1.0.83"


def test_read_manifest_rejects_other_packages(tmp_path: Path) -> None:
    """Other node projects and broken manifests are not installations."""
    (tmp_path / "package.json").write_text(json.dumps({"name": "ghost", "version": "5.0.0"}))
    assert read_manifest(tmp_path) is None

    (tmp_path / "package.json").write_text("{not json")
    assert read_manifest(tmp_path) is None

    assert read_manifest(tmp_path / "missing") is None


def test_store_reads_root_location_first(make_instance: Callable[..., Path]) -> None:
    """The root config wins over the nested one when both exist."""
    root = make_instance(settings={"branch": "nested"}, nested=True)
    (root / "config.production.json").write_text(json.dumps({"ghosler": {"branch": "root"}}))

    assert read_app_settings(root) == {"branch": "root"}


def test_store_falls_back_to_nested_location(make_instance: Callable[..., Path]) -> None:
    """Configuration under ``configuration/`` is found when the root file is absent."""
    root = make_instance(settings={"branch": "release", "port": 2370}, nested=True)

    assert read_app_settings(root) == {"branch": "release", "port": 2370}


def test_read_app_settings_requires_configuration(make_instance: Callable[..., Path]) -> None:
    """A missing or malformed configuration is an error, not an empty section."""
    root = make_instance(with_config=False)

    with pytest.raises(InstanceConfigError, match="No readable"):
        read_app_settings(root)

    (root / "config.production.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(InstanceConfigError, match="No readable"):
        read_app_settings(root)

    (root / "config.production.json").write_text(json.dumps({"ghosler": ["bad"]}))
    with pytest.raises(InstanceConfigError, match="must be an object"):
        read_app_settings(root)


def test_read_app_settings_without_section(make_instance: Callable[..., Path]) -> None:
    """A configuration lacking the ``ghosler`` section reads as empty."""
    root = make_instance(with_config=False)
    (root / "config.production.json").write_text(json.dumps({"newsletter": {}}))

    assert read_app_settings(root) == {}


def test_install_identity_sets_branch_name_and_port(
    make_instance: Callable[..., Path],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Install mode records all three values and probes for a port."""
    monkeypatch.setattr(instance_config, "find_available_port", lambda start: start + 1)
    root = make_instance()

    changed = apply_instance_identity(root, "release", "ghosler-app-2", default_port=2369)

    assert changed is True
    assert _section(root / "config.production.json") == {
        "branch": "release",
        "instance": "ghosler-app-2",
        "port": 2370,
    }


def test_update_identity_preserves_port(make_instance: Callable[..., Path]) -> None:
    """With ``change_port=False`` an existing port is left alone."""
    root = make_instance(settings={"branch": "old", "instance": "site", "port": 2400})

    apply_instance_identity(root, "release", "site", change_port=False)

    assert _section(root / "config.production.json") == {
        "branch": "release",
        "instance": "site",
        "port": 2400,
    }


def test_migration_backfill_never_overwrites(make_instance: Callable[..., Path]) -> None:
    """Migration mode keeps a non-empty branch and fills only the gaps."""
    root = make_instance(settings={"branch": "custom", "port": 2400})

    changed = apply_instance_identity(root, "release", "site", is_migration=True)

    assert changed is True
    assert _section(root / "config.production.json") == {
        "branch": "custom",
        "instance": "site",
        "port": 2400,
    }


def test_migration_backfill_is_noop_when_complete(make_instance: Callable[..., Path]) -> None:
    """Nothing is written when both values are already present."""
    root = make_instance(settings={"branch": "custom", "instance": "site"}, nested=True)

    changed = apply_instance_identity(root, "release", "site", is_migration=True)

    assert changed is False
    assert not (root / "config.production.json").exists()


def test_writes_go_to_root_even_when_read_from_nested(make_instance: Callable[..., Path]) -> None:
    """A nested configuration is written back at the root location."""
    root = make_instance(settings={}, nested=True)

    apply_instance_identity(root, "release", "site", is_migration=True)

    store = ConfigurationStore(root)
    assert _section(store.canonical_path) == {"branch": "release", "instance": "site"}
    assert _section(store.nested_path) == {}


def test_other_sections_are_preserved(make_instance: Callable[..., Path]) -> None:
    """Only the ``ghosler`` section is touched."""
    root = make_instance(name="letters")

    apply_instance_identity(root, "master", "letters", change_port=False)

    document = json.loads((root / "config.production.json").read_text(encoding="utf-8"))
    assert document["newsletter"] == {"title": "letters"}


def test_missing_configuration_raises(make_instance: Callable[..., Path]) -> None:
    """Identity cannot be applied without a configuration document."""
    root = make_instance(with_config=False)

    with pytest.raises(InstanceConfigError, match="config.production.json"):
        apply_instance_identity(root, "release", "site")


def test_non_object_section_raises(make_instance: Callable[..., Path]) -> None:
    """A malformed ``ghosler`` section is reported instead of replaced."""
    root = make_instance()
    (root / "config.production.json").write_text(json.dumps({"ghosler": ["bad"]}))

    with pytest.raises(InstanceConfigError, match="must be an object"):
        apply_instance_identity(root, "release", "site", change_port=False)
