"""Tests for the npm dependency installer."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

import pytest

from ghoslerctl.providers import DependencyInstaller, DependencyInstallError


def _instance(tmp_path: Path) -> Path:
    (tmp_path / "package.json").write_text(json.dumps({"name": "ghosler", "version": "1.0.0"}))
    return tmp_path


def test_install_runs_npm_ci_in_production_mode(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Dependencies are installed with ``npm ci --omit=dev`` and NODE_ENV=production."""
    root = _instance(tmp_path)
    installer = DependencyInstaller(npm_bin="npm", npm_args=["--no-audit"])
    seen: dict[str, object] = {}

    def fake_run(
        instance_path: Path,
        cmd: Sequence[str],
        *,
        env: Mapping[str, str],
    ) -> subprocess.CompletedProcess[str]:
        seen.update(path=instance_path, cmd=list(cmd), node_env=env.get("NODE_ENV"))
        return subprocess.CompletedProcess(cmd, 0, stdout="added 10 packages", stderr="")

    monkeypatch.setattr(installer, "_run_install_command", fake_run)

    installer.install(root)

    assert seen == {
        "path": root,
        "cmd": ["npm", "ci", "--omit=dev", "--no-audit"],
        "node_env": "production",
    }


def test_install_requires_manifest(tmp_path: Path) -> None:
    """Directories without package.json are rejected before npm runs."""
    with pytest.raises(DependencyInstallError, match="No package.json"):
        DependencyInstaller().install(tmp_path)


def test_install_failure_includes_output(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failing npm run raises with its stderr."""
    installer = DependencyInstaller()

    def fake_run(
        instance_path: Path,
        cmd: Sequence[str],
        *,
        env: Mapping[str, str],
    ) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="npm ERR! lockfile missing")

    monkeypatch.setattr(installer, "_run_install_command", fake_run)

    with pytest.raises(DependencyInstallError, match="lockfile missing"):
        installer.install(_instance(tmp_path))


def test_install_missing_npm_binary(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A missing npm executable is reported as DependencyInstallError."""
    installer = DependencyInstaller(npm_bin="npm-missing")

    def fake_run(*_args: object, **_kwargs: object) -> subprocess.CompletedProcess[str]:
        raise FileNotFoundError("npm-missing")

    monkeypatch.setattr(installer, "_run_install_command", fake_run)

    with pytest.raises(DependencyInstallError, match="not found"):
        installer.install(_instance(tmp_path))
