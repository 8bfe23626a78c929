"""Install Ghosler's node dependencies via npm."""
from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path


class DependencyInstallError(RuntimeError):
    """Raised when installing an instance's dependencies fails."""


class DependencyInstaller:
    """Run ``npm ci`` inside an instance directory."""

    def __init__(self, *, npm_bin: str = "npm", npm_args: Sequence[str] | None = None) -> None:
        """Initialise the installer with the npm binary and extra arguments."""
        self.npm_bin = npm_bin
        self.npm_args = list(npm_args or [])

    def install(self, instance_path: Path) -> subprocess.CompletedProcess[str]:
        """Install production dependencies for the instance at *instance_path*."""
        instance_path = Path(instance_path)
        if not (instance_path / "package.json").exists():
            raise DependencyInstallError(f"No package.json found in {instance_path}.")

        cmd = [self.npm_bin, "ci", "--omit=dev"]
        cmd.extend(self.npm_args)

        env_vars = os.environ.copy()
        env_vars["NODE_ENV"] = "production"

        try:
            result = self._run_install_command(instance_path, cmd, env=env_vars)
        except FileNotFoundError as exc:
            raise DependencyInstallError(f"{self.npm_bin} not found: {exc}") from exc
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "no output").strip()
            raise DependencyInstallError(f"npm ci failed (exit {result.returncode}): {detail}")
        return result

    def _run_install_command(
        self,
        instance_path: Path,
        cmd: Sequence[str],
        *,
        env: Mapping[str, str],
    ) -> subprocess.CompletedProcess[str]:
        """Execute npm command (isolated for testing)."""
        return subprocess.run(  # noqa: S603,S607
            list(cmd),
            check=False,
            capture_output=True,
            text=True,
            cwd=str(instance_path),
            env=dict(env),
        )


__all__ = ["DependencyInstallError", "DependencyInstaller"]
