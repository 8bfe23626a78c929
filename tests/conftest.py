"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import json
import os
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

import pytest

from ghoslerctl.providers.npm import DependencyInstallError
from ghoslerctl.providers.pm2 import Pm2Error, Pm2Process
from ghoslerctl.registry import ProcessRegistry

MARKER = "--ghoslerctl-managed"


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class FakePm2:
    """In-memory stand-in for :class:`Pm2Provider`."""

    def __init__(self) -> None:
        self.processes: dict[str, Pm2Process] = {}
        self.calls: list[tuple[str, ...]] = []
        self.start_status = "online"
        self.restart_status = "online"
        self.fail_on: set[str] = set()
        self.log_output = ""
        self._next_pid = 1000

    def add(
        self,
        name: str,
        cwd: Path | None,
        *,
        status: str = "online",
        args: Sequence[str] = (MARKER,),
    ) -> None:
        self._next_pid += 1
        self.processes[name] = Pm2Process(
            name=name,
            pid=self._next_pid if status == "online" else None,
            cwd=cwd,
            status=status,
            args=tuple(args),
        )

    def _record(self, *call: str) -> None:
        self.calls.append(call)
        if call[0] in self.fail_on:
            raise Pm2Error(f"pm2 {call[0]} failed (exit 1): simulated")

    def ping(self) -> None:
        self._record("ping")

    def jlist(self) -> list[Pm2Process]:
        self._record("jlist")
        return list(self.processes.values())

    def start(self, name: str, working_directory: Path, *, script_args: Sequence[str] = ()) -> None:
        self._record("start", name, str(working_directory))
        self.add(name, Path(working_directory), status=self.start_status, args=script_args)

    def stop(self, name: str) -> None:
        self._record("stop", name)
        process = self.processes[name]
        self.processes[name] = Pm2Process(name, None, process.cwd, "stopped", process.args)

    def restart(self, name: str) -> None:
        self._record("restart", name)
        process = self.processes[name]
        self.processes[name] = Pm2Process(
            name, process.pid or 4242, process.cwd, self.restart_status, process.args
        )

    def delete(self, name: str) -> None:
        self._record("delete", name)
        self.processes.pop(name, None)

    def flush(self, name: str) -> None:
        self._record("flush", name)

    def logs(self, name: str, *, stream: str = "out", lines: int | None = None) -> str:
        self._record("logs", name, stream)
        return self.log_output


class FakeInstaller:
    """Records dependency installs; optionally fails them."""

    def __init__(self) -> None:
        self.installed: list[Path] = []
        self.error: str | None = None

    def install(self, instance_path: Path) -> None:
        if self.error is not None:
            raise DependencyInstallError(self.error)
        self.installed.append(Path(instance_path))


@pytest.fixture()
def fake_pm2() -> FakePm2:
    """Return an empty in-memory pm2."""
    return FakePm2()


@pytest.fixture()
def fake_installer() -> FakeInstaller:
    """Return a recording dependency installer."""
    return FakeInstaller()


@pytest.fixture()
def registry(fake_pm2: FakePm2, fake_installer: FakeInstaller) -> ProcessRegistry:
    """Return a registry wired to the fakes with no settle delay."""
    return ProcessRegistry(
        fake_pm2,  # type: ignore[arg-type]
        fake_installer,  # type: ignore[arg-type]
        marker=MARKER,
        legacy_name="ghosler-app",
        settle_delay=0,
        sleep=lambda _seconds: None,
    )


InstanceFactory = Callable[..., Path]


@pytest.fixture()
def make_instance(tmp_path: Path) -> InstanceFactory:
    """Return a factory that lays out a Ghosler installation on disk."""

    def _make(
        name: str = "site",
        *,
        version: str = "1.0.0",
        settings: Mapping[str, object] | None = None,
        nested: bool = False,
        with_config: bool = True,
    ) -> Path:
        root = tmp_path / name
        root.mkdir(parents=True, exist_ok=True)
        (root / "package.json").write_text(
            json.dumps({"name": "ghosler", "version": version}), encoding="utf-8"
        )
        (root / "app.js").write_text("// app\n", encoding="utf-8")
        if with_config:
            config_path = root / "config.production.json"
            if nested:
                config_path = root / "configuration" / "config.production.json"
                config_path.parent.mkdir(parents=True, exist_ok=True)
            document = {"ghosler": dict(settings or {}), "newsletter": {"title": name}}
            config_path.write_text(json.dumps(document), encoding="utf-8")
        return root

    return _make
