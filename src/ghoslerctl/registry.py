"""Registry of Ghosler instances supervised by PM2.

PM2 is the source of truth for which instances exist. Only processes started
with the ghoslerctl marker argument are considered (plus the legacy default
name used before the marker existed), so unrelated PM2 processes are never
touched. The listing is cached on the registry object; every mutating call
refreshes it.
"""
from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .instance_config import read_manifest
from .providers.npm import DependencyInstaller, DependencyInstallError
from .providers.pm2 import Pm2Error, Pm2Process, Pm2Provider

LOGGER = logging.getLogger(__name__)

DEFAULT_SETTLE_DELAY = 10.0


class InstanceStatus(str, Enum):
    """Liveness states reported by the supervisor."""

    ONLINE = "online"
    STOPPED = "stopped"
    ERRORED = "errored"
    UNKNOWN = "unknown"

    @classmethod
    def from_pm2(cls, value: str) -> InstanceStatus:
        """Map a raw pm2 status onto the enum."""
        if value == "online":
            return cls.ONLINE
        if value in {"stopped", "stopping"}:
            return cls.STOPPED
        if value == "errored":
            return cls.ERRORED
        return cls.UNKNOWN


@dataclass(frozen=True, slots=True)
class Instance:
    """A supervised Ghosler deployment."""

    name: str
    path: Path | None
    pid: int | None
    status: InstanceStatus
    tagged: bool = True

    @property
    def version(self) -> str | None:
        """Version from the instance manifest, if it is a valid installation."""
        if self.path is None:
            return None
        manifest = read_manifest(self.path)
        return manifest.version if manifest else None


@dataclass(frozen=True, slots=True)
class OperationResult:
    """Outcome of a start/restart that was verified for liveness."""

    status: bool
    message: str


class ProcessRegistry:
    """Query and mutate the set of supervised Ghosler instances."""

    def __init__(
        self,
        pm2: Pm2Provider,
        installer: DependencyInstaller,
        *,
        marker: str,
        legacy_name: str | None = None,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Wire the registry to its pm2 and npm collaborators."""
        self.pm2 = pm2
        self.installer = installer
        self.marker = marker
        self.legacy_name = legacy_name
        self.settle_delay = settle_delay
        self._sleep = sleep
        self._cache: list[Instance] = []
        self._pinged = False

    # Queries ---------------------------------------------------------
    def list_instances(self, force_refresh: bool = False) -> list[Instance]:
        """Return the managed instances, using the cache unless *force_refresh*."""
        if self._cache and not force_refresh:
            return list(self._cache)
        if not self._pinged:
            self.pm2.ping()
            self._pinged = True
        self._cache = [
            self._to_instance(process)
            for process in self.pm2.jlist()
            if self._is_managed(process)
        ]
        return list(self._cache)

    def get_instance(self, name: str, *, force_refresh: bool = False) -> Instance | None:
        """Return the instance called *name*, if registered."""
        for instance in self.list_instances(force_refresh=force_refresh):
            if instance.name == name:
                return instance
        return None

    def has_multiple_instances(self) -> bool:
        """Return True when more than one instance is registered."""
        return len(self.list_instances()) > 1

    def generate_unique_name(self, base_name: str) -> str:
        """Return *base_name*, or ``<base_name>-<N>`` past the highest suffix in use."""
        names = {instance.name for instance in self.list_instances(force_refresh=True)}
        pattern = re.compile(rf"^{re.escape(base_name)}-(\d+)$")
        suffixes: list[int] = []
        for name in names:
            match = pattern.match(name)
            if match:
                suffixes.append(int(match.group(1)))

        if base_name not in names and not suffixes:
            return base_name
        return f"{base_name}-{max(suffixes, default=0) + 1}"

    # Mutations -------------------------------------------------------
    def register_instance(self, branch: str, name: str, working_directory: Path) -> OperationResult:
        """Install dependencies and start *name* under pm2, then verify it is online."""
        working_directory = Path(working_directory)
        LOGGER.info("Registering %s (%s) from %s", name, branch, working_directory)
        try:
            self.installer.install(working_directory)
            self.pm2.start(name, working_directory, script_args=[self.marker])
        except (DependencyInstallError, Pm2Error) as exc:
            self.list_instances(force_refresh=True)
            return OperationResult(False, str(exc))

        self.list_instances(force_refresh=True)
        return self._verify_online(
            name,
            success=f"Ghosler instance '{name}' ({branch}) is online.",
            failure=(
                "There was a problem starting Ghosler. "
                f"See logs via `ghosler logs --name {name} --type error`."
            ),
        )

    def restart_instance(self, name: str, reinstall_dependencies: bool = False) -> OperationResult:
        """Restart *name*, optionally reinstalling dependencies first."""
        instance = self.get_instance(name, force_refresh=True)
        if instance is None:
            return OperationResult(False, f"Unable to find the registered process: {name}")
        try:
            if reinstall_dependencies:
                if instance.path is None:
                    return OperationResult(False, f"Instance '{name}' has no known directory.")
                self.pm2.stop(name)
                self.installer.install(instance.path)
            self.pm2.restart(name)
        except (DependencyInstallError, Pm2Error) as exc:
            self.list_instances(force_refresh=True)
            return OperationResult(False, str(exc))

        return self._verify_online(
            name,
            success=f"Ghosler instance '{name}' restarted.",
            failure=(
                "There was a problem restarting Ghosler. "
                f"See logs via `ghosler logs --name {name} --type error`."
            ),
        )

    def stop_instance(self, name: str) -> None:
        """Stop *name* without removing it from pm2."""
        self.pm2.stop(name)
        self.list_instances(force_refresh=True)

    def deregister_instance(self, name: str) -> Path | None:
        """Remove *name* from pm2 and return its last known directory."""
        instance = self.get_instance(name, force_refresh=True)
        if instance is None:
            return None
        self.pm2.delete(name)
        self.list_instances(force_refresh=True)
        return instance.path

    def reattach_instance(self, name: str, working_directory: Path) -> None:
        """Re-create the pm2 entry for *name* so it carries the marker argument.

        When the tagged start fails the process is started again untagged, so
        it stays supervised under the legacy name and a later run can retry.
        """
        directory = Path(working_directory)
        self.pm2.delete(name)
        try:
            self.pm2.start(name, directory, script_args=[self.marker])
        except Pm2Error as exc:
            LOGGER.warning("Tagged start of %s failed, restoring the untagged process: %s", name, exc)
            try:
                self.pm2.start(name, directory)
            except Pm2Error as restore_exc:
                raise Pm2Error(
                    f"Re-attaching '{name}' failed ({exc}) and the process could not be restored: "
                    f"{restore_exc}. Run `pm2 start app.js --name {name}` in {directory}."
                ) from restore_exc
            raise Pm2Error(
                f"Re-attaching '{name}' failed, it was restored without the marker: {exc}"
            ) from exc
        finally:
            self.list_instances(force_refresh=True)

    def flush_logs(self, name: str) -> None:
        """Empty the pm2 logs of *name*."""
        self.pm2.flush(name)

    def read_logs(self, name: str, *, stream: str = "out", lines: int | None = None) -> str:
        """Return the stored pm2 logs of *name*."""
        return self.pm2.logs(name, stream=stream, lines=lines)

    # Internal helpers -------------------------------------------------
    def _verify_online(self, name: str, *, success: str, failure: str) -> OperationResult:
        # An immediate read can report online before the app fails to boot.
        self._sleep(self.settle_delay)
        instance = self.get_instance(name, force_refresh=True)
        if instance is not None and instance.status is InstanceStatus.ONLINE:
            return OperationResult(True, success)
        return OperationResult(False, failure)

    def _is_managed(self, process: Pm2Process) -> bool:
        return self.marker in process.args or (
            self.legacy_name is not None and process.name == self.legacy_name
        )

    def _to_instance(self, process: Pm2Process) -> Instance:
        return Instance(
            name=process.name,
            path=process.cwd,
            pid=process.pid,
            status=InstanceStatus.from_pm2(process.status),
            tagged=self.marker in process.args,
        )


__all__ = ["Instance", "InstanceStatus", "OperationResult", "ProcessRegistry"]
