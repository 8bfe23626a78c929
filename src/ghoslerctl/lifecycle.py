"""Multi-step lifecycle operations for Ghosler instances.

The orchestrator sequences install, update, restart, stop, backup, flush and
uninstall against the process registry, the release fetcher and the instance
configuration files. Irreversible steps only run once everything they depend
on has been verified; failures after that point are reported together with a
recovery instruction instead of being rolled back automatically.
"""
from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from .backups import BackupError, BackupResult, create_backup
from .instance_config import (
    InstanceConfigError,
    Manifest,
    apply_instance_identity,
    read_app_settings,
    read_manifest,
)
from .ports import PortAllocationError
from .providers.pm2 import Pm2Error
from .providers.release_fetcher import RELEASE_BRANCH, ReleaseFetcher, ReleaseFetchError
from .registry import Instance, OperationResult, ProcessRegistry
from .versions import VersionError, is_newer

LOGGER = logging.getLogger(__name__)

UPDATE_DIR_NAME = ".update"
LOGS_DIR_NAME = ".logs"
FLUSHED_LOG_FILES = ("error.log", "debug.log")

# Entries at the instance root that survive an update.
UPDATE_IGNORE = frozenset(
    {
        ".logs",
        "files",
        ".backups",
        "README.md",
        "LICENSE.md",
        ".gitignore",
        "config.debug.json",
        "custom-template.ejs",
        "config.production.json",
        "configuration",
        "Dockerfile",
        ".dockerignore",
        "docker-install.sh",
        UPDATE_DIR_NAME,
    }
)

StepCallback = Callable[[str, str], None]


class LifecycleError(RuntimeError):
    """Base class for lifecycle failures."""


class PreconditionError(LifecycleError):
    """Raised before an operation starts when its preconditions do not hold."""


class CollaboratorError(LifecycleError):
    """Raised when a collaborator fails before any irreversible step."""


class VerificationError(LifecycleError):
    """Raised when an action completed but the instance did not come online."""


class PartialFailureError(LifecycleError):
    """Raised when an operation failed after irreversible changes were made."""

    def __init__(self, message: str, *, recovery: str) -> None:
        """Store *recovery* instructions alongside the message."""
        super().__init__(message)
        self.recovery = recovery


@dataclass(frozen=True, slots=True)
class InstallResult:
    """Outcome of a successful install."""

    name: str
    path: Path
    branch: str
    message: str


@dataclass(frozen=True, slots=True)
class UpdateResult:
    """Outcome of an update attempt."""

    name: str
    updated: bool
    installed_version: str
    latest_version: str
    message: str
    backup: BackupResult | None = None


@dataclass(frozen=True, slots=True)
class UninstallResult:
    """Outcome of an uninstall."""

    name: str
    path: Path | None
    deleted: bool
    message: str
    deregistered: bool = True


class LifecycleOrchestrator:
    """Drive lifecycle operations for supervised Ghosler instances."""

    def __init__(
        self,
        registry: ProcessRegistry,
        fetcher: ReleaseFetcher,
        *,
        base_name: str = "ghosler-app",
        default_port: int = 2369,
        backup_compression: str = "auto",
        backup_level: int | None = None,
        on_step: StepCallback | None = None,
    ) -> None:
        """Wire the orchestrator to its collaborators."""
        self.registry = registry
        self.fetcher = fetcher
        self.base_name = base_name
        self.default_port = default_port
        self.backup_compression = backup_compression
        self.backup_level = backup_level
        self.on_step = on_step

    # Resolution ------------------------------------------------------
    def resolve_instance(self, name: str | None) -> Instance:
        """Return the instance *name* refers to, defaulting to the only one."""
        if name is None:
            if self.registry.has_multiple_instances():
                raise PreconditionError(
                    "Please use the --name option to specify an instance. "
                    "Use `ghosler ls` to list all the processes."
                )
            instances = self.registry.list_instances()
            if not instances:
                raise PreconditionError("No instances found.")
            return instances[0]

        instance = self.registry.get_instance(name)
        if instance is None:
            raise PreconditionError(f"Unable to find the registered process: {name}")
        return instance

    def list_instances(self) -> list[Instance]:
        """Return a fresh listing of the managed instances."""
        return self.registry.list_instances(force_refresh=True)

    # Install ---------------------------------------------------------
    def install(self, directory: Path, branch: str = RELEASE_BRANCH) -> InstallResult:
        """Install Ghosler from *branch* into the empty *directory*."""
        directory = Path(directory).expanduser().resolve()
        if directory.exists() and any(directory.iterdir()):
            raise PreconditionError(
                f"{directory} is not empty. Ghosler seems to be installed already. "
                "Do you want to update maybe?"
            )

        self._step("fetch", f"Downloading '{branch}'...")
        try:
            archive = self.fetcher.fetch(branch)
        except ReleaseFetchError as exc:
            raise CollaboratorError(f"Failed to clone the repository, {exc}") from exc

        self._step("extract", f"Setting up {directory}...")
        try:
            self.fetcher.extract(archive, directory)
        except ReleaseFetchError as exc:
            raise CollaboratorError(f"Failed to setup the directory, {exc}") from exc
        if read_manifest(directory) is None:
            raise CollaboratorError("The downloaded source is not a Ghosler release.")

        name = self.registry.generate_unique_name(self.base_name)
        self._step("configure", f"Configuring instance '{name}'...")
        try:
            apply_instance_identity(
                directory,
                branch,
                name,
                change_port=True,
                default_port=self.default_port,
            )
        except (InstanceConfigError, PortAllocationError) as exc:
            raise CollaboratorError(str(exc)) from exc

        self._step("register", f"Starting '{name}' under pm2...")
        result = self.registry.register_instance(branch, name, directory)
        if not result.status:
            raise VerificationError(result.message)
        return InstallResult(name=name, path=directory, branch=branch, message=result.message)

    # Update ----------------------------------------------------------
    def update(self, name: str | None) -> UpdateResult:
        """Update the instance to the latest release when one is available."""
        instance = self.resolve_instance(name)
        path, manifest = self._require_installation(instance)

        self._step("check", "Checking for the latest version...")
        try:
            latest = self.fetcher.latest_release_version()
            newer = is_newer(latest, manifest.version)
        except (ReleaseFetchError, VersionError) as exc:
            raise CollaboratorError(str(exc)) from exc

        if not newer:
            return UpdateResult(
                name=instance.name,
                updated=False,
                installed_version=manifest.version,
                latest_version=latest,
                message="Ghosler is already on the latest version.",
            )

        try:
            settings = read_app_settings(path)
        except InstanceConfigError as exc:
            raise CollaboratorError(str(exc)) from exc
        branch = str(settings.get("branch") or RELEASE_BRANCH)

        backup = self._backup(instance.name, path)
        scratch = path / UPDATE_DIR_NAME
        shutil.rmtree(scratch, ignore_errors=True)

        self._step("fetch", f"Downloading '{branch}'...")
        try:
            archive = self.fetcher.fetch(branch)
        except ReleaseFetchError as exc:
            raise CollaboratorError(f"Failed to clone the repository, {exc}") from exc

        self._step("extract", f"Unpacking into {scratch}...")
        try:
            self.fetcher.extract(archive, scratch)
        except ReleaseFetchError as exc:
            shutil.rmtree(scratch, ignore_errors=True)
            raise CollaboratorError(f"Failed to setup the directory, {exc}") from exc
        if read_manifest(scratch) is None:
            shutil.rmtree(scratch, ignore_errors=True)
            raise CollaboratorError("The downloaded source is not a Ghosler release.")

        recovery = (
            f"Restore your latest backup ({backup.archive}) if something went wrong "
            f"& execute `ghosler restart --name {instance.name}`."
        )
        try:
            self._step("replace", "Removing previous files...")
            _delete_entries(path, keep=UPDATE_IGNORE)
            self._step("move", "Moving new files into place...")
            _move_tree(scratch, path, skip=UPDATE_IGNORE)
            shutil.rmtree(scratch)
            self._step("configure", "Updating the configuration file...")
            apply_instance_identity(path, branch, instance.name, change_port=False)
        except (OSError, InstanceConfigError) as exc:
            raise PartialFailureError(
                f"Update of '{instance.name}' failed after removing previous files: {exc}",
                recovery=recovery,
            ) from exc

        self._step("restart", f"Restarting '{instance.name}'...")
        result = self.registry.restart_instance(instance.name, reinstall_dependencies=True)
        if not result.status:
            raise PartialFailureError(result.message, recovery=recovery)

        return UpdateResult(
            name=instance.name,
            updated=True,
            installed_version=manifest.version,
            latest_version=latest,
            message=f"Updated '{instance.name}' to {latest}.",
            backup=backup,
        )

    # Simple operations -----------------------------------------------
    def restart(self, name: str | None) -> OperationResult:
        """Restart the instance without reinstalling dependencies."""
        instance = self.resolve_instance(name)
        self._step("restart", f"Restarting '{instance.name}'...")
        result = self.registry.restart_instance(instance.name, reinstall_dependencies=False)
        if not result.status:
            raise VerificationError(result.message)
        return result

    def stop(self, name: str | None) -> Instance:
        """Stop the instance, keeping it registered."""
        instance = self.resolve_instance(name)
        try:
            self.registry.stop_instance(instance.name)
        except Pm2Error as exc:
            raise CollaboratorError(str(exc)) from exc
        return instance

    def backup(self, name: str | None) -> BackupResult:
        """Create a new backup archive of the instance."""
        instance = self.resolve_instance(name)
        path, _manifest = self._require_installation(instance)
        return self._backup(instance.name, path)

    def flush(self, name: str | None) -> Instance:
        """Clear pm2 logs and the application's own log files."""
        instance = self.resolve_instance(name)
        try:
            self.registry.flush_logs(instance.name)
        except Pm2Error as exc:
            raise CollaboratorError(str(exc)) from exc
        if instance.path is not None:
            for log_name in FLUSHED_LOG_FILES:
                log_file = instance.path / LOGS_DIR_NAME / log_name
                if log_file.exists():
                    log_file.write_text("", encoding="utf-8")
        return instance

    def logs(self, name: str | None, *, stream: str = "out", lines: int | None = None) -> str:
        """Return the pm2 logs of the instance."""
        instance = self.resolve_instance(name)
        try:
            return self.registry.read_logs(instance.name, stream=stream, lines=lines)
        except Pm2Error as exc:
            raise CollaboratorError(str(exc)) from exc

    # Uninstall -------------------------------------------------------
    def uninstall(self, name: str | None) -> UninstallResult:
        """Deregister the instance, then delete its directory contents."""
        target = name if name is not None else self.resolve_instance(None).name
        known = self.registry.get_instance(target, force_refresh=True)
        if known is not None and known.path is not None and _is_protected(known.path):
            raise PreconditionError(f"Refusing to delete protected directory {known.path}.")

        self._step("deregister", f"Removing '{target}' from pm2...")
        try:
            path = self.registry.deregister_instance(target)
        except Pm2Error as exc:
            raise CollaboratorError(str(exc)) from exc

        if path is None:
            LOGGER.warning("No directory resolved for %s; skipping deletion", target)
            return UninstallResult(
                name=target,
                path=None,
                deleted=False,
                message=f"Unable to resolve a directory for '{target}'; nothing was deleted.",
                deregistered=known is not None,
            )

        self._step("delete", f"Deleting {path}...")
        try:
            _delete_entries(path)
        except OSError as exc:
            raise PartialFailureError(
                f"'{target}' was removed from pm2 but deleting {path} failed: {exc}",
                recovery=f"Delete the remaining files in {path} manually.",
            ) from exc
        return UninstallResult(
            name=target,
            path=path,
            deleted=True,
            message="Ghosler uninstalled!",
        )

    # Internal helpers -------------------------------------------------
    def _require_installation(self, instance: Instance) -> tuple[Path, Manifest]:
        manifest = read_manifest(instance.path) if instance.path is not None else None
        if instance.path is None or manifest is None:
            raise PreconditionError(
                f"Are you sure a Ghosler instance is running in {instance.path or 'an unknown directory'}?"
            )
        return instance.path, manifest

    def _backup(self, name: str, path: Path) -> BackupResult:
        self._step("backup", f"Backing up '{name}'...")
        try:
            return create_backup(
                name,
                path,
                compression=self.backup_compression,
                compression_level=self.backup_level,
            )
        except BackupError as exc:
            raise CollaboratorError(f"Backup failed, {exc}") from exc

    def _step(self, step: str, detail: str) -> None:
        LOGGER.debug("%s: %s", step, detail)
        if self.on_step is not None:
            self.on_step(step, detail)


def _delete_entries(directory: Path, *, keep: Iterable[str] = ()) -> None:
    """Delete every entry in *directory* whose name is not in *keep*."""
    kept = frozenset(keep)
    for entry in Path(directory).iterdir():
        if entry.name in kept:
            continue
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()


def _move_tree(source: Path, destination: Path, *, skip: Iterable[str] = ()) -> None:
    """Move the contents of *source* into *destination*, merging directories."""
    skipped = frozenset(skip)
    destination.mkdir(parents=True, exist_ok=True)
    for entry in source.iterdir():
        if entry.name in skipped:
            continue
        target = destination / entry.name
        if entry.is_dir() and not entry.is_symlink() and target.is_dir():
            _move_tree(entry, target)
        else:
            os.replace(entry, target)


def _is_protected(path: Path) -> bool:
    resolved = path.expanduser().resolve()
    return resolved == Path(resolved.anchor) or resolved == Path.home().resolve()


__all__ = [
    "CollaboratorError",
    "InstallResult",
    "LifecycleError",
    "LifecycleOrchestrator",
    "PartialFailureError",
    "PreconditionError",
    "UPDATE_IGNORE",
    "UninstallResult",
    "UpdateResult",
    "VerificationError",
]
