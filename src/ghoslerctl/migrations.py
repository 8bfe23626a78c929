"""Version-gated migrations of existing Ghosler instances.

Each step is tied to the ghoslerctl version that introduced it and runs when
the running CLI is at least that version. Nothing is persisted about which
steps already ran, so every step must be a no-op once its change is in place.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from . import __version__
from .instance_config import (
    ConfigurationStore,
    InstanceConfigError,
    apply_instance_identity,
    read_manifest,
)
from .providers.pm2 import Pm2Error
from .providers.release_fetcher import RELEASE_BRANCH
from .registry import Instance, ProcessRegistry
from .versions import VersionError, is_at_least, to_comparable

LOGGER = logging.getLogger(__name__)

# Releases from this version on read their configuration from ``configuration/``.
NESTED_CONFIG_MIN_VERSION = "0.94"

NO_INSTANCES_MESSAGE = "No instances found for migration!"


@dataclass(frozen=True, slots=True)
class MigrationStep:
    """A single migration, applied to every instance in turn."""

    version: str
    description: str
    apply: Callable[[ProcessRegistry, Instance], bool]


@dataclass(slots=True)
class InstanceReport:
    """What the migration did to one instance."""

    name: str
    changed_by: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    restarted: bool | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        """True when no step failed and any required restart succeeded."""
        return not self.errors and self.restarted is not False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "changed_by": list(self.changed_by),
            "errors": list(self.errors),
            "restarted": self.restarted,
            "message": self.message,
        }


@dataclass(slots=True)
class MigrationReport:
    """Outcome of a migration run."""

    cli_version: str
    applied_steps: list[str] = field(default_factory=list)
    instances: list[InstanceReport] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """True when every instance migrated cleanly."""
        return all(report.ok for report in self.instances)

    @property
    def changed(self) -> int:
        """Number of instances that were modified."""
        return sum(1 for report in self.instances if report.changed_by)


def backfill_identity(registry: ProcessRegistry, instance: Instance) -> bool:
    """Fill in missing ``branch``/``instance`` values and tag legacy processes."""
    if instance.path is None:
        return False
    changed = False
    if ConfigurationStore(instance.path).read() is not None:
        changed = apply_instance_identity(
            instance.path,
            RELEASE_BRANCH,
            instance.name,
            change_port=False,
            is_migration=True,
        )
    if not instance.tagged:
        LOGGER.info("Re-attaching %s with the management marker", instance.name)
        registry.reattach_instance(instance.name, instance.path)
        changed = True
    return changed


def move_configuration(registry: ProcessRegistry, instance: Instance) -> bool:
    """Move a root-level configuration file into ``configuration/``."""
    if instance.path is None:
        return False
    store = ConfigurationStore(instance.path)
    if not store.canonical_path.is_file():
        return False
    manifest = read_manifest(instance.path)
    if manifest is None or not is_at_least(manifest.version, NESTED_CONFIG_MIN_VERSION):
        return False
    store.nested_path.parent.mkdir(parents=True, exist_ok=True)
    store.canonical_path.replace(store.nested_path)
    return True


MIGRATION_STEPS: tuple[MigrationStep, ...] = (
    MigrationStep(
        "1.0.84",
        "Record branch and instance name in the configuration",
        backfill_identity,
    ),
    MigrationStep(
        "1.0.86",
        "Move the configuration file into configuration/",
        move_configuration,
    ),
)


class MigrationDriver:
    """Apply every eligible migration step to every managed instance."""

    def __init__(
        self,
        registry: ProcessRegistry,
        *,
        cli_version: str = __version__,
        steps: Sequence[MigrationStep] = MIGRATION_STEPS,
    ) -> None:
        """Prepare the driver for *cli_version*."""
        self.registry = registry
        self.cli_version = cli_version
        self.steps = steps

    def eligible_steps(self) -> list[MigrationStep]:
        """Steps the running CLI version is entitled to apply, oldest first."""
        ordered = sorted(self.steps, key=lambda step: to_comparable(step.version))
        return [step for step in ordered if is_at_least(self.cli_version, step.version)]

    def run(self) -> MigrationReport:
        """Run all eligible steps, then restart the instances that changed."""
        report = MigrationReport(cli_version=self.cli_version)
        instances = self.registry.list_instances(force_refresh=True)
        if not instances:
            return report

        reports = {instance.name: InstanceReport(instance.name) for instance in instances}
        for step in self.eligible_steps():
            report.applied_steps.append(step.version)
            for instance in instances:
                instance_report = reports[instance.name]
                try:
                    changed = step.apply(self.registry, instance)
                except (InstanceConfigError, Pm2Error, VersionError, OSError) as exc:
                    LOGGER.warning("Migration %s failed for %s: %s", step.version, instance.name, exc)
                    instance_report.errors.append(f"{step.version}: {exc}")
                    continue
                if changed:
                    instance_report.changed_by.append(step.version)

        for instance in instances:
            instance_report = reports[instance.name]
            if not instance_report.changed_by:
                instance_report.message = "Nothing to migrate."
                continue
            result = self.registry.restart_instance(instance.name, reinstall_dependencies=True)
            instance_report.restarted = result.status
            instance_report.message = result.message

        report.instances = [reports[instance.name] for instance in instances]
        return report


__all__ = [
    "MIGRATION_STEPS",
    "MigrationDriver",
    "MigrationReport",
    "MigrationStep",
    "NO_INSTANCES_MESSAGE",
    "backfill_identity",
    "move_configuration",
]
