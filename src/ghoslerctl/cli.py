"""Typer-powered command line interface for ``ghosler``.

Every command resolves its target instance through the lifecycle
orchestrator, runs inside a structured logging operation and maps failures
onto the exit codes in :mod:`ghoslerctl.exit_codes`.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import BackupRegistryError, list_backups
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .lifecycle import (
    CollaboratorError,
    LifecycleError,
    LifecycleOrchestrator,
    PartialFailureError,
    PreconditionError,
    StepCallback,
)
from .logging import OperationScope, StructuredLogger
from .migrations import NO_INSTANCES_MESSAGE, MigrationDriver
from .providers import DependencyInstaller, Pm2Error, Pm2Provider, ReleaseFetcher
from .registry import Instance, ProcessRegistry

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to ghoslerctl's YAML config file.",
)

NAME_OPTION = typer.Option(
    None,
    "--name",
    "-n",
    help="Instance to act on. Optional when exactly one instance exists.",
)


class LogStream(str, Enum):
    """Log streams exposed by pm2."""

    OUT = "out"
    ERROR = "error"


app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Manage Ghosler instances supervised by PM2.

        Install, update, back up and remove Ghosler deployments, and migrate
        existing instances to the layout expected by this release.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    registry: ProcessRegistry
    fetcher: ReleaseFetcher
    orchestrator: LifecycleOrchestrator
    migrations: MigrationDriver


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.ENVIRONMENT) from exc

    logger = StructuredLogger(config.logs_dir)
    pm2 = Pm2Provider(pm2_bin=config.pm2_bin)
    installer = DependencyInstaller(npm_bin=config.npm_bin)
    registry = ProcessRegistry(
        pm2,
        installer,
        marker=config.marker,
        legacy_name=config.legacy_name,
        settle_delay=config.settle_delay,
    )
    fetcher = ReleaseFetcher(config.release)
    ctx.call_on_close(fetcher.close)
    orchestrator = LifecycleOrchestrator(
        registry,
        fetcher,
        base_name=config.base_name,
        default_port=config.default_port,
        backup_compression=config.backups.compression,
        backup_level=config.backups.level,
    )
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        registry=registry,
        fetcher=fetcher,
        orchestrator=orchestrator,
        migrations=MigrationDriver(registry),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the ghosler CLI version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"ghosler {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _provider_error(op: OperationScope, message: str) -> NoReturn:
    _command_error(op, message, rc=ExitCode.PROVIDER)


def _lifecycle_error(op: OperationScope, exc: LifecycleError) -> NoReturn:
    """Map a lifecycle failure onto its exit code."""
    if isinstance(exc, PreconditionError):
        rc = ExitCode.VALIDATION
    elif isinstance(exc, CollaboratorError):
        rc = ExitCode.ENVIRONMENT
    else:
        rc = ExitCode.PROVIDER
    errors = [str(exc)]
    if isinstance(exc, PartialFailureError):
        console.print(f"[yellow]{exc.recovery}[/yellow]")
        errors.append(exc.recovery)
    _command_error(op, str(exc), rc=rc, errors=errors)


def _progress(op: OperationScope) -> StepCallback:
    """Return a step callback that echoes progress and records it on *op*."""

    def _report(step: str, detail: str) -> None:
        console.print(f"[dim]{detail}[/dim]")
        op.add_step(step, detail=detail)

    return _report


def _instance_payload(instance: Instance) -> dict[str, object]:
    return {
        "name": instance.name,
        "status": instance.status.value,
        "pid": instance.pid,
        "path": str(instance.path) if instance.path else None,
        "version": instance.version,
        "managed": instance.tagged,
    }


@app.command()
def install(
    ctx: typer.Context,
    branch: str = typer.Option(
        "release",
        "--branch",
        "-b",
        help="Branch to install; `release` installs the latest published release.",
    ),
    path: Path | None = typer.Option(
        None,
        "--path",
        file_okay=False,
        help="Directory to install into (defaults to the current directory).",
    ),
) -> None:
    """Install a new Ghosler instance into an empty directory."""
    runtime = _get_runtime(ctx)
    directory = path or Path.cwd()
    with runtime.logger.operation(
        "install",
        args={"branch": branch, "path": directory},
        target={"kind": "instance", "path": directory},
    ) as op:
        runtime.orchestrator.on_step = _progress(op)
        try:
            result = runtime.orchestrator.install(directory, branch)
        except LifecycleError as exc:
            _lifecycle_error(op, exc)
        except Pm2Error as exc:
            _provider_error(op, f"pm2 failed: {exc}")

        console.print(f"[green]{result.message}[/green]")
        console.print(f"Instance '{result.name}' installed in {result.path}.")
        op.success(
            "Ghosler installed.",
            changed=1,
            context={"name": result.name, "path": result.path, "branch": result.branch},
        )


@app.command()
def update(ctx: typer.Context, name: str | None = NAME_OPTION) -> None:
    """Update an instance to the latest Ghosler release."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "update",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        runtime.orchestrator.on_step = _progress(op)
        try:
            result = runtime.orchestrator.update(name)
        except LifecycleError as exc:
            _lifecycle_error(op, exc)
        except Pm2Error as exc:
            _provider_error(op, f"pm2 failed: {exc}")

        context = {
            "name": result.name,
            "installed_version": result.installed_version,
            "latest_version": result.latest_version,
        }
        if not result.updated:
            console.print(result.message)
            op.success(result.message, changed=0, context=context)
            return

        backups = [str(result.backup.archive)] if result.backup else []
        console.print(f"[green]{result.message}[/green]")
        op.success(result.message, changed=1, backups=backups, context=context)


@app.command()
def restart(ctx: typer.Context, name: str | None = NAME_OPTION) -> None:
    """Restart an instance and verify it comes back online."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "restart",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        runtime.orchestrator.on_step = _progress(op)
        try:
            result = runtime.orchestrator.restart(name)
        except LifecycleError as exc:
            _lifecycle_error(op, exc)
        except Pm2Error as exc:
            _provider_error(op, f"pm2 failed: {exc}")

        console.print(f"[green]{result.message}[/green]")
        op.success(result.message, changed=1)


@app.command()
def stop(ctx: typer.Context, name: str | None = NAME_OPTION) -> None:
    """Stop an instance without removing it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "stop",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            instance = runtime.orchestrator.stop(name)
        except LifecycleError as exc:
            _lifecycle_error(op, exc)
        except Pm2Error as exc:
            _provider_error(op, f"pm2 failed: {exc}")

        console.print(f"[green]Instance '{instance.name}' stopped.[/green]")
        op.success("Instance stopped.", changed=1)


@app.command()
def backup(
    ctx: typer.Context,
    name: str | None = NAME_OPTION,
    list_only: bool = typer.Option(
        False,
        "--list",
        help="List existing backups instead of creating one.",
    ),
) -> None:
    """Create a backup of an instance, or list its backups."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup list" if list_only else "backup create",
        args={"name": name, "list": list_only},
        target={"kind": "instance", "name": name},
    ) as op:
        runtime.orchestrator.on_step = _progress(op)
        if list_only:
            try:
                instance = runtime.orchestrator.resolve_instance(name)
            except LifecycleError as exc:
                _lifecycle_error(op, exc)
            except Pm2Error as exc:
                _provider_error(op, f"pm2 failed: {exc}")
            if instance.path is None:
                _command_error(op, f"Instance '{instance.name}' has no known directory.")
            try:
                entries = list_backups(instance.path)
            except BackupRegistryError as exc:
                _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("ID", style="bold")
            table.add_column("Created")
            table.add_column("Algorithm")
            table.add_column("Size (bytes)")
            table.add_column("Path")
            if not entries:
                table.add_row("(none)", "", "", "", "")
            for entry in entries:
                table.add_row(
                    str(entry.get("id", "")),
                    str(entry.get("created_at", "")),
                    str(entry.get("algorithm", "")),
                    str(entry.get("size_bytes", "")),
                    str(entry.get("path", "")),
                )
            console.print(table)
            op.success("Reported backups.", changed=0, context={"count": len(entries)})
            return

        try:
            result = runtime.orchestrator.backup(name)
        except LifecycleError as exc:
            _lifecycle_error(op, exc)
        except Pm2Error as exc:
            _provider_error(op, f"pm2 failed: {exc}")

        console.print(f"[green]Backup created at {result.archive}[/green]")
        op.success(
            "Backup created.",
            changed=1,
            backups=[result.id],
            context={"archive": result.archive, "checksum": result.checksum},
        )


@app.command()
def flush(ctx: typer.Context, name: str | None = NAME_OPTION) -> None:
    """Clear the logs of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "flush",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            instance = runtime.orchestrator.flush(name)
        except LifecycleError as exc:
            _lifecycle_error(op, exc)
        except Pm2Error as exc:
            _provider_error(op, f"pm2 failed: {exc}")

        console.print(f"[green]Logs of '{instance.name}' flushed.[/green]")
        op.success("Logs flushed.", changed=1)


@app.command()
def uninstall(
    ctx: typer.Context,
    name: str | None = NAME_OPTION,
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Do not ask for confirmation.",
    ),
) -> None:
    """Remove an instance from pm2 and delete its files."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "uninstall",
        args={"name": name, "yes": yes},
        target={"kind": "instance", "name": name},
    ) as op:
        runtime.orchestrator.on_step = _progress(op)
        try:
            target = name if name is not None else runtime.orchestrator.resolve_instance(None).name
            if not yes:
                confirmed = typer.confirm(
                    f"Remove '{target}' from pm2 and delete all of its files?",
                    default=False,
                )
                if not confirmed:
                    console.print("[yellow]Uninstall cancelled.[/yellow]")
                    op.warning("Uninstall cancelled by operator.", warnings=["user-cancelled"])
                    return
            result = runtime.orchestrator.uninstall(target)
        except LifecycleError as exc:
            _lifecycle_error(op, exc)
        except Pm2Error as exc:
            _provider_error(op, f"pm2 failed: {exc}")

        if not result.deleted:
            console.print(f"[yellow]{result.message}[/yellow]")
            op.warning(
                result.message,
                warnings=["path-unresolved"],
                changed=1 if result.deregistered else 0,
            )
            return
        console.print(f"[green]{result.message}[/green]")
        op.success(result.message, changed=2, context={"path": result.path})


@app.command()
def logs(
    ctx: typer.Context,
    name: str | None = NAME_OPTION,
    stream: LogStream = typer.Option(
        LogStream.OUT,
        "--type",
        "-t",
        case_sensitive=False,
        help="Log stream to show.",
    ),
    lines: int | None = typer.Option(
        None,
        "--lines",
        min=1,
        help="Number of lines to show.",
    ),
) -> None:
    """Show the stored logs of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "logs",
        args={"name": name, "type": stream.value, "lines": lines},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            output = runtime.orchestrator.logs(name, stream=stream.value, lines=lines)
        except LifecycleError as exc:
            _lifecycle_error(op, exc)
        except Pm2Error as exc:
            _provider_error(op, f"pm2 failed: {exc}")

        console.print(output or "[dim](no log output)[/dim]", markup=not output, highlight=False)
        op.success("Reported logs.", changed=0)


@app.command()
def migrate(ctx: typer.Context) -> None:
    """Apply configuration migrations to every instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "migrate",
        args={"cli_version": __version__},
        target={"kind": "instance", "scope": "all"},
    ) as op:
        try:
            report = runtime.migrations.run()
        except Pm2Error as exc:
            _provider_error(op, f"pm2 failed: {exc}")

        if not report.instances:
            console.print(NO_INSTANCES_MESSAGE)
            op.success(NO_INSTANCES_MESSAGE, changed=0)
            return

        errors: list[str] = []
        for instance_report in report.instances:
            op.add_step(
                f"migrate.{instance_report.name}",
                status="success" if instance_report.ok else "error",
                detail=", ".join(instance_report.changed_by) or "unchanged",
            )
            if instance_report.ok:
                console.print(
                    f"[green]{instance_report.name}[/green]: {instance_report.message}"
                )
                continue
            details = instance_report.errors or [instance_report.message]
            errors.extend(f"{instance_report.name}: {detail}" for detail in details)
            for detail in details:
                console.print(f"[red]{instance_report.name}[/red]: {detail}")

        context = {
            "applied_steps": report.applied_steps,
            "instances": [item.to_dict() for item in report.instances],
        }
        if errors:
            op.error("Migration finished with errors.", errors=errors, rc=ExitCode.PROVIDER, context=context)
            raise typer.Exit(code=ExitCode.PROVIDER)
        op.success("Migration complete.", changed=report.changed, context=context)


@app.command("ls")
def list_instances(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit instances as JSON instead of a table.",
    ),
) -> None:
    """List the Ghosler instances managed by pm2."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ls",
        args={"json": json_output},
        target={"kind": "instance", "scope": "pm2"},
    ) as op:
        try:
            instances = runtime.orchestrator.list_instances()
        except Pm2Error as exc:
            _provider_error(op, f"pm2 failed: {exc}")

        entries = [_instance_payload(instance) for instance in instances]
        if json_output:
            console.print_json(json.dumps({"instances": entries}))
            op.success("Reported instance list as JSON.", changed=0)
            return

        if not entries:
            console.print("No instances found.")
            op.success("Reported instance list.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Status")
        table.add_column("PID")
        table.add_column("Version")
        table.add_column("Path")
        for entry in entries:
            table.add_row(
                str(entry["name"]),
                str(entry["status"]),
                "" if entry["pid"] is None else str(entry["pid"]),
                str(entry["version"] or ""),
                str(entry["path"] or ""),
            )
        console.print(table)
        op.success("Reported instance list.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
