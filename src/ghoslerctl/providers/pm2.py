"""PM2 provider for supervising Ghosler processes."""
from __future__ import annotations

import json
import logging
import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

LOGGER = logging.getLogger(__name__)

PRODUCTION_ENV = {"NODE_ENV": "production"}
LOG_NOISE_MARKERS = ("[TAILING]", ".pm2/logs/")


class Pm2Error(RuntimeError):
    """Raised when pm2 operations fail."""


@dataclass(frozen=True, slots=True)
class Pm2Process:
    """One entry of ``pm2 jlist`` output."""

    name: str
    pid: int | None
    cwd: Path | None
    status: str
    args: tuple[str, ...] = field(default_factory=tuple)


@dataclass(slots=True)
class Pm2Provider:
    """Thin wrapper around the ``pm2`` executable."""

    pm2_bin: str = "pm2"
    script: str = "app.js"

    def ping(self) -> subprocess.CompletedProcess[str]:
        """Make sure the pm2 daemon is running."""
        return self._pm2(["ping"])

    def jlist(self) -> list[Pm2Process]:
        """Return the processes known to pm2."""
        result = self._pm2(["jlist"])
        return parse_jlist(result.stdout or "")

    def start(
        self,
        name: str,
        working_directory: Path,
        *,
        script_args: Sequence[str] = (),
    ) -> subprocess.CompletedProcess[str]:
        """Start *script* in *working_directory* without automatic restarts."""
        args = [
            "start",
            self.script,
            "--name",
            name,
            "--no-autorestart",
        ]
        if script_args:
            args.append("--")
            args.extend(script_args)
        return self._pm2(args, cwd=working_directory, env=PRODUCTION_ENV)

    def stop(self, name: str) -> subprocess.CompletedProcess[str]:
        """Stop the process *name*."""
        return self._pm2(["stop", name])

    def restart(self, name: str) -> subprocess.CompletedProcess[str]:
        """Restart the process *name*."""
        return self._pm2(["restart", name], env=PRODUCTION_ENV)

    def delete(self, name: str) -> subprocess.CompletedProcess[str]:
        """Remove the process *name* from pm2."""
        return self._pm2(["delete", name])

    def flush(self, name: str) -> subprocess.CompletedProcess[str]:
        """Empty the pm2 log files of *name*."""
        return self._pm2(["flush", name])

    def logs(self, name: str, *, stream: str = "out", lines: int | None = None) -> str:
        """Return the stored log lines of *name* for *stream* (``out`` or ``error``)."""
        args = ["logs", name, "--err" if stream == "error" else "--out", "--nostream"]
        if lines is not None:
            args.extend(["--lines", str(lines)])
        result = self._pm2(args)
        kept = [
            line
            for line in (result.stdout or "").splitlines()
            if not any(marker in line for marker in LOG_NOISE_MARKERS)
        ]
        return "\n".join(kept)

    # ------------------------------------------------------------------
    def _pm2(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.pm2_bin, *args]
        return self._run_command(
            command,
            check=check,
            error_prefix=f"{self.pm2_bin} {args[0]}",
            cwd=cwd,
            env=env,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        env_vars = None
        if env:
            env_vars = os.environ.copy()
            env_vars.update(env)
        LOGGER.debug("Running %s (cwd=%s)", " ".join(args), cwd)
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
                cwd=str(cwd) if cwd is not None else None,
                env=env_vars,
            )
        except FileNotFoundError as exc:
            raise Pm2Error(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise Pm2Error(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


def _decode_process_array(output: str) -> list[object]:
    # pm2 may print "[PM2] ..." banners and upgrade notices before the payload.
    decoder = json.JSONDecoder()
    last_error: json.JSONDecodeError | None = None
    offset = 0
    for line in output.splitlines(keepends=True):
        stripped = line.lstrip()
        if stripped.startswith("["):
            try:
                payload, _end = decoder.raw_decode(output, offset + len(line) - len(stripped))
            except json.JSONDecodeError as exc:
                last_error = exc
            else:
                if isinstance(payload, list):
                    return payload
        offset += len(line)
    if last_error is not None:
        raise Pm2Error(f"Unable to parse pm2 process list: {last_error}")
    return []


def parse_jlist(output: str) -> list[Pm2Process]:
    """Parse ``pm2 jlist`` output into :class:`Pm2Process` entries."""
    payload = _decode_process_array(output)

    processes: list[Pm2Process] = []
    for item in payload:
        if not isinstance(item, Mapping):
            continue
        name = str(item.get("name", "")).strip()
        if not name:
            continue
        env = item.get("pm2_env")
        env = env if isinstance(env, Mapping) else {}
        raw_pid = item.get("pid")
        pid = raw_pid if isinstance(raw_pid, int) and raw_pid > 0 else None
        cwd_raw = env.get("pm_cwd")
        raw_args = env.get("args")
        if isinstance(raw_args, str):
            script_args: tuple[str, ...] = tuple(raw_args.split())
        elif isinstance(raw_args, list):
            script_args = tuple(str(arg) for arg in raw_args)
        else:
            script_args = ()
        processes.append(
            Pm2Process(
                name=name,
                pid=pid,
                cwd=Path(str(cwd_raw)) if cwd_raw else None,
                status=str(env.get("status", "")).strip().lower(),
                args=script_args,
            )
        )
    return processes


__all__ = ["Pm2Error", "Pm2Process", "Pm2Provider", "parse_jlist"]
