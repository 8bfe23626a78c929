"""Download and unpack Ghosler source archives from GitHub."""
from __future__ import annotations

import logging
import shutil
import tempfile
import zipfile
from pathlib import Path

import httpx

from .. import __version__
from ..config import ReleaseConfig

LOGGER = logging.getLogger(__name__)

RELEASE_BRANCH = "release"
ARCHIVE_NAME = "ghosler-latest.zip"
PROJECT_DIR_PREFIX = "ghosler-"

# Repository files an installation does not need.
UNNEEDED_FILES = (
    ".gitignore",
    "LICENSE.md",
    "README.md",
    "Dockerfile",
    ".dockerignore",
    "docker-install.sh",
    "tailwind.config.js",
    "public/styles/tailwind.css",
)


class ReleaseFetchError(RuntimeError):
    """Raised when a source archive cannot be resolved, downloaded or unpacked."""


class ReleaseFetcher:
    """Resolve, download and extract Ghosler source archives."""

    def __init__(
        self,
        config: ReleaseConfig,
        *,
        client: httpx.Client | None = None,
        temp_root: Path | None = None,
    ) -> None:
        """Initialise the fetcher; *client* is reused when supplied."""
        self.config = config
        self._client = client
        self.temp_root = temp_root

    # Resolution ------------------------------------------------------
    def latest_release_version(self) -> str:
        """Return the name of the latest published Ghosler release."""
        try:
            response = self._http().get(
                self.config.api_url,
                headers={"Accept": "application/vnd.github+json"},
            )
        except httpx.HTTPError as exc:
            raise ReleaseFetchError(f"Unable to check for the latest version: {exc}") from exc
        if response.status_code != 200:
            raise ReleaseFetchError(
                f"Unable to check for the latest version (HTTP {response.status_code})."
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ReleaseFetchError("Release metadata is not valid JSON.") from exc
        name = payload.get("name") if isinstance(payload, dict) else None
        if not isinstance(name, str) or not name.strip():
            raise ReleaseFetchError("Release metadata does not include a version name.")
        return name.strip()

    def archive_url(self, branch: str) -> str:
        """Return the archive URL for *branch* (``release`` means the latest tag)."""
        branch = branch.strip()
        if not branch:
            raise ReleaseFetchError(
                "Branch name cannot be empty. Can either be `release`, `master` "
                "or the actual branch name."
            )
        if branch == RELEASE_BRANCH:
            return self.config.tag_url.format(version=self.latest_release_version())
        return self.config.branch_url.format(branch=branch)

    # Download --------------------------------------------------------
    def fetch(self, branch: str = RELEASE_BRANCH) -> Path:
        """Download the archive for *branch* into a private temp directory."""
        url = self.archive_url(branch)
        workdir = Path(
            tempfile.mkdtemp(
                prefix="ghoslerctl-fetch-",
                dir=str(self.temp_root) if self.temp_root else None,
            )
        )
        archive = workdir / ARCHIVE_NAME
        LOGGER.debug("Downloading %s to %s", url, archive)
        try:
            with self._http().stream("GET", url) as response:
                if response.status_code == 404:
                    raise ReleaseFetchError(f"Branch '{branch}' not found!")
                if response.status_code != 200:
                    raise ReleaseFetchError(
                        f"Download of '{branch}' failed (HTTP {response.status_code})."
                    )
                with archive.open("wb") as handle:
                    for chunk in response.iter_bytes():
                        handle.write(chunk)
        except httpx.HTTPError as exc:
            shutil.rmtree(workdir, ignore_errors=True)
            raise ReleaseFetchError(f"Download of '{branch}' failed: {exc}") from exc
        except OSError as exc:
            shutil.rmtree(workdir, ignore_errors=True)
            raise ReleaseFetchError(f"Unable to store archive: {exc}") from exc
        except ReleaseFetchError:
            shutil.rmtree(workdir, ignore_errors=True)
            raise
        return archive

    # Extraction ------------------------------------------------------
    def extract(self, archive: Path, target: Path) -> Path:
        """Unpack *archive* so the project files land directly in *target*.

        The temp directory holding *archive* is removed afterwards, whether or
        not extraction succeeded.
        """
        target = Path(target)
        workdir = Path(archive).parent
        try:
            staging = workdir / "extracted"
            _safe_unzip(Path(archive), staging)

            project_dirs = [
                entry
                for entry in staging.iterdir()
                if entry.is_dir() and entry.name.startswith(PROJECT_DIR_PREFIX)
            ]
            if not project_dirs:
                raise ReleaseFetchError("No project directory found after extraction.")
            if len(project_dirs) > 1:
                raise ReleaseFetchError(
                    "Multiple project directories found, unsure which one to use."
                )

            target.mkdir(parents=True, exist_ok=True)
            for entry in project_dirs[0].iterdir():
                shutil.move(str(entry), str(target / entry.name))

            for relative in UNNEEDED_FILES:
                leftover = target / relative
                if leftover.is_dir():
                    shutil.rmtree(leftover)
                elif leftover.exists():
                    leftover.unlink()
        except OSError as exc:
            raise ReleaseFetchError(f"Failed to set up the directory: {exc}") from exc
        finally:
            shutil.rmtree(workdir, ignore_errors=True)
        return target

    # ------------------------------------------------------------------
    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=self.config.timeout,
                follow_redirects=True,
                headers={"User-Agent": f"ghoslerctl/{__version__}"},
            )
        return self._client

    def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            self._client.close()
            self._client = None


def _safe_unzip(archive: Path, destination: Path) -> None:
    """Extract *archive* into *destination*, refusing entries that escape it."""
    destination.mkdir(parents=True, exist_ok=True)
    root = destination.resolve()
    try:
        with zipfile.ZipFile(archive) as bundle:
            for member in bundle.namelist():
                resolved = (root / member).resolve()
                if resolved != root and root not in resolved.parents:
                    raise ReleaseFetchError(f"Archive entry escapes target directory: {member}")
            bundle.extractall(root)
    except zipfile.BadZipFile as exc:
        raise ReleaseFetchError(f"Downloaded archive is corrupt: {exc}") from exc


__all__ = ["RELEASE_BRANCH", "ReleaseFetchError", "ReleaseFetcher"]
