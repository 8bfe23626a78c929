"""Provider interfaces for ghoslerctl."""
from __future__ import annotations

from .npm import DependencyInstaller, DependencyInstallError
from .pm2 import Pm2Error, Pm2Process, Pm2Provider
from .release_fetcher import RELEASE_BRANCH, ReleaseFetcher, ReleaseFetchError

__all__ = [
    "DependencyInstallError",
    "DependencyInstaller",
    "Pm2Error",
    "Pm2Process",
    "Pm2Provider",
    "RELEASE_BRANCH",
    "ReleaseFetchError",
    "ReleaseFetcher",
]
