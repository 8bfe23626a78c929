"""ghoslerctl package bootstrap.

This module exposes lightweight metadata that other modules (and packaging
machinery) rely upon. The CLI version doubles as the gate for configuration
migrations, so it must track ``pyproject.toml``.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# NOTE: The version is duplicated in ``pyproject.toml`` and managed by Hatch.
__version__ = "1.0.90"


def get_version() -> str:
    """Return the current package version."""
    return __version__
