"""Version comparison helpers.

Versions are compared in their *comparable* form: the separators are removed
and the remaining digits parsed as one integer (``1.0.84`` becomes ``1084``).
This matches the ordering Ghosler releases and ghoslerctl migrations have
always been gated on. It is only reliable while components keep the same
width; ``1.9.0`` vs ``1.10.0`` collapses to ``190`` vs ``1100``.
"""
from __future__ import annotations

from packaging.version import InvalidVersion, Version


class VersionError(ValueError):
    """Raised when a version string cannot be interpreted."""


def normalise(version: str) -> str:
    """Return *version* stripped of whitespace and a leading ``v``."""
    normalised = str(version).strip()
    if normalised[:1] in {"v", "V"}:
        normalised = normalised[1:]
    if not normalised:
        raise VersionError("Version identifier must be a non-empty string.")
    try:
        parsed = Version(normalised)
    except InvalidVersion as exc:
        raise VersionError(f"Invalid version identifier: {version!r}.") from exc
    if parsed.pre or parsed.post or parsed.dev or parsed.local or parsed.epoch:
        raise VersionError(f"Only plain release versions are supported: {version!r}.")
    return normalised


def to_comparable(version: str) -> int:
    """Return the integer form of *version* used for ordering."""
    return int(normalise(version).replace(".", ""))


def is_at_least(version: str, minimum: str) -> bool:
    """Return True when *version* is the same as or later than *minimum*."""
    return to_comparable(version) >= to_comparable(minimum)


def is_newer(candidate: str, installed: str) -> bool:
    """Return True when *candidate* is strictly later than *installed*."""
    return to_comparable(candidate) > to_comparable(installed)


__all__ = ["VersionError", "is_at_least", "is_newer", "normalise", "to_comparable"]
