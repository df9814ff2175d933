"""Semantic-version selection of plan revisions.

Versions are parsed with the semver library. A leading "v" is tolerated and
minor/patch may be omitted ("v1", "2.1"), matching how revisions are tagged in
the wild. Strings are returned as they were given, never normalised.
"""

from __future__ import annotations

from collections.abc import Iterable

import semver

from .models import PlanRevision


class VersionParseError(ValueError):
    """Raised when a version string is not valid semantic versioning."""

    pass


def parse_version(version: str) -> semver.Version:
    """Parse a version string.

    Raises:
        VersionParseError: If the string is not a semantic version.
    """
    text = version.strip()
    if text[:1] in ("v", "V"):
        text = text[1:]
    try:
        return semver.Version.parse(text, optional_minor_and_patch=True)
    except (ValueError, TypeError) as e:
        raise VersionParseError(f"Invalid semantic version: {version!r}") from e


def sort_versions(versions: Iterable[str]) -> list[str]:
    """Sort versions in ascending semantic order.

    Raises:
        VersionParseError: If any version fails to parse; nothing is returned.
    """
    parsed = [(parse_version(v), v) for v in versions]
    parsed.sort(key=lambda item: item[0])
    return [original for _, original in parsed]


def latest_version(versions: Iterable[str]) -> str:
    """Return the highest version.

    Raises:
        VersionParseError: If any version fails to parse, or there are none.
    """
    ordered = sort_versions(versions)
    if not ordered:
        raise VersionParseError("No versions to select from")
    return ordered[-1]


def latest_revision(revisions: Iterable[PlanRevision]) -> PlanRevision:
    """Return the revision carrying the highest version.

    Raises:
        VersionParseError: If any revision version fails to parse.
    """
    revisions = list(revisions)
    latest = latest_version(r.version for r in revisions)
    # Last match wins when a version is listed twice
    return [r for r in revisions if r.version == latest][-1]


def version_less_than(version: str, other: str) -> bool:
    """True when version sorts strictly before other."""
    return parse_version(version) < parse_version(other)


def next_patch_version(version: str) -> str:
    """Return the version with its patch number incremented, without a "v" prefix."""
    return str(parse_version(version).bump_patch())
