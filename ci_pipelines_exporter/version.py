"""GitLab server version handling."""

from __future__ import annotations

import re
from dataclasses import dataclass

_SEMVER = re.compile(
    r"^v(0|[1-9]\d*)"
    r"(?:\.(0|[1-9]\d*)"
    r"(?:\.(0|[1-9]\d*)"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?"
    r")?)?$"
)

_KEYSET_PAGINATION_MIN_VERSION = "v15.9.0"


def _prerelease_key(prerelease: str | None) -> tuple:
    # A release sorts after any of its pre-releases.
    if prerelease is None:
        return (1,)
    identifiers = tuple(
        (0, int(part), "") if part.isdigit() else (1, 0, part)
        for part in prerelease.split(".")
    )
    return (0, identifiers)


def _semver_key(version: str) -> tuple | None:
    match = _SEMVER.match(version)
    if match is None:
        return None
    major, minor, patch, prerelease = match.groups()
    return (
        int(major),
        int(minor or 0),
        int(patch or 0),
        _prerelease_key(prerelease),
    )


def _compare(left: str, right: str) -> int:
    """Compare two semantic versions; invalid versions sort before valid ones."""
    left_key, right_key = _semver_key(left), _semver_key(right)
    if left_key is None and right_key is None:
        return 0
    if left_key is None:
        return -1
    if right_key is None:
        return 1
    return (left_key > right_key) - (left_key < right_key)


@dataclass(frozen=True)
class GitLabVersion:
    """Version of the GitLab instance, normalised with a leading "v"."""

    version: str = ""

    @classmethod
    def parse(cls, version: str) -> GitLabVersion:
        if version.startswith("v"):
            return cls(version)
        if version:
            return cls("v" + version)
        return cls("")

    def pipeline_jobs_keyset_pagination_supported(self) -> bool:
        """True when the instance runs GitLab 15.9 or later."""
        if not self.version:
            return False
        return _compare(self.version, _KEYSET_PAGINATION_MIN_VERSION) >= 0