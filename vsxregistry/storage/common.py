"""Version ordering and target platform rules shared by the storage backends.

Both ``PostgresStore`` and ``MemoryStore`` resolve "latest" through the
same ordering rule. The SQL fragments and the Python sort keys below are
two renditions of one rule and must stay in lockstep:

1. semver major, minor, patch descending
2. semver pre-release flag ascending (stable first)
3. universal target platform first, then platform name ascending
4. publish timestamp descending, missing timestamps last
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from functools import total_ordering
from typing import TYPE_CHECKING, Optional, Tuple

if TYPE_CHECKING:
    from vsxregistry.storage.models import ExtensionVersion


# ============================================================================
# TARGET PLATFORMS & VERSION ALIASES
# ============================================================================

UNIVERSAL = "universal"

TARGET_PLATFORM_NAMES = (
    "win32-x64",
    "win32-ia32",
    "win32-arm64",
    "linux-x64",
    "linux-arm64",
    "linux-armhf",
    "alpine-x64",
    "alpine-arm64",
    "darwin-x64",
    "darwin-arm64",
    "web",
    UNIVERSAL,
)

LATEST = "latest"
PRE_RELEASE = "pre-release"
VERSION_ALIASES = (LATEST, PRE_RELEASE)


def is_valid_target_platform(target_platform: Optional[str]) -> bool:
    return target_platform is not None and target_platform in TARGET_PLATFORM_NAMES


def is_universal(target_platform: Optional[str]) -> bool:
    return target_platform is None or target_platform == UNIVERSAL


def is_version_alias(version: Optional[str]) -> bool:
    return version in VERSION_ALIASES


def sql_upper(value: str) -> str:
    """Uppercase one character at a time the way PostgreSQL UPPER() does.

    Characters whose uppercase form is longer than one character (such as
    "ß" -> "SS") are left unchanged.
    """
    return "".join(c.upper() if len(c.upper()) == 1 else c for c in value)


# ============================================================================
# SEMANTIC VERSIONS
# ============================================================================

_SEMVER_RE = re.compile(
    r"^(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<pre>(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)"
    r"(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+(?P<build>[0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)


@total_ordering
@dataclass(frozen=True)
class SemanticVersion:
    """Parsed ``major.minor.patch[-pre][+build]`` version.

    Comparison follows semver precedence: build metadata is ignored and a
    pre-release sorts below the release with the same numeric triple.
    """

    major: int
    minor: int
    patch: int
    pre_release: Optional[str] = None
    build_metadata: Optional[str] = None

    @classmethod
    def parse(cls, raw: str) -> "SemanticVersion":
        match = _SEMVER_RE.match(raw or "")
        if not match:
            raise ValueError(f"Invalid semantic version: {raw}")
        return cls(
            major=int(match.group("major")),
            minor=int(match.group("minor")),
            patch=int(match.group("patch")),
            pre_release=match.group("pre"),
            build_metadata=match.group("build"),
        )

    @property
    def is_pre_release(self) -> bool:
        return self.pre_release is not None

    def _pre_release_key(self) -> Tuple:
        if self.pre_release is None:
            # A release outranks every pre-release of the same triple
            return (1,)
        parts = []
        for ident in self.pre_release.split("."):
            if ident.isdigit():
                parts.append((0, int(ident), ""))
            else:
                parts.append((1, 0, ident))
        return (0, tuple(parts))

    def _key(self) -> Tuple:
        return (self.major, self.minor, self.patch, self._pre_release_key())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SemanticVersion):
            return NotImplemented
        return self._key() == other._key()

    def __lt__(self, other: "SemanticVersion") -> bool:
        if not isinstance(other, SemanticVersion):
            return NotImplemented
        return self._key() < other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.pre_release:
            text += f"-{self.pre_release}"
        if self.build_metadata:
            text += f"+{self.build_metadata}"
        return text


def parse_semver(raw: str) -> SemanticVersion:
    return SemanticVersion.parse(raw)


# ============================================================================
# ORDERING RULE
# ============================================================================

def latest_order_sql(alias: str = "ev") -> str:
    """ORDER BY body resolving the newest row of a version set."""
    return ", ".join(
        [
            f"{alias}.semver_major DESC",
            f"{alias}.semver_minor DESC",
            f"{alias}.semver_patch DESC",
            f"{alias}.semver_is_pre_release ASC",
            f"{alias}.universal_target_platform DESC",
            f"{alias}.target_platform ASC",
            f"{alias}.timestamp DESC NULLS LAST",
        ]
    )


def version_string_order_sql(alias: str = "ev") -> str:
    """ORDER BY body for distinct version string listings."""
    return ", ".join(
        [
            f"{alias}.semver_major DESC",
            f"{alias}.semver_minor DESC",
            f"{alias}.semver_patch DESC",
            f"{alias}.semver_is_pre_release ASC",
            f"{alias}.version ASC",
        ]
    )


def _ts_desc(value: Optional[datetime]) -> float:
    if value is None:
        return float("inf")
    return -value.timestamp()


def latest_sort_key(version: "ExtensionVersion") -> Tuple:
    """Python rendition of :func:`latest_order_sql`."""
    return (
        -(version.semver_major or 0),
        -(version.semver_minor or 0),
        -(version.semver_patch or 0),
        bool(version.semver_is_pre_release),
        not version.universal_target_platform,
        version.target_platform or "",
        _ts_desc(version.timestamp),
    )


def version_string_sort_key(version: "ExtensionVersion") -> Tuple:
    """Python rendition of :func:`version_string_order_sql`."""
    return (
        -(version.semver_major or 0),
        -(version.semver_minor or 0),
        -(version.semver_patch or 0),
        bool(version.semver_is_pre_release),
        version.version,
    )


def collapsed_sort_key(version: "ExtensionVersion") -> Tuple:
    """Ordering used by the collapsed listing: group key first, newest wins."""
    ext_id = version.extension.id if version.extension else 0
    return (
        ext_id,
        not version.universal_target_platform,
        version.target_platform or "",
        *latest_sort_key(version)[:4],
        _ts_desc(version.timestamp),
    )


def all_versions_sort_key(version: "ExtensionVersion") -> Tuple:
    ext_id = version.extension.id if version.extension else 0
    return (ext_id, *latest_sort_key(version))


def collapse_key(version: "ExtensionVersion") -> Tuple:
    """DISTINCT ON key of the collapsed listing: one row per extension platform."""
    ext_id = version.extension.id if version.extension else 0
    return (ext_id, version.universal_target_platform, version.target_platform)
