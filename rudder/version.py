"""Semantic versions and version constraints.

Versions follow SemVer 2.0 precedence. A leading `v` and missing minor or
patch components are accepted (`v1.2` parses as `1.2.0`).

Constraints are a `||` separated list of alternatives, each a comma or space
separated conjunction of comparators:

    >=1.2.0, <2.0.0
    ~1.2.3          >=1.2.3, <1.3.0
    ^0.2.3          >=0.2.3, <0.3.0
    1.2.x           >=1.2.0, <1.3.0
    1.2 - 1.4.5     >=1.2.0, <=1.4.5
    >0.0.0-0        any version including pre-releases

Missing components act as wildcards, so `<=1.2` admits every `1.2.*` release.

A pre-release version only satisfies an alternative in which some comparator
itself names a pre-release, unless pre-releases are requested explicitly.
"""

from dataclasses import dataclass, field
import functools
import logging
import re
from collections.abc import Iterable

from .exceptions import InputException

__all__ = [
    "Version",
    "Constraint",
    "highest_satisfying",
    "semver_compare",
]

_LOGGER = logging.getLogger(__name__)

_VERSION_RE = re.compile(
    r"^v?(?P<major>0|[1-9]\d*)"
    r"(?:\.(?P<minor>0|[1-9]\d*))?"
    r"(?:\.(?P<patch>0|[1-9]\d*))?"
    r"(?:-(?P<pre>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+(?P<build>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)
_PARTIAL_RE = re.compile(
    r"^v?(?P<major>\d+|[xX*])"
    r"(?:\.(?P<minor>\d+|[xX*]))?"
    r"(?:\.(?P<patch>\d+|[xX*]))?"
    r"(?:-(?P<pre>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+(?P<build>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)
_OPERATOR_RE = re.compile(r"^(?P<op>>=|<=|!=|==|=|>|<|~>|~|\^)?(?P<version>.*)$")
_WILDCARDS = {"x", "X", "*"}


def _parse_prerelease(text: str | None) -> tuple[int | str, ...]:
    if not text:
        return ()
    return tuple(int(part) if part.isdigit() else part for part in text.split("."))


@functools.total_ordering
@dataclass(frozen=True)
class Version:
    """A parsed semantic version."""

    major: int
    minor: int = 0
    patch: int = 0
    prerelease: tuple[int | str, ...] = ()
    build: str = field(default="", compare=False)

    @classmethod
    def parse(cls, text: str) -> "Version":
        """Parse a version string, raising InputException if it is invalid."""
        if not (match := _VERSION_RE.match(text.strip())):
            raise InputException(f"Invalid semantic version '{text}'")
        return cls(
            major=int(match["major"]),
            minor=int(match["minor"] or 0),
            patch=int(match["patch"] or 0),
            prerelease=_parse_prerelease(match["pre"]),
            build=match["build"] or "",
        )

    @property
    def is_prerelease(self) -> bool:
        return bool(self.prerelease)

    @property
    def _key(self) -> tuple:
        # A release sorts above all of its pre-releases, and numeric identifiers
        # sort below alphanumeric ones.
        pre = tuple(
            (0, part, "") if isinstance(part, int) else (1, 0, part)
            for part in self.prerelease
        )
        return (self.major, self.minor, self.patch, 0 if self.prerelease else 1, pre)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._key < other._key

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._key == other._key

    def __hash__(self) -> int:
        return hash(self._key)

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            text += "-" + ".".join(str(part) for part in self.prerelease)
        if self.build:
            text += "+" + self.build
        return text


_FLOOR = (0,)


def _floor(major: int, minor: int = 0, patch: int = 0) -> Version:
    """Lowest possible version, below any pre-release of major.minor.patch."""
    return Version(major, minor, patch, prerelease=_FLOOR)


@dataclass(frozen=True)
class _Comparator:
    """A primitive comparison against a single bound."""

    op: str
    version: Version

    def matches(self, version: Version) -> bool:
        if self.op == "==":
            return version == self.version
        if self.op == "!=":
            return version != self.version
        if self.op == ">":
            return version > self.version
        if self.op == ">=":
            return version >= self.version
        if self.op == "<":
            return version < self.version
        if self.op == "<=":
            return version <= self.version
        raise ValueError(f"Unknown comparator {self.op}")


@dataclass(frozen=True)
class _Range:
    """A version interval; `exclude` inverts it for `!=` on partial versions."""

    lower: _Comparator | None = None
    upper: _Comparator | None = None
    exclude: bool = False

    def matches(self, version: Version) -> bool:
        inside = (self.lower is None or self.lower.matches(version)) and (
            self.upper is None or self.upper.matches(version)
        )
        return not inside if self.exclude else inside


@dataclass(frozen=True)
class _Partial:
    """A version with optionally missing or wildcard components."""

    parts: tuple[int, ...]
    prerelease: tuple[int | str, ...] = ()

    @classmethod
    def parse(cls, text: str) -> "_Partial":
        if not (match := _PARTIAL_RE.match(text)):
            raise InputException(f"Invalid version '{text}' in constraint")
        parts: list[int] = []
        for name in ("major", "minor", "patch"):
            value = match[name]
            if value is None or value in _WILDCARDS:
                break
            parts.append(int(value))
        prerelease = _parse_prerelease(match["pre"])
        if prerelease and len(parts) < 3:
            raise InputException(f"Pre-release requires a full version in '{text}'")
        return cls(tuple(parts), prerelease)

    @property
    def complete(self) -> bool:
        return len(self.parts) == 3

    def version(self) -> Version:
        padded = self.parts + (0,) * (3 - len(self.parts))
        return Version(*padded, prerelease=self.prerelease)

    def next_floor(self) -> Version:
        """Lowest version above every version this partial covers."""
        if not self.parts:
            raise ValueError("A full wildcard has no upper bound")
        if len(self.parts) == 1:
            return _floor(self.parts[0] + 1)
        if len(self.parts) == 2:
            return _floor(self.parts[0], self.parts[1] + 1)
        return _floor(self.parts[0], self.parts[1], self.parts[2] + 1)


def _range_for(op: str, partial: _Partial) -> _Range:
    """Translate one operator and partial version into an interval."""
    if not partial.parts:
        # `*`, `x` and friends match anything, except `!=*` which matches nothing
        return _Range(exclude=op == "!=")
    low = partial.version()
    if partial.complete:
        if op in ("", "=", "=="):
            return _Range(lower=_Comparator("==", low))
        if op == "!=":
            return _Range(lower=_Comparator("!=", low))
        if op in (">", ">=", "<", "<="):
            comparator = _Comparator(op, low)
            if op.startswith(">"):
                return _Range(lower=comparator)
            return _Range(upper=comparator)
    else:
        low = _floor(*partial.parts)
        high = partial.next_floor()
        if op in ("", "=", "=="):
            return _Range(_Comparator(">=", low), _Comparator("<", high))
        if op == "!=":
            return _Range(_Comparator(">=", low), _Comparator("<", high), exclude=True)
        if op == ">":
            return _Range(lower=_Comparator(">=", high))
        if op == ">=":
            return _Range(lower=_Comparator(">=", low))
        if op == "<":
            return _Range(upper=_Comparator("<", low))
        if op == "<=":
            return _Range(upper=_Comparator("<", high))
    base = partial.version()
    major, minor, patch = base.major, base.minor, base.patch
    if op in ("~", "~>"):
        if len(partial.parts) == 1:
            high = _floor(major + 1)
        else:
            high = _floor(major, minor + 1)
        return _Range(_Comparator(">=", low), _Comparator("<", high))
    if op == "^":
        if major > 0 or len(partial.parts) == 1:
            high = _floor(major + 1)
        elif minor > 0 or len(partial.parts) == 2:
            high = _floor(0, minor + 1)
        else:
            high = _floor(0, 0, patch + 1)
        return _Range(_Comparator(">=", low), _Comparator("<", high))
    raise InputException(f"Unsupported constraint operator '{op}'")


_HYPHEN_RE = re.compile(r"(?P<low>\S+)\s+-\s+(?P<high>\S+)")
_OP_SPACE_RE = re.compile(r"(>=|<=|!=|==|~>|=|>|<|~|\^)\s+")


@dataclass(frozen=True)
class _Alternative:
    ranges: tuple[_Range, ...]
    allows_prerelease: bool

    def matches(self, version: Version, include_prereleases: bool) -> bool:
        if version.is_prerelease and not (self.allows_prerelease or include_prereleases):
            return False
        return all(r.matches(version) for r in self.ranges)


def _parse_alternative(text: str) -> _Alternative:
    text = _HYPHEN_RE.sub(r">=\g<low> <=\g<high>", text.strip())
    text = _OP_SPACE_RE.sub(r"\1", text)
    ranges: list[_Range] = []
    allows_prerelease = False
    for token in filter(None, re.split(r"[,\s]+", text)):
        if not (match := _OPERATOR_RE.match(token)) or not match["version"]:
            raise InputException(f"Invalid version constraint '{token}'")
        partial = _Partial.parse(match["version"])
        allows_prerelease = allows_prerelease or bool(partial.prerelease)
        ranges.append(_range_for(match["op"] or "", partial))
    return _Alternative(tuple(ranges), allows_prerelease)


@dataclass(frozen=True)
class Constraint:
    """A parsed version constraint such as `>=1.2.0 <2.0.0 || ^3`."""

    text: str
    alternatives: tuple[_Alternative, ...] = field(repr=False, compare=False)

    @classmethod
    def parse(cls, text: str | None) -> "Constraint":
        """Parse a constraint, an empty constraint matches any release."""
        raw = (text or "").strip()
        if not raw:
            return cls(text="", alternatives=(_Alternative((), False),))
        alternatives = tuple(_parse_alternative(alt) for alt in raw.split("||"))
        return cls(text=raw, alternatives=alternatives)

    @property
    def allows_prerelease(self) -> bool:
        return any(alt.allows_prerelease for alt in self.alternatives)

    def check(self, version: Version, include_prereleases: bool = False) -> bool:
        """Return True if the version satisfies the constraint."""
        return any(
            alt.matches(version, include_prereleases) for alt in self.alternatives
        )

    def __str__(self) -> str:
        return self.text or "*"


def highest_satisfying(
    versions: Iterable[str],
    constraint: Constraint,
    include_prereleases: bool = False,
) -> str | None:
    """Return the highest version string satisfying the constraint.

    Version strings that are not valid semantic versions are ignored.
    """
    best: tuple[Version, str] | None = None
    for text in versions:
        try:
            version = Version.parse(text)
        except InputException:
            _LOGGER.debug("Ignoring invalid version '%s'", text)
            continue
        if not constraint.check(version, include_prereleases):
            continue
        if best is None or version > best[0]:
            best = (version, text)
    return best[1] if best else None


def semver_compare(constraint: str, version: str) -> bool:
    """Return True if the version satisfies the constraint string."""
    return Constraint.parse(constraint).check(Version.parse(version))
