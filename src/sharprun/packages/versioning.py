"""NuGet version numbers and version ranges."""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import total_ordering

_VERSION_PATTERN = re.compile(
    r"^\s*v?(?P<numbers>\d+(?:\.\d+){0,3})"
    r"(?:-(?P<release>[0-9A-Za-z\-]+(?:\.[0-9A-Za-z\-]+)*))?"
    r"(?:\+(?P<metadata>[0-9A-Za-z\-.]+))?\s*$"
)


def _label_key(label: str) -> tuple[tuple[int, int | str], ...]:
    # SemVer 2 precedence: numeric identifiers sort before alphanumeric ones.
    parts: list[tuple[int, int | str]] = []
    for part in label.split("."):
        if part.isdigit():
            parts.append((0, int(part)))
        else:
            parts.append((1, part.lower()))
    return tuple(parts)


@total_ordering
@dataclass(frozen=True, slots=True)
class NuGetVersion:
    major: int
    minor: int = 0
    patch: int = 0
    revision: int = 0
    release: str = ""

    @classmethod
    def parse(cls, raw: str) -> NuGetVersion:
        match = _VERSION_PATTERN.match(raw)
        if match is None:
            raise ValueError(f"invalid version: {raw!r}")
        numbers = [int(part) for part in match.group("numbers").split(".")]
        numbers.extend([0] * (4 - len(numbers)))
        return cls(*numbers, release=match.group("release") or "")

    @property
    def is_prerelease(self) -> bool:
        return bool(self.release)

    def _key(self) -> tuple[object, ...]:
        # A release version sorts after every prerelease of the same numbers.
        label = (1,) if not self.release else (0, _label_key(self.release))
        return (self.major, self.minor, self.patch, self.revision, label)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, NuGetVersion):
            return NotImplemented
        return self._key() < other._key()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, NuGetVersion):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def normalized(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.revision:
            text += f".{self.revision}"
        if self.release:
            text += f"-{self.release}"
        return text

    def __str__(self) -> str:
        return self.normalized()


@dataclass(frozen=True, slots=True)
class VersionRange:
    min_version: NuGetVersion | None = None
    max_version: NuGetVersion | None = None
    include_min: bool = True
    include_max: bool = False

    @classmethod
    def parse(cls, raw: str) -> VersionRange:
        """Parse NuGet range notation.

        ``1.0`` means ``>= 1.0``; ``[1.0]`` is an exact pin; bracketed forms
        such as ``[1.0,2.0)`` or ``(,2.0]`` carry explicit bounds. An empty
        string or ``*`` accepts any version.
        """
        text = raw.strip()
        if not text or text == "*":
            return cls()
        if text[0] not in "[(":
            return cls(min_version=_parse_floating(text), include_min=True)
        if len(text) < 3 or text[-1] not in "])":
            raise ValueError(f"invalid version range: {raw!r}")
        include_min = text[0] == "["
        include_max = text[-1] == "]"
        body = text[1:-1]
        if "," not in body:
            if not (include_min and include_max):
                raise ValueError(f"invalid version range: {raw!r}")
            exact = NuGetVersion.parse(body)
            return cls(exact, exact, True, True)
        low, high = (part.strip() for part in body.split(",", 1))
        return cls(
            min_version=NuGetVersion.parse(low) if low else None,
            max_version=NuGetVersion.parse(high) if high else None,
            include_min=include_min,
            include_max=include_max,
        )

    @classmethod
    def exact(cls, version: NuGetVersion) -> VersionRange:
        return cls(version, version, True, True)

    def satisfies(self, version: NuGetVersion) -> bool:
        if self.min_version is not None:
            if version < self.min_version:
                return False
            if version == self.min_version and not self.include_min:
                return False
        if self.max_version is not None:
            if version > self.max_version:
                return False
            if version == self.max_version and not self.include_max:
                return False
        return True

    def __str__(self) -> str:
        if self.min_version is not None and self.max_version is None and self.include_min:
            return str(self.min_version)
        if self.min_version is not None and self.min_version == self.max_version:
            return f"[{self.min_version}]"
        low = str(self.min_version) if self.min_version is not None else ""
        high = str(self.max_version) if self.max_version is not None else ""
        opening = "[" if self.include_min else "("
        closing = "]" if self.include_max else ")"
        return f"{opening}{low}, {high}{closing}"


def _parse_floating(text: str) -> NuGetVersion:
    if text.endswith("*"):
        text = text.rstrip("*").rstrip(".") or "0"
    return NuGetVersion.parse(text)
