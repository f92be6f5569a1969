"""Package request, identity and resolution records."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from sharprun.packages.versioning import NuGetVersion, VersionRange

if TYPE_CHECKING:
    from sharprun.packages.sources import PackageSource


@dataclass(frozen=True, slots=True)
class PackageIdentity:
    package_id: str
    version: NuGetVersion

    @property
    def key(self) -> tuple[str, NuGetVersion]:
        return (self.package_id.lower(), self.version)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PackageIdentity):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def __str__(self) -> str:
        return f"{self.package_id} {self.version}"


@dataclass(frozen=True, slots=True)
class PackageRequest:
    package_id: str
    version: NuGetVersion

    @classmethod
    def parse(cls, raw: str) -> PackageRequest:
        """Parse ``Id==1.2.3``, ``Id@1.2.3`` or ``Id/1.2.3``."""
        for separator in ("==", "@", "/"):
            if separator in raw:
                package_id, version = raw.split(separator, 1)
                if package_id.strip() and version.strip():
                    return cls(package_id.strip(), NuGetVersion.parse(version))
        raise ValueError(f"package reference must look like Id==Version: {raw!r}")

    @property
    def identity(self) -> PackageIdentity:
        return PackageIdentity(self.package_id, self.version)


@dataclass(frozen=True, slots=True)
class PackageDependency:
    package_id: str
    version_range: VersionRange


@dataclass(frozen=True, slots=True)
class PackageMetadata:
    """Dependency information one source reports for one package identity."""

    identity: PackageIdentity
    dependencies: tuple[PackageDependency, ...] = ()


@dataclass(slots=True)
class ResolvedPackage:
    identity: PackageIdentity
    dependencies: tuple[PackageDependency, ...]
    source: PackageSource
    directory: Path | None = None

    @property
    def package_id(self) -> str:
        return self.identity.package_id

    @property
    def version(self) -> NuGetVersion:
        return self.identity.version


@dataclass(slots=True)
class ReferenceSet:
    """Ordered, duplicate-free artifact paths handed to the compiler."""

    paths: list[Path] = field(default_factory=list)

    def add(self, path: Path) -> bool:
        if path in self.paths:
            return False
        self.paths.append(path)
        return True

    def extend(self, paths: Iterable[Path]) -> None:
        for path in paths:
            self.add(path)

    def __iter__(self) -> Iterator[Path]:
        return iter(self.paths)

    def __len__(self) -> int:
        return len(self.paths)

    def __contains__(self, path: object) -> bool:
        return path in self.paths
