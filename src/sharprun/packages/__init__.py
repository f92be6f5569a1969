"""Package resolution: NuGet sources, versions and the dependency resolver."""

from sharprun.packages.models import (
    PackageDependency,
    PackageIdentity,
    PackageMetadata,
    PackageRequest,
    ReferenceSet,
    ResolvedPackage,
)
from sharprun.packages.resolver import DependencyResolver
from sharprun.packages.sources import LocalFolderSource, NuGetV3Source, PackageSource
from sharprun.packages.versioning import NuGetVersion, VersionRange

__all__ = [
    "DependencyResolver",
    "LocalFolderSource",
    "NuGetV3Source",
    "NuGetVersion",
    "PackageDependency",
    "PackageIdentity",
    "PackageMetadata",
    "PackageRequest",
    "PackageSource",
    "ReferenceSet",
    "ResolvedPackage",
    "VersionRange",
]
