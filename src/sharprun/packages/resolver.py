"""Recursive package dependency resolution and materialization."""

from __future__ import annotations

import asyncio
import io
import json
import logging
import os
import zipfile
from collections import deque
from collections.abc import Sequence
from pathlib import Path, PurePosixPath
from urllib.parse import unquote

from sharprun.config import Settings, get_settings
from sharprun.errors import DownloadError, PackageResolutionError
from sharprun.ids import new_id
from sharprun.packages.models import (
    PackageIdentity,
    PackageRequest,
    ReferenceSet,
    ResolvedPackage,
)
from sharprun.packages.sources import PackageSource, sources_from_settings
from sharprun.packages.versioning import VersionRange

logger = logging.getLogger(__name__)

# Probed in order; the first existing lib/<framework> directory wins.
REFERENCE_FRAMEWORKS = (
    "netstandard2.1",
    "netcoreapp3.1",
    "net5.0",
    "net6.0",
    "netstandard2.0",
    "netstandard1.6",
    "netstandard1.3",
    "netstandard1.0",
)
COMPLETION_MARKER = ".nupkg.metadata"
_SKIPPED_ENTRIES = ("[content_types].xml", "_rels/", "package/")


def extract_package(data: bytes, directory: Path) -> None:
    """Extract a ``.nupkg`` into *directory*, overwriting existing files."""
    directory.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        for info in archive.infolist():
            if info.is_dir() or info.filename.lower().startswith(_SKIPPED_ENTRIES):
                continue
            relative = PurePosixPath(unquote(info.filename))
            if relative.is_absolute() or ".." in relative.parts:
                raise ValueError(f"unsafe path in package: {info.filename}")
            target = directory.joinpath(*relative.parts)
            target.parent.mkdir(parents=True, exist_ok=True)
            # Concurrent extractions of the same package replace whole files.
            scratch = target.with_name(f"{target.name}.{new_id('tmp')}")
            scratch.write_bytes(archive.read(info))
            os.replace(scratch, target)


def package_references(directory: Path) -> list[Path]:
    lib_dir = _child_ignoring_case(directory, "lib")
    if lib_dir is None:
        return []
    for framework in REFERENCE_FRAMEWORKS:
        framework_dir = _child_ignoring_case(lib_dir, framework)
        if framework_dir is None:
            continue
        return sorted(
            (entry for entry in framework_dir.iterdir() if entry.suffix.lower() == ".dll"),
            key=lambda entry: entry.name.lower(),
        )
    return []


def _child_ignoring_case(parent: Path, name: str) -> Path | None:
    if not parent.is_dir():
        return None
    exact = parent / name
    if exact.is_dir():
        return exact
    for entry in sorted(parent.iterdir()):
        if entry.is_dir() and entry.name.lower() == name:
            return entry
    return None


class DependencyResolver:
    """Resolve root package requests into a compiler reference set.

    Packages are handled one at a time in discovery order. Discovery keeps an
    explicit visited set keyed by package identity, so diamonds and cycles are
    walked once.
    """

    def __init__(
        self,
        sources: Sequence[PackageSource],
        *,
        packages_dir: Path,
        framework: str = "netstandard2.1",
        behavior: str = "lowest",
    ) -> None:
        if not sources:
            raise ValueError("DependencyResolver requires at least one package source")
        self._sources = list(sources)
        self._packages_dir = packages_dir
        self._framework = framework
        self._behavior = behavior.strip().lower()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> DependencyResolver:
        settings = settings or get_settings()
        return cls(
            sources_from_settings(settings),
            packages_dir=Path(settings.packages_dir).expanduser(),
            framework=settings.package_target_framework,
            behavior=settings.package_dependency_behavior,
        )

    async def resolve(self, roots: Sequence[PackageRequest]) -> ReferenceSet:
        references = ReferenceSet()
        if not roots:
            return references
        graph = await self.discover(roots)
        selected = self.select_versions(roots, graph)
        logger.info(
            "Resolved %d packages: %s",
            len(selected),
            ", ".join(str(package.identity) for package in selected),
        )
        for package in selected:
            directory = await self.materialize(package)
            references.extend(package_references(directory))
        return references

    async def _query(self, identity: PackageIdentity) -> ResolvedPackage | None:
        for source in self._sources:
            metadata = await source.get_dependency_info(identity, self._framework)
            if metadata is None:
                continue
            # First source that answers is authoritative.
            canonical = PackageIdentity(
                metadata.identity.package_id or identity.package_id, identity.version
            )
            return ResolvedPackage(
                identity=canonical, dependencies=metadata.dependencies, source=source
            )
        return None

    async def discover(
        self, roots: Sequence[PackageRequest]
    ) -> dict[PackageIdentity, ResolvedPackage]:
        discovered: dict[PackageIdentity, ResolvedPackage] = {}
        visited: set[PackageIdentity] = set()
        for root in roots:
            stack = [root.identity]
            while stack:
                identity = stack.pop()
                if identity in visited:
                    continue
                visited.add(identity)
                package = await self._query(identity)
                if package is None:
                    if identity == root.identity:
                        raise PackageResolutionError(
                            f"package {identity} was not found in any configured source"
                        )
                    logger.warning("Dependency %s is unavailable in all sources", identity)
                    continue
                discovered[identity] = package
                for dependency in reversed(package.dependencies):
                    minimum = dependency.version_range.min_version
                    if minimum is None:
                        logger.warning(
                            "Dependency %s %s of %s has no lower bound; skipped",
                            dependency.package_id,
                            dependency.version_range,
                            identity,
                        )
                        continue
                    stack.append(PackageIdentity(dependency.package_id, minimum))
        for root in roots:
            # A root may have been seen earlier as an unavailable dependency.
            if root.identity not in discovered:
                raise PackageResolutionError(
                    f"package {root.identity} was not found in any configured source"
                )
        return discovered

    def _pick(
        self, candidates: list[ResolvedPackage], ranges: list[VersionRange]
    ) -> ResolvedPackage:
        matching = [c for c in candidates if all(r.satisfies(c.version) for r in ranges)]
        if not matching:
            fallback = max(candidates, key=lambda c: c.version)
            logger.warning(
                "No discovered version of %s satisfies %s; using %s",
                fallback.package_id,
                ", ".join(str(r) for r in ranges),
                fallback.version,
            )
            return fallback
        if self._behavior == "highest":
            return max(matching, key=lambda c: c.version)
        return min(matching, key=lambda c: c.version)

    def select_versions(
        self,
        roots: Sequence[PackageRequest],
        graph: dict[PackageIdentity, ResolvedPackage],
    ) -> list[ResolvedPackage]:
        """Pick one version per package id, reachable from the roots."""
        candidates: dict[str, list[ResolvedPackage]] = {}
        for package in graph.values():
            candidates.setdefault(package.package_id.lower(), []).append(package)
        pinned = {root.package_id.lower(): graph[root.identity] for root in roots}

        selection = dict(pinned)
        for _ in range(len(graph) + 2):
            constraints: dict[str, list[VersionRange]] = {}
            for package in selection.values():
                for dependency in package.dependencies:
                    constraints.setdefault(dependency.package_id.lower(), []).append(
                        dependency.version_range
                    )
            proposed = dict(pinned)
            for key, ranges in constraints.items():
                if key in pinned or key not in candidates:
                    continue
                proposed[key] = self._pick(candidates[key], ranges)
            if proposed == selection:
                break
            selection = proposed

        order = {identity: index for index, identity in enumerate(graph)}
        reachable = self._reachable(roots, selection)
        return sorted(reachable, key=lambda package: order[package.identity])

    @staticmethod
    def _reachable(
        roots: Sequence[PackageRequest], selection: dict[str, ResolvedPackage]
    ) -> list[ResolvedPackage]:
        seen: dict[str, ResolvedPackage] = {}
        queue = deque(root.package_id.lower() for root in roots)
        while queue:
            key = queue.popleft()
            if key in seen or key not in selection:
                continue
            package = selection[key]
            seen[key] = package
            queue.extend(dependency.package_id.lower() for dependency in package.dependencies)
        return list(seen.values())

    def package_directory(self, identity: PackageIdentity) -> Path:
        return (
            self._packages_dir
            / identity.package_id.lower()
            / identity.version.normalized().lower()
        )

    async def materialize(self, package: ResolvedPackage) -> Path:
        directory = self.package_directory(package.identity)
        if (directory / COMPLETION_MARKER).is_file():
            logger.debug("Using cached %s at %s", package.identity, directory)
            package.directory = directory
            return directory
        # Download from the source that answered discovery; it holds the package.
        source = package.source
        data = await source.download(package.identity)
        try:
            await asyncio.to_thread(extract_package, data, directory)
            marker = {"version": 2, "source": source.name}
            (directory / COMPLETION_MARKER).write_text(json.dumps(marker))
        except (OSError, ValueError, zipfile.BadZipFile) as exc:
            raise DownloadError(
                f"extracting {package.identity} into {directory} failed: {exc}",
                retryable=False,
            ) from exc
        logger.info("Extracted %s from %s", package.identity, source.name)
        package.directory = directory
        return directory
