"""Package source capability: NuGet v3 feeds and local folder feeds."""

from __future__ import annotations

import io
import logging
import re
import zipfile
from pathlib import Path
from typing import Any, Protocol
from xml.etree import ElementTree

import httpx

from sharprun.config import Settings, get_settings, package_source_list
from sharprun.errors import ConfigError, DownloadError
from sharprun.packages.models import PackageDependency, PackageIdentity, PackageMetadata
from sharprun.packages.versioning import NuGetVersion, VersionRange

logger = logging.getLogger(__name__)

PACKAGE_BASE_ADDRESS = "PackageBaseAddress/3.0.0"

_NETSTANDARD = [
    "netstandard2.1",
    "netstandard2.0",
    "netstandard1.6",
    "netstandard1.5",
    "netstandard1.4",
    "netstandard1.3",
    "netstandard1.2",
    "netstandard1.1",
    "netstandard1.0",
]
_NETCOREAPP = [
    "netcoreapp3.1",
    "netcoreapp3.0",
    "netcoreapp2.2",
    "netcoreapp2.1",
    "netcoreapp2.0",
    "netcoreapp1.1",
    "netcoreapp1.0",
]
_LONG_NAMES = {
    ".netstandard": "netstandard",
    ".netcoreapp": "netcoreapp",
    "netstandard": "netstandard",
    "netcoreapp": "netcoreapp",
}
_SHORT_FRAMEWORK = re.compile(r"^net(?P<major>\d+)\.(?P<minor>\d+)$")


class PackageSource(Protocol):
    name: str
    is_local: bool

    async def get_dependency_info(
        self, identity: PackageIdentity, framework: str
    ) -> PackageMetadata | None: ...

    async def download(self, identity: PackageIdentity) -> bytes: ...


def normalize_framework(raw: str) -> str:
    """Map nuspec framework names (``.NETStandard2.0``) to folder names."""
    text = raw.strip().lower()
    for long_name, short_name in _LONG_NAMES.items():
        if text.startswith(long_name):
            rest = text[len(long_name):].lstrip("v")
            if rest and "." not in rest and rest.isdigit():
                rest = ".".join(rest)
            return f"{short_name}{rest}"
    if text.startswith(".netframework"):
        return "net" + text[len(".netframework"):].lstrip("v").replace(".", "")
    if text.startswith("net") and not text.startswith(("netstandard", "netcoreapp")):
        return text.split("-", 1)[0]
    return text


def compatible_frameworks(target: str) -> list[str]:
    """Frameworks whose assets *target* can consume, most specific first."""
    target = normalize_framework(target)
    if target in _NETSTANDARD:
        return _NETSTANDARD[_NETSTANDARD.index(target):]
    if target in _NETCOREAPP:
        ceiling = "netstandard2.1" if target.startswith("netcoreapp3") else "netstandard2.0"
        return _NETCOREAPP[_NETCOREAPP.index(target):] + _NETSTANDARD[
            _NETSTANDARD.index(ceiling):
        ]
    match = _SHORT_FRAMEWORK.match(target)
    if match and int(match.group("major")) >= 5:
        majors = range(int(match.group("major")), 4, -1)
        return [f"net{major}.0" for major in majors] + _NETCOREAPP + _NETSTANDARD
    return [target]


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _children(element: ElementTree.Element, name: str) -> list[ElementTree.Element]:
    return [child for child in element if _local_name(child.tag) == name]


def _dependency(element: ElementTree.Element) -> PackageDependency | None:
    package_id = (element.get("id") or "").strip()
    if not package_id:
        return None
    try:
        version_range = VersionRange.parse(element.get("version") or "")
    except ValueError:
        logger.warning("Ignoring unparseable range %r for %s", element.get("version"), package_id)
        return None
    return PackageDependency(package_id, version_range)


def parse_nuspec(content: str | bytes, framework: str) -> PackageMetadata:
    root = ElementTree.fromstring(content)
    metadata = next((el for el in root if _local_name(el.tag) == "metadata"), None)
    if metadata is None:
        raise ValueError("nuspec has no metadata element")
    fields = {_local_name(child.tag): (child.text or "").strip() for child in metadata}
    identity = PackageIdentity(fields.get("id", ""), NuGetVersion.parse(fields.get("version", "")))

    dependencies: list[PackageDependency] = []
    for deps in _children(metadata, "dependencies"):
        groups = _children(deps, "group")
        if not groups:
            dependencies.extend(d for d in map(_dependency, _children(deps, "dependency")) if d)
            continue
        chosen = _select_group(groups, framework)
        if chosen is not None:
            dependencies.extend(d for d in map(_dependency, _children(chosen, "dependency")) if d)
    return PackageMetadata(identity=identity, dependencies=tuple(dependencies))


def _select_group(
    groups: list[ElementTree.Element], framework: str
) -> ElementTree.Element | None:
    by_framework: dict[str, ElementTree.Element] = {}
    agnostic: ElementTree.Element | None = None
    for group in groups:
        raw = group.get("targetFramework")
        if not raw:
            agnostic = group
            continue
        by_framework.setdefault(normalize_framework(raw), group)
    for candidate in compatible_frameworks(framework):
        if candidate in by_framework:
            return by_framework[candidate]
    return agnostic


def read_nuspec_from_package(data: bytes) -> bytes:
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        for name in archive.namelist():
            if "/" not in name and name.lower().endswith(".nuspec"):
                return archive.read(name)
    raise ValueError("package archive has no nuspec")


class NuGetV3Source:
    """Remote NuGet v3 feed read through its flat-container resource."""

    is_local = False

    def __init__(
        self,
        index_url: str,
        *,
        timeout_s: int = 30,
        user_agent: str = "sharprun/0.1",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.name = index_url
        self._index_url = index_url
        self._timeout_s = timeout_s
        self._headers = {"User-Agent": user_agent}
        self._transport = transport
        self._base_address: str | None = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout_s,
            headers=self._headers,
            transport=self._transport,
            follow_redirects=True,
        )

    async def _package_base_address(self, client: httpx.AsyncClient) -> str:
        if self._base_address is not None:
            return self._base_address
        response = await client.get(self._index_url)
        response.raise_for_status()
        payload: Any = response.json()
        resources = payload.get("resources", []) if isinstance(payload, dict) else []
        for resource in resources:
            if not isinstance(resource, dict):
                continue
            kinds = resource.get("@type")
            kinds = kinds if isinstance(kinds, list) else [kinds]
            if PACKAGE_BASE_ADDRESS in kinds and isinstance(resource.get("@id"), str):
                self._base_address = resource["@id"].rstrip("/") + "/"
                return self._base_address
        raise RuntimeError(f"{self._index_url} does not expose {PACKAGE_BASE_ADDRESS}")

    @staticmethod
    def _parts(identity: PackageIdentity) -> tuple[str, str]:
        return identity.package_id.lower(), identity.version.normalized().lower()

    async def get_dependency_info(
        self, identity: PackageIdentity, framework: str
    ) -> PackageMetadata | None:
        package_id, version = self._parts(identity)
        try:
            async with self._client() as client:
                base = await self._package_base_address(client)
                response = await client.get(f"{base}{package_id}/{version}/{package_id}.nuspec")
                if response.status_code == 404:
                    return None
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("%s: dependency info for %s unavailable: %s", self.name, identity, exc)
            return None
        except RuntimeError as exc:
            logger.warning("%s: %s", self.name, exc)
            return None
        try:
            return parse_nuspec(response.content, framework)
        except (ElementTree.ParseError, ValueError) as exc:
            logger.warning("%s: malformed nuspec for %s: %s", self.name, identity, exc)
            return None

    async def download(self, identity: PackageIdentity) -> bytes:
        package_id, version = self._parts(identity)
        try:
            async with self._client() as client:
                base = await self._package_base_address(client)
                response = await client.get(
                    f"{base}{package_id}/{version}/{package_id}.{version}.nupkg"
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise DownloadError(
                f"download of {identity} failed ({exc.response.status_code}): {exc}"
            ) from exc
        except (httpx.HTTPError, RuntimeError) as exc:
            raise DownloadError(f"download of {identity} failed: {exc}") from exc
        return response.content


class LocalFolderSource:
    """Directory feed with ``.nupkg`` files, flat or ``<id>/<version>/`` nested."""

    is_local = True

    def __init__(self, root: Path) -> None:
        self.root = root
        self.name = str(root)

    def _find(self, identity: PackageIdentity) -> Path | None:
        package_id = identity.package_id.lower()
        version = identity.version.normalized().lower()
        file_name = f"{package_id}.{version}.nupkg"
        candidates = [self.root, self.root / package_id / version]
        for directory in candidates:
            if not directory.is_dir():
                continue
            for entry in sorted(directory.iterdir()):
                if entry.is_file() and entry.name.lower() == file_name:
                    return entry
        return None

    async def get_dependency_info(
        self, identity: PackageIdentity, framework: str
    ) -> PackageMetadata | None:
        path = self._find(identity)
        if path is None:
            return None
        try:
            return parse_nuspec(read_nuspec_from_package(path.read_bytes()), framework)
        except (OSError, zipfile.BadZipFile, ElementTree.ParseError, ValueError) as exc:
            logger.warning("%s: unreadable package %s: %s", self.name, path.name, exc)
            return None

    async def download(self, identity: PackageIdentity) -> bytes:
        path = self._find(identity)
        if path is None:
            raise DownloadError(f"{identity} disappeared from {self.name}", retryable=False)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise DownloadError(f"cannot read {path}: {exc}") from exc


def sources_from_settings(settings: Settings | None = None) -> list[PackageSource]:
    settings = settings or get_settings()
    sources: list[PackageSource] = []
    for entry in package_source_list(settings):
        if entry.startswith(("http://", "https://")):
            sources.append(
                NuGetV3Source(
                    entry,
                    timeout_s=settings.registry_timeout_seconds,
                    user_agent=settings.registry_user_agent,
                )
            )
        else:
            sources.append(LocalFolderSource(Path(entry).expanduser()))
    if not sources:
        raise ConfigError("PACKAGE_SOURCES is empty")
    return sources
