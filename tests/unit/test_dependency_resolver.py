import io
import zipfile
from pathlib import Path

import pytest

from sharprun.config import get_settings
from sharprun.errors import DownloadError, PackageResolutionError
from sharprun.packages.models import (
    PackageDependency,
    PackageIdentity,
    PackageMetadata,
    PackageRequest,
)
from sharprun.packages.resolver import (
    COMPLETION_MARKER,
    DependencyResolver,
    extract_package,
    package_references,
)
from sharprun.packages.sources import LocalFolderSource, NuGetV3Source
from sharprun.packages.versioning import NuGetVersion, VersionRange


def _nupkg(package_id: str, frameworks: tuple[str, ...] = ("netstandard2.0",)) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("[Content_Types].xml", "<Types />")
        archive.writestr("_rels/.rels", "<Relationships />")
        archive.writestr("package/services/metadata/core-properties/x.psmdcp", "<x />")
        archive.writestr(f"{package_id}.nuspec", "<package />")
        for framework in frameworks:
            archive.writestr(f"lib/{framework}/{package_id}.dll", b"MZ")
    return buffer.getvalue()


class FakeSource:
    """In-memory feed: ``{(id, version): [(dependency id, range), ...]}``."""

    is_local = False

    def __init__(
        self,
        catalog: dict[tuple[str, str], list[tuple[str, str]]],
        frameworks: dict[str, tuple[str, ...]] | None = None,
        name: str = "fake",
    ) -> None:
        self.name = name
        self.catalog = {
            (key.lower(), NuGetVersion.parse(version)): deps
            for (key, version), deps in catalog.items()
        }
        self.canonical = {key.lower(): key for key, _ in catalog}
        self.frameworks = frameworks or {}
        self.queries: list[PackageIdentity] = []
        self.downloads: list[PackageIdentity] = []

    async def get_dependency_info(
        self, identity: PackageIdentity, framework: str
    ) -> PackageMetadata | None:
        self.queries.append(identity)
        deps = self.catalog.get((identity.package_id.lower(), identity.version))
        if deps is None:
            return None
        return PackageMetadata(
            identity=PackageIdentity(
                self.canonical[identity.package_id.lower()], identity.version
            ),
            dependencies=tuple(
                PackageDependency(dep_id, VersionRange.parse(dep_range))
                for dep_id, dep_range in deps
            ),
        )

    async def download(self, identity: PackageIdentity) -> bytes:
        self.downloads.append(identity)
        package_id = self.canonical[identity.package_id.lower()]
        return _nupkg(package_id, self.frameworks.get(package_id, ("netstandard2.0",)))


def _resolver(source: FakeSource, tmp_path: Path, behavior: str = "lowest") -> DependencyResolver:
    return DependencyResolver([source], packages_dir=tmp_path / "pkgs", behavior=behavior)


def _roots(*raw: str) -> list[PackageRequest]:
    return [PackageRequest.parse(item) for item in raw]


def _names(references) -> list[str]:
    return [path.name for path in references]


@pytest.mark.asyncio
async def test_diamond_is_downloaded_once(tmp_path: Path) -> None:
    source = FakeSource(
        {
            ("App.Core", "1.0.0"): [("Left", "1.0.0"), ("Right", "1.0.0")],
            ("Left", "1.0.0"): [("Shared", "1.0.0")],
            ("Right", "1.0.0"): [("Shared", "1.0.0")],
            ("Shared", "1.0.0"): [],
        }
    )
    resolver = _resolver(source, tmp_path)

    references = await resolver.resolve(_roots("App.Core==1.0.0"))

    assert _names(references) == ["App.Core.dll", "Left.dll", "Shared.dll", "Right.dll"]
    assert [str(item) for item in source.downloads].count("Shared 1.0.0") == 1
    assert len(source.downloads) == 4


@pytest.mark.asyncio
async def test_resolution_is_idempotent(tmp_path: Path) -> None:
    source = FakeSource(
        {("Alpha", "1.0.0"): [("Beta", "2.0.0")], ("Beta", "2.0.0"): []},
    )
    resolver = _resolver(source, tmp_path)

    first = await resolver.resolve(_roots("Alpha==1.0.0"))
    downloads = len(source.downloads)
    second = await resolver.resolve(_roots("Alpha==1.0.0"))

    assert list(first) == list(second)
    assert len(source.downloads) == downloads
    marker = tmp_path / "pkgs" / "alpha" / "1.0.0" / COMPLETION_MARKER
    assert marker.is_file()


@pytest.mark.asyncio
async def test_cycle_terminates_with_each_package_once(tmp_path: Path) -> None:
    source = FakeSource(
        {
            ("Ping", "1.0.0"): [("Pong", "1.0.0")],
            ("Pong", "1.0.0"): [("Ping", "1.0.0")],
        }
    )
    resolver = _resolver(source, tmp_path)

    references = await resolver.resolve(_roots("Ping==1.0.0"))

    assert _names(references) == ["Ping.dll", "Pong.dll"]
    assert len(source.queries) == 2
    assert len(source.downloads) == 2


@pytest.mark.asyncio
async def test_higher_minimum_wins_and_orphans_are_pruned(tmp_path: Path) -> None:
    source = FakeSource(
        {
            ("Root", "1.0.0"): [("Lib", "1.0.0"), ("Plugin", "1.0.0")],
            ("Lib", "1.0.0"): [("OldHelper", "1.0.0")],
            ("Lib", "2.0.0"): [],
            ("Plugin", "1.0.0"): [("Lib", "2.0.0")],
            ("OldHelper", "1.0.0"): [],
        }
    )
    resolver = _resolver(source, tmp_path)

    references = await resolver.resolve(_roots("Root==1.0.0"))

    assert _names(references) == ["Root.dll", "Plugin.dll", "Lib.dll"]
    downloaded = {str(item) for item in source.downloads}
    assert downloaded == {"Root 1.0.0", "Plugin 1.0.0", "Lib 2.0.0"}
    assert (tmp_path / "pkgs" / "lib" / "2.0.0" / "lib" / "netstandard2.0" / "Lib.dll").is_file()


@pytest.mark.asyncio
async def test_conflicting_pins_fall_back_to_highest(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    source = FakeSource(
        {
            ("First", "1.0.0"): [("Shared", "[1.0.0]")],
            ("Second", "1.0.0"): [("Shared", "[2.0.0]")],
            ("Shared", "1.0.0"): [],
            ("Shared", "2.0.0"): [],
        }
    )
    resolver = _resolver(source, tmp_path)

    await resolver.resolve(_roots("First==1.0.0", "Second==1.0.0"))

    assert "Shared 2.0.0" in {str(item) for item in source.downloads}
    assert "Shared 1.0.0" not in {str(item) for item in source.downloads}
    assert "No discovered version of Shared" in caplog.text


@pytest.mark.asyncio
async def test_missing_root_raises(tmp_path: Path) -> None:
    resolver = _resolver(FakeSource({}), tmp_path)
    with pytest.raises(PackageResolutionError, match="Nope 1.0.0"):
        await resolver.resolve(_roots("Nope==1.0.0"))


@pytest.mark.asyncio
async def test_missing_dependency_is_skipped(tmp_path: Path) -> None:
    source = FakeSource(
        {
            ("Root", "1.0.0"): [("Ghost", "1.0.0"), ("Real", "1.0.0")],
            ("Real", "1.0.0"): [],
        }
    )
    resolver = _resolver(source, tmp_path)

    references = await resolver.resolve(_roots("Root==1.0.0"))

    assert _names(references) == ["Root.dll", "Real.dll"]


@pytest.mark.asyncio
async def test_root_seen_first_as_missing_dependency_raises(tmp_path: Path) -> None:
    source = FakeSource({("A", "1.0.0"): [("B", "1.0.0")]})
    resolver = _resolver(source, tmp_path)

    with pytest.raises(PackageResolutionError, match="B 1.0.0"):
        await resolver.resolve(_roots("A==1.0.0", "B==1.0.0"))
    assert source.downloads == []


@pytest.mark.asyncio
async def test_empty_roots_resolve_to_nothing(tmp_path: Path) -> None:
    source = FakeSource({})
    assert len(await _resolver(source, tmp_path).resolve([])) == 0
    assert source.queries == []


@pytest.mark.asyncio
async def test_first_answering_source_wins(tmp_path: Path) -> None:
    empty = FakeSource({}, name="empty")
    full = FakeSource({("Only", "1.0.0"): []}, name="full")
    resolver = DependencyResolver([empty, full], packages_dir=tmp_path / "pkgs")

    await resolver.resolve(_roots("Only==1.0.0"))

    assert len(empty.queries) == 1
    assert empty.downloads == []
    assert len(full.downloads) == 1


@pytest.mark.asyncio
async def test_newtonsoft_json_resolves_its_netstandard_assembly(tmp_path: Path) -> None:
    source = FakeSource(
        {("Newtonsoft.Json", "13.0.1"): []},
        frameworks={
            "Newtonsoft.Json": (
                "net20",
                "net35",
                "net40",
                "net45",
                "netstandard1.0",
                "netstandard1.3",
                "netstandard2.0",
            )
        },
    )
    resolver = _resolver(source, tmp_path)

    references = await resolver.resolve(_roots("Newtonsoft.Json==13.0.1"))

    package_dir = tmp_path / "pkgs" / "newtonsoft.json" / "13.0.1"
    assert list(references) == [package_dir / "lib" / "netstandard2.0" / "Newtonsoft.Json.dll"]


def test_package_references_prefers_earlier_frameworks(tmp_path: Path) -> None:
    for framework in ("netstandard2.0", "netstandard2.1", "net6.0"):
        target = tmp_path / "lib" / framework
        target.mkdir(parents=True)
        (target / "Pkg.dll").write_bytes(b"MZ")
        (target / "Pkg.xml").write_text("<doc />")
    assert package_references(tmp_path) == [tmp_path / "lib" / "netstandard2.1" / "Pkg.dll"]


def test_package_references_without_lib(tmp_path: Path) -> None:
    assert package_references(tmp_path) == []


def test_extract_package_skips_packaging_metadata(tmp_path: Path) -> None:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("[Content_Types].xml", "<Types />")
        archive.writestr("_rels/.rels", "<Relationships />")
        archive.writestr("lib/netstandard2.0/My%20Lib.dll", b"MZ")
    extract_package(buffer.getvalue(), tmp_path / "out")
    assert (tmp_path / "out" / "lib" / "netstandard2.0" / "My Lib.dll").read_bytes() == b"MZ"
    assert not (tmp_path / "out" / "_rels").exists()
    assert not (tmp_path / "out" / "[Content_Types].xml").exists()


def test_extract_package_rejects_traversal(tmp_path: Path) -> None:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("../escape.dll", b"MZ")
    with pytest.raises(ValueError):
        extract_package(buffer.getvalue(), tmp_path / "out")


@pytest.mark.asyncio
async def test_materialize_wraps_bad_archives(tmp_path: Path) -> None:
    class CorruptSource(FakeSource):
        async def download(self, identity: PackageIdentity) -> bytes:
            return b"not a zip"

    resolver = _resolver(CorruptSource({("Bad", "1.0.0"): []}), tmp_path)
    with pytest.raises(DownloadError) as excinfo:
        await resolver.resolve(_roots("Bad==1.0.0"))
    assert excinfo.value.retryable is False


def test_from_settings_uses_configured_sources(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setenv("PACKAGE_SOURCES", f"https://api.nuget.org/v3/index.json,{tmp_path}")
    get_settings.cache_clear()
    resolver = DependencyResolver.from_settings()
    assert isinstance(resolver._sources[0], NuGetV3Source)
    assert isinstance(resolver._sources[1], LocalFolderSource)
    assert resolver.package_directory(
        PackageIdentity("Newtonsoft.Json", NuGetVersion.parse("13.0.1"))
    ) == tmp_path / "packages" / "newtonsoft.json" / "13.0.1"
