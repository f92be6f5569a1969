"""Installed .NET toolchain discovery and version selection."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from enum import Enum
from pathlib import Path

from sharprun.config import get_settings
from sharprun.errors import ToolchainNotFoundError

logger = logging.getLogger(__name__)

RUNTIME_PREFIXES = (
    "Microsoft.NETCore.App",
    "Microsoft.AspNetCore.App",
    "Microsoft.WindowsDesktop.App",
)
CORE_RUNTIME = "Microsoft.NETCore.App"


class DotnetVersion(str, Enum):
    AUTO = "auto"
    NET5 = "net5"
    NET6 = "net6"
    NET7 = "net7"
    NET8 = "net8"
    NET9 = "net9"

    @property
    def major(self) -> int:
        if self is DotnetVersion.AUTO:
            raise ValueError("auto has no major version")
        return int(self.value.removeprefix("net"))

    @property
    def label(self) -> str:
        if self is DotnetVersion.AUTO:
            return "auto"
        return f".NET {self.major}"

    @property
    def target_framework(self) -> str:
        return f"net{self.major}.0"

    @classmethod
    def from_major(cls, major: int) -> DotnetVersion | None:
        try:
            return cls(f"net{major}")
        except ValueError:
            return None

    @classmethod
    def parse(cls, raw: str) -> DotnetVersion:
        """Accept ``auto``, ``8``, ``net8``, ``net8.0`` and ``.NET 8``."""
        text = raw.strip().lower().replace(" ", "")
        if text == "auto":
            return cls.AUTO
        text = text.removeprefix(".net").removeprefix("net").removesuffix(".0")
        if text.isdigit():
            found = cls.from_major(int(text))
            if found is not None:
                return found
        raise ValueError(f"unsupported .NET version: {raw!r}")


# Preference order for auto selection, lowest first.
CONCRETE_VERSIONS: tuple[DotnetVersion, ...] = tuple(
    item for item in DotnetVersion if item is not DotnetVersion.AUTO
)
MINIMUM_SUPPORTED = DotnetVersion.NET5


def _parse_dotted(token: str) -> tuple[int, ...] | None:
    core = token.split("-", 1)[0]
    parts = core.split(".")
    if not parts or not all(part.isdigit() for part in parts):
        return None
    return tuple(int(part) for part in parts)


def parse_runtime_listing(text: str) -> list[DotnetVersion]:
    """Parse ``dotnet --list-runtimes`` output into sorted, distinct versions."""
    found: set[DotnetVersion] = set()
    for line in text.splitlines():
        if not line.startswith(RUNTIME_PREFIXES):
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        numbers = _parse_dotted(parts[1])
        if numbers is None:
            continue
        version = DotnetVersion.from_major(numbers[0])
        if version is None:
            logger.debug("Skipping unsupported runtime major %s", numbers[0])
            continue
        found.add(version)
    return sorted(found, key=lambda item: item.major)


def _run_list_runtimes(executable: str, timeout_s: float) -> str | None:
    try:
        proc = subprocess.run(
            [executable, "--list-runtimes"],
            capture_output=True,
            text=True,
            timeout=timeout_s,
            check=False,
        )
    except subprocess.TimeoutExpired:
        logger.warning("%s --list-runtimes timed out after %.1fs", executable, timeout_s)
        return None
    except OSError as exc:
        logger.info("dotnet host not available: %s", exc)
        return None
    if proc.returncode != 0:
        logger.warning("%s --list-runtimes exited with %d", executable, proc.returncode)
        return None
    return proc.stdout or ""


def discover_installed_versions() -> list[DotnetVersion]:
    settings = get_settings()
    output = _run_list_runtimes(
        settings.dotnet_executable, float(settings.toolchain_probe_timeout_seconds)
    )
    if output is None:
        return []
    versions = parse_runtime_listing(output)
    logger.debug("Installed .NET versions: %s", [item.label for item in versions])
    return versions


def select_version(
    requested: DotnetVersion, installed: list[DotnetVersion]
) -> DotnetVersion | None:
    if requested is not DotnetVersion.AUTO:
        return requested
    available = set(installed)
    for candidate in CONCRETE_VERSIONS:
        if candidate.major < MINIMUM_SUPPORTED.major:
            continue
        if candidate in available:
            return candidate
    return None


def require_version(requested: DotnetVersion, installed: list[DotnetVersion]) -> DotnetVersion:
    selected = select_version(requested, installed)
    if selected is None:
        raise ToolchainNotFoundError("no .NET toolchain found")
    return selected


def locate_dotnet_root() -> Path:
    settings = get_settings()
    if settings.dotnet_root.strip():
        return Path(settings.dotnet_root).expanduser()
    env_root = os.environ.get("DOTNET_ROOT", "").strip()
    if env_root:
        return Path(env_root).expanduser()
    executable = shutil.which(settings.dotnet_executable)
    if executable is None:
        raise ToolchainNotFoundError(
            f"{settings.dotnet_executable} not found on PATH; set DOTNET_ROOT"
        )
    return Path(executable).resolve().parent


def _newest_child(parent: Path, major: int | None = None) -> Path | None:
    candidates: list[tuple[tuple[int, ...], Path]] = []
    if not parent.is_dir():
        return None
    for child in parent.iterdir():
        numbers = _parse_dotted(child.name)
        if not child.is_dir() or numbers is None:
            continue
        if major is not None and numbers[0] != major:
            continue
        candidates.append((numbers, child))
    if not candidates:
        return None
    return max(candidates)[1]


def runtime_directory(version: DotnetVersion, root: Path | None = None) -> Path:
    """Shared-framework directory of the newest installed patch of *version*."""
    base = (root or locate_dotnet_root()) / "shared" / CORE_RUNTIME
    found = _newest_child(base, version.major)
    if found is None:
        raise ToolchainNotFoundError(f"{version.label} runtime is not installed under {base}")
    return found


def roslyn_directory(root: Path | None = None) -> Path:
    settings = get_settings()
    if settings.roslyn_dir.strip():
        return Path(settings.roslyn_dir).expanduser()
    sdk = _newest_child((root or locate_dotnet_root()) / "sdk")
    if sdk is None:
        raise ToolchainNotFoundError("no .NET SDK found; the embedded compiler needs Roslyn")
    return sdk / "Roslyn" / "bincore"
