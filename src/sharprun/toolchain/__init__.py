"""Toolchain discovery."""

from sharprun.toolchain.versions import (
    DotnetVersion,
    discover_installed_versions,
    parse_runtime_listing,
    require_version,
    select_version,
)

__all__ = [
    "DotnetVersion",
    "discover_installed_versions",
    "parse_runtime_listing",
    "require_version",
    "select_version",
]
