"""Compilation contracts shared by both backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from sharprun.packages.models import PackageRequest, ReferenceSet
from sharprun.toolchain.versions import DotnetVersion


class BuildMode(str, Enum):
    RELEASE = "Release"
    DEBUG = "Debug"


class CompileStrategy(str, Enum):
    EMBEDDED = "embedded"
    EXTERNAL = "external"


class Severity(str, Enum):
    HIDDEN = "hidden"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class Diagnostic:
    severity: Severity
    code: str
    message: str
    line: int = 0
    column: int = 0
    warning_as_error: bool = False

    @property
    def fails_build(self) -> bool:
        return self.severity is Severity.ERROR or self.warning_as_error

    def __str__(self) -> str:
        return f"({self.line},{self.column}): {self.severity.value} {self.code}: {self.message}"


@dataclass(frozen=True, slots=True)
class CompilationRequest:
    source: str
    version: DotnetVersion = DotnetVersion.AUTO
    build_mode: BuildMode = BuildMode.RELEASE
    packages: tuple[PackageRequest, ...] = ()
    strategy: CompileStrategy = CompileStrategy.EMBEDDED
    app_name: str = ""


@dataclass(slots=True)
class CompilationContext:
    """Everything a backend needs besides the request itself."""

    version: DotnetVersion
    output_dir: Path
    app_name: str
    references: ReferenceSet = field(default_factory=ReferenceSet)


@dataclass(slots=True)
class CompilationResult:
    success: bool
    artifact_path: Path | None
    strategy: CompileStrategy
    version: DotnetVersion
    diagnostics: list[Diagnostic] = field(default_factory=list)
    output: str = ""

    @property
    def warnings(self) -> list[Diagnostic]:
        return [item for item in self.diagnostics if item.severity is Severity.WARNING]


class CompilerBackend(Protocol):
    strategy: CompileStrategy

    def compile(
        self, request: CompilationRequest, context: CompilationContext
    ) -> CompilationResult: ...
