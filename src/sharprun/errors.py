"""sharprun exception hierarchy.

All sharprun-specific exceptions inherit from SharpRunError,
enabling structured error handling and cleaner catch clauses.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sharprun.compiler.base import Diagnostic


class SharpRunError(Exception):
    """Base exception for all sharprun errors."""

    def __init__(self, message: str = "", *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class UnsupportedConstructError(SharpRunError):
    """Source shape rejected before any compilation attempt."""

    def __init__(self, message: str = "", *, line: int = 0, column: int = 0) -> None:
        super().__init__(message)
        self.line = line
        self.column = column


class CompilationError(SharpRunError):
    """The compiler or the external toolchain reported a failed build."""

    def __init__(
        self,
        message: str = "",
        *,
        diagnostics: list[Diagnostic] | None = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.diagnostics = list(diagnostics or [])
        self.output = output

    @classmethod
    def from_diagnostics(cls, diagnostics: list[Diagnostic]) -> CompilationError:
        lines = "\n".join(str(item) for item in diagnostics)
        return cls(
            f"Compilation failed with {len(diagnostics)} errors:\n{lines}",
            diagnostics=diagnostics,
        )


class PackageResolutionError(SharpRunError):
    """A requested package or its closure could not be found."""


class DownloadError(SharpRunError):
    """Package content could not be fetched or extracted after resolution."""

    def __init__(self, message: str = "", *, retryable: bool = True) -> None:
        super().__init__(message, retryable=retryable)


class ToolchainNotFoundError(SharpRunError):
    """No installed toolchain satisfies the requested version."""


class ProcessLaunchError(SharpRunError):
    """Spawning a child process failed at the OS level."""


class ConfigError(SharpRunError):
    """Invalid or missing configuration."""
