"""Compilation backends and the service that selects between them."""

from sharprun.compiler.base import (
    BuildMode,
    CompilationContext,
    CompilationRequest,
    CompilationResult,
    CompilerBackend,
    CompileStrategy,
    Diagnostic,
    Severity,
)
from sharprun.compiler.embedded import EmbeddedCompileBackend, RoslynCompiler
from sharprun.compiler.external import ExternalBuildBackend, ephemeral_workspace
from sharprun.compiler.service import CompilationService

__all__ = [
    "BuildMode",
    "CompilationContext",
    "CompilationRequest",
    "CompilationResult",
    "CompilationService",
    "CompileStrategy",
    "CompilerBackend",
    "Diagnostic",
    "EmbeddedCompileBackend",
    "ExternalBuildBackend",
    "RoslynCompiler",
    "Severity",
    "ephemeral_workspace",
]
