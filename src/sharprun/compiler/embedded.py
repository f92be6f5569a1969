"""In-process compilation backend hosting Roslyn through pythonnet."""

from __future__ import annotations

import json
import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Protocol

from sharprun.compiler.base import (
    BuildMode,
    CompilationContext,
    CompilationRequest,
    CompilationResult,
    CompileStrategy,
    Diagnostic,
    Severity,
)
from sharprun.compiler.references import baseline_references
from sharprun.compiler.syntax import ensure_no_free_statements
from sharprun.errors import CompilationError, ToolchainNotFoundError
from sharprun.packages.models import ReferenceSet
from sharprun.toolchain.versions import (
    CORE_RUNTIME,
    DotnetVersion,
    roslyn_directory,
    runtime_directory,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EmitOutcome:
    success: bool
    diagnostics: list[Diagnostic] = field(default_factory=list)


class InProcessCompiler(Protocol):
    def emit(
        self,
        source: str,
        references: ReferenceSet,
        output_path: Path,
        *,
        assembly_name: str,
        optimize: bool,
    ) -> EmitOutcome: ...


class RoslynCompiler:
    """Roslyn loaded into this process via pythonnet's CoreCLR host.

    The Roslyn assemblies come from the installed SDK (``ROSLYN_DIR`` or
    ``<dotnet root>/sdk/<newest>/Roslyn/bincore``). The CLR is loaded on first
    use and stays loaded for the life of the process.
    """

    def __init__(self, roslyn_dir: Path | None = None) -> None:
        self._roslyn_dir = roslyn_dir
        self._api: SimpleNamespace | None = None

    def _load(self) -> SimpleNamespace:
        if self._api is not None:
            return self._api
        roslyn_dir = self._roslyn_dir or roslyn_directory()
        try:
            import pythonnet

            pythonnet.load("coreclr")
            import clr
        except (ImportError, RuntimeError) as exc:
            raise ToolchainNotFoundError(f"cannot host the .NET runtime in-process: {exc}") from exc

        for name in ("Microsoft.CodeAnalysis.dll", "Microsoft.CodeAnalysis.CSharp.dll"):
            clr.AddReference(str(roslyn_dir / name))

        from System.Collections.Generic import List  # type: ignore[import-not-found]

        from Microsoft.CodeAnalysis import (  # type: ignore[import-not-found]
            FileSystemExtensions,
            MetadataReference,
            OptimizationLevel,
            OutputKind,
            Platform,
            SyntaxTree,
        )
        from Microsoft.CodeAnalysis.CSharp import (  # type: ignore[import-not-found]
            CSharpCompilation,
            CSharpCompilationOptions,
            CSharpSyntaxTree,
        )

        self._api = SimpleNamespace(
            List=List,
            FileSystemExtensions=FileSystemExtensions,
            MetadataReference=MetadataReference,
            OptimizationLevel=OptimizationLevel,
            OutputKind=OutputKind,
            Platform=Platform,
            SyntaxTree=SyntaxTree,
            CSharpCompilation=CSharpCompilation,
            CSharpCompilationOptions=CSharpCompilationOptions,
            CSharpSyntaxTree=CSharpSyntaxTree,
        )
        logger.info("Loaded Roslyn from %s", roslyn_dir)
        return self._api

    @staticmethod
    def _convert(diagnostic: Any) -> Diagnostic:
        severity_name = str(diagnostic.Severity).lower()
        severity = Severity(severity_name) if severity_name in Severity._value2member_map_ else (
            Severity.INFO
        )
        position = diagnostic.Location.GetLineSpan().StartLinePosition
        return Diagnostic(
            severity=severity,
            code=str(diagnostic.Id),
            message=str(diagnostic.GetMessage()),
            line=int(position.Line) + 1,
            column=int(position.Character) + 1,
            warning_as_error=bool(diagnostic.IsWarningAsError),
        )

    def emit(
        self,
        source: str,
        references: ReferenceSet,
        output_path: Path,
        *,
        assembly_name: str,
        optimize: bool,
    ) -> EmitOutcome:
        api = self._load()
        trees = api.List[api.SyntaxTree]()
        trees.Add(api.CSharpSyntaxTree.ParseText(source))
        metadata = api.List[api.MetadataReference]()
        for path in references:
            metadata.Add(api.MetadataReference.CreateFromFile(str(path)))
        level = api.OptimizationLevel.Release if optimize else api.OptimizationLevel.Debug
        options = (
            api.CSharpCompilationOptions(api.OutputKind.ConsoleApplication)
            .WithOptimizationLevel(level)
            .WithPlatform(api.Platform.AnyCpu)
        )
        compilation = api.CSharpCompilation.Create(assembly_name, trees, metadata, options)
        result = api.FileSystemExtensions.Emit(compilation, str(output_path))
        return EmitOutcome(
            success=bool(result.Success),
            diagnostics=[self._convert(item) for item in result.Diagnostics],
        )


def write_runtime_config(output_dir: Path, app_name: str, version: DotnetVersion) -> Path:
    path = output_dir / f"{app_name}.runtimeconfig.json"
    config = {
        "runtimeOptions": {
            "tfm": version.target_framework,
            "framework": {"name": CORE_RUNTIME, "version": f"{version.major}.0.0"},
        }
    }
    path.write_text(json.dumps(config, indent=2) + "\n")
    return path


class EmbeddedCompileBackend:
    """Validate, then compile a single source file with an in-process compiler."""

    strategy = CompileStrategy.EMBEDDED

    def __init__(
        self,
        compiler: InProcessCompiler | None = None,
        *,
        runtime_dir_for: Callable[[DotnetVersion], Path] = runtime_directory,
    ) -> None:
        self._compiler = compiler or RoslynCompiler()
        self._runtime_dir_for = runtime_dir_for

    def compile(
        self, request: CompilationRequest, context: CompilationContext
    ) -> CompilationResult:
        ensure_no_free_statements(request.source)

        runtime_dir = self._runtime_dir_for(context.version)
        try:
            references = baseline_references(runtime_dir)
        except FileNotFoundError as exc:
            raise ToolchainNotFoundError(str(exc)) from exc
        references.extend(context.references)

        context.output_dir.mkdir(parents=True, exist_ok=True)
        output_path = context.output_dir / f"{context.app_name}.dll"
        logger.info(
            "Compiling %s in-process against %d references", output_path.name, len(references)
        )
        outcome = self._compiler.emit(
            request.source,
            references,
            output_path,
            assembly_name=context.app_name,
            optimize=request.build_mode is BuildMode.RELEASE,
        )
        if not outcome.success:
            output_path.unlink(missing_ok=True)
            failing = [item for item in outcome.diagnostics if item.fails_build]
            raise CompilationError.from_diagnostics(failing or outcome.diagnostics)

        write_runtime_config(context.output_dir, context.app_name, context.version)
        for path in context.references:
            target = context.output_dir / path.name
            if path.resolve() != target.resolve():
                shutil.copy2(path, target)
        return CompilationResult(
            success=True,
            artifact_path=output_path,
            strategy=self.strategy,
            version=context.version,
            diagnostics=outcome.diagnostics,
        )
