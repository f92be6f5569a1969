"""Out-of-process compilation through ``dotnet build``."""

from __future__ import annotations

import logging
import shutil
import subprocess
import sys
import tempfile
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from xml.sax.saxutils import escape, quoteattr

from sharprun.compiler.base import (
    CompilationContext,
    CompilationRequest,
    CompilationResult,
    CompileStrategy,
)
from sharprun.config import get_settings
from sharprun.errors import CompilationError, ProcessLaunchError
from sharprun.ids import new_id
from sharprun.packages.models import PackageRequest

logger = logging.getLogger(__name__)

SOURCE_FILE_NAME = "Program.cs"
OUTPUT_SUBDIR = "out"

_PROJECT_TEMPLATE = """<Project Sdk="Microsoft.NET.Sdk">

  <PropertyGroup>
    <OutputType>Exe</OutputType>
    <TargetFramework>{framework}</TargetFramework>
    <AssemblyName>{assembly_name}</AssemblyName>
    <ImplicitUsings>disable</ImplicitUsings>
    <Nullable>disable</Nullable>
  </PropertyGroup>
{packages}
</Project>
"""


def render_project(
    framework: str, assembly_name: str, packages: Sequence[PackageRequest] = ()
) -> str:
    package_block = ""
    if packages:
        items = "\n".join(
            f"    <PackageReference Include={quoteattr(package.package_id)} "
            f"Version={quoteattr(str(package.version))} />"
            for package in packages
        )
        package_block = f"\n  <ItemGroup>\n{items}\n  </ItemGroup>\n"
    return _PROJECT_TEMPLATE.format(
        framework=escape(framework),
        assembly_name=escape(assembly_name),
        packages=package_block,
    )


@contextmanager
def ephemeral_workspace(parent: str | Path | None = None) -> Iterator[Path]:
    """Uniquely named scratch directory, removed on exit whatever happens."""
    if parent is None:
        parent = get_settings().build_workspace_dir or None
    if parent is not None:
        Path(parent).mkdir(parents=True, exist_ok=True)
    workspace = Path(tempfile.mkdtemp(prefix=f"{new_id('build')}_", dir=parent))
    try:
        yield workspace
    finally:
        shutil.rmtree(workspace, ignore_errors=True)
        logger.debug("Removed build workspace %s", workspace)


def _copy_outputs(source_dir: Path, target_dir: Path) -> None:
    target_dir.mkdir(parents=True, exist_ok=True)
    for entry in source_dir.iterdir():
        target = target_dir / entry.name
        if entry.is_dir():
            shutil.copytree(entry, target, dirs_exist_ok=True)
        else:
            shutil.copy2(entry, target)


def _artifact_in(output_dir: Path, app_name: str) -> Path:
    apphost = output_dir / (f"{app_name}.exe" if sys.platform == "win32" else app_name)
    if apphost.is_file():
        return apphost
    return output_dir / f"{app_name}.dll"


class ExternalBuildBackend:
    """Generate a throwaway project and let the installed SDK build it."""

    strategy = CompileStrategy.EXTERNAL

    def __init__(self, dotnet_executable: str | None = None) -> None:
        self._dotnet = dotnet_executable

    def compile(
        self, request: CompilationRequest, context: CompilationContext
    ) -> CompilationResult:
        dotnet = self._dotnet or get_settings().dotnet_executable
        with ephemeral_workspace() as workspace:
            project = workspace / f"{context.app_name}.csproj"
            project.write_text(
                render_project(
                    context.version.target_framework, context.app_name, request.packages
                ),
                encoding="utf-8",
            )
            (workspace / SOURCE_FILE_NAME).write_text(request.source, encoding="utf-8")
            build_output = workspace / OUTPUT_SUBDIR
            command = [
                dotnet,
                "build",
                str(project),
                "-c",
                request.build_mode.value,
                "-o",
                str(build_output),
            ]
            logger.info("Running %s in %s", " ".join(command[:2]), workspace)
            try:
                proc = subprocess.run(
                    command,
                    cwd=str(workspace),
                    capture_output=True,
                    text=True,
                    check=False,
                )
            except OSError as exc:
                raise ProcessLaunchError(f"could not start {dotnet}: {exc}") from exc

            stdout = proc.stdout or ""
            stderr = proc.stderr or ""
            output = stdout + stderr
            if proc.returncode != 0:
                logger.warning("dotnet build exited with %d", proc.returncode)
                raise CompilationError(
                    f"Build failed with exit code {proc.returncode}.\n"
                    f"Output:\n{stdout}\nErrors:\n{stderr}",
                    output=output,
                )
            _copy_outputs(build_output, context.output_dir)

        return CompilationResult(
            success=True,
            artifact_path=_artifact_in(context.output_dir, context.app_name),
            strategy=self.strategy,
            version=context.version,
            output=output,
        )
