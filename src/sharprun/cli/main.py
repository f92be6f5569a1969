"""Click CLI group: versions, compile, run and kill commands."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import click

from sharprun.compiler.base import BuildMode, CompilationRequest, CompileStrategy
from sharprun.compiler.service import CompilationService
from sharprun.config import get_settings, validate_settings_for_env
from sharprun.errors import CompilationError, SharpRunError, UnsupportedConstructError
from sharprun.logging import configure_logging
from sharprun.packages.models import PackageRequest
from sharprun.process.supervisor import (
    ErrorLine,
    Exited,
    OutputLine,
    ProcessSupervisor,
    kill_processes,
)
from sharprun.toolchain.versions import DotnetVersion


def _parse_version(ctx: click.Context, param: click.Parameter, value: str) -> DotnetVersion:
    try:
        return DotnetVersion.parse(value)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc


def _parse_packages(
    ctx: click.Context, param: click.Parameter, value: tuple[str, ...]
) -> tuple[PackageRequest, ...]:
    try:
        return tuple(PackageRequest.parse(item) for item in value)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc


async def _run_artifact(path: Path, working_directory: Path | None) -> int | None:
    supervisor = ProcessSupervisor()
    await supervisor.execute(path, working_directory)
    try:
        async for event in supervisor.events():
            if isinstance(event, OutputLine):
                click.echo(event.text)
            elif isinstance(event, ErrorLine):
                click.echo(event.text, err=True)
            elif isinstance(event, Exited):
                return event.exit_code
    finally:
        await supervisor.stop()
    return None


def _exit_with(exit_code: int | None) -> None:
    if exit_code is None:
        raise click.ClickException("process did not start")
    if exit_code != 0:
        sys.exit(exit_code)


@click.group()
@click.option("--log-level", type=str, default=None, help="Override LOG_LEVEL.")
def cli(log_level: str | None) -> None:
    """Compile and run single-file C# programs."""
    settings = get_settings()
    configure_logging(log_level or settings.log_level)
    try:
        validate_settings_for_env(settings)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command()
@click.option("--json", "json_output", is_flag=True, help="Print versions as JSON.")
def versions(json_output: bool) -> None:
    """List installed .NET versions usable as compile targets."""
    installed = asyncio.run(CompilationService().installed_versions())
    if json_output:
        click.echo(json.dumps([item.value for item in installed]))
        return
    if not installed:
        click.echo("no .NET toolchain found")
        return
    for item in installed:
        click.echo(f"{item.label} ({item.target_framework})")


@cli.command("compile")
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "-o",
    "--output",
    "output_dir",
    type=click.Path(file_okay=False, path_type=Path),
    required=True,
    help="Directory that receives the built artifact.",
)
@click.option(
    "--package",
    "packages",
    multiple=True,
    callback=_parse_packages,
    help="Package reference as ID==VERSION; repeatable.",
)
@click.option(
    "--version",
    "version",
    default="auto",
    show_default=True,
    callback=_parse_version,
    help="Target .NET version (auto, 5, 6, 7, 8, 9).",
)
@click.option("--debug", is_flag=True, help="Debug instead of Release build.")
@click.option("--external", is_flag=True, help="Build with `dotnet build` instead of in-process.")
@click.option("--app-name", type=str, default="", help="Assembly name (default: DEFAULT_APP_NAME).")
@click.option("--run", "run_after", is_flag=True, help="Run the artifact after a successful build.")
def compile_command(
    source: Path,
    output_dir: Path,
    packages: tuple[PackageRequest, ...],
    version: DotnetVersion,
    debug: bool,
    external: bool,
    app_name: str,
    run_after: bool,
) -> None:
    """Compile SOURCE into an executable artifact."""
    request = CompilationRequest(
        source=source.read_text(encoding="utf-8"),
        version=version,
        build_mode=BuildMode.DEBUG if debug else BuildMode.RELEASE,
        packages=packages,
        strategy=CompileStrategy.EXTERNAL if external else CompileStrategy.EMBEDDED,
        app_name=app_name,
    )
    try:
        result = asyncio.run(CompilationService().compile(request, output_dir))
    except UnsupportedConstructError as exc:
        raise click.ClickException(f"{source}:{exc.line}:{exc.column}: {exc}") from exc
    except CompilationError as exc:
        if exc.output:
            click.echo(exc.output, err=True)
        raise click.ClickException(str(exc).splitlines()[0]) from exc
    except SharpRunError as exc:
        raise click.ClickException(str(exc)) from exc

    for warning in result.warnings:
        click.echo(f"{source}{warning}", err=True)
    click.echo(f"built {result.artifact_path} ({result.version.label}, {result.strategy.value})")
    if run_after and result.artifact_path is not None:
        _exit_with(asyncio.run(_run_artifact(result.artifact_path, output_dir)))


@cli.command()
@click.argument("path", type=click.Path(dir_okay=False, path_type=Path))
@click.option(
    "--cwd",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Working directory (default: the artifact's directory).",
)
def run(path: Path, cwd: Path | None) -> None:
    """Run a built artifact and stream its output."""
    _exit_with(asyncio.run(_run_artifact(path, cwd)))


@cli.command()
@click.argument("name")
def kill(name: str) -> None:
    """Terminate every process named after the artifact NAME."""
    outcomes = kill_processes(name)
    if not outcomes:
        click.echo(f"no running process named {name}")
        return
    for outcome in outcomes:
        status = "killed" if outcome.killed else f"not killed ({outcome.detail})"
        click.echo(f"{outcome.name} [{outcome.pid}]: {status}")


if __name__ == "__main__":
    cli()
