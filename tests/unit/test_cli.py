import sys
from pathlib import Path

import pytest
from click.testing import CliRunner

from sharprun.cli import main as cli_module
from sharprun.compiler.base import (
    BuildMode,
    CompilationRequest,
    CompilationResult,
    CompileStrategy,
    Diagnostic,
    Severity,
)
from sharprun.errors import CompilationError, UnsupportedConstructError
from sharprun.process.supervisor import KillOutcome
from sharprun.toolchain.versions import DotnetVersion


class FakeService:
    requests: list[CompilationRequest] = []
    error: Exception | None = None

    async def installed_versions(self) -> list[DotnetVersion]:
        return [DotnetVersion.NET6, DotnetVersion.NET8]

    async def compile(self, request: CompilationRequest, output_dir: Path) -> CompilationResult:
        FakeService.requests.append(request)
        if FakeService.error is not None:
            raise FakeService.error
        return CompilationResult(
            success=True,
            artifact_path=output_dir / "App.dll",
            strategy=request.strategy,
            version=DotnetVersion.NET8,
            diagnostics=[Diagnostic(Severity.WARNING, "CS0168", "unused variable", 7, 17)],
        )


@pytest.fixture(autouse=True)
def fake_service(monkeypatch: pytest.MonkeyPatch):
    FakeService.requests = []
    FakeService.error = None
    monkeypatch.setattr(cli_module, "CompilationService", FakeService)
    monkeypatch.setattr(cli_module, "configure_logging", lambda level: None)
    return FakeService


def test_versions_lists_installed() -> None:
    result = CliRunner().invoke(cli_module.cli, ["versions"])
    assert result.exit_code == 0
    assert result.output.splitlines() == [".NET 6 (net6.0)", ".NET 8 (net8.0)"]


def test_versions_json() -> None:
    result = CliRunner().invoke(cli_module.cli, ["versions", "--json"])
    assert result.exit_code == 0
    assert result.output.strip() == '["net6", "net8"]'


def test_compile_builds_request(tmp_path: Path, hello_world_source: str) -> None:
    source = tmp_path / "Program.cs"
    source.write_text(hello_world_source)

    result = CliRunner().invoke(
        cli_module.cli,
        [
            "compile",
            str(source),
            "-o",
            str(tmp_path / "out"),
            "--package",
            "Newtonsoft.Json==13.0.1",
            "--version",
            "8",
            "--debug",
            "--external",
        ],
    )

    assert result.exit_code == 0, result.output
    request = FakeService.requests[0]
    assert request.source == hello_world_source
    assert request.version is DotnetVersion.NET8
    assert request.build_mode is BuildMode.DEBUG
    assert request.strategy is CompileStrategy.EXTERNAL
    assert [package.package_id for package in request.packages] == ["Newtonsoft.Json"]
    assert "built" in result.output
    assert "warning CS0168" in result.output


def test_compile_rejects_bad_package_reference(tmp_path: Path) -> None:
    source = tmp_path / "Program.cs"
    source.write_text("class P { }")
    result = CliRunner().invoke(
        cli_module.cli, ["compile", str(source), "-o", str(tmp_path), "--package", "Nope"]
    )
    assert result.exit_code == 2
    assert FakeService.requests == []


def test_compile_reports_top_level_statements(tmp_path: Path) -> None:
    source = tmp_path / "Program.cs"
    source.write_text('System.Console.WriteLine("hi");')
    FakeService.error = UnsupportedConstructError("Top-level statements", line=1, column=1)

    result = CliRunner().invoke(cli_module.cli, ["compile", str(source), "-o", str(tmp_path)])

    assert result.exit_code == 1
    assert "Program.cs:1:1" in result.output


def test_compile_reports_build_failure(tmp_path: Path) -> None:
    source = tmp_path / "Program.cs"
    source.write_text("class P { }")
    FakeService.error = CompilationError(
        "Build failed with exit code 1.", output="error CS5001: no Main"
    )

    result = CliRunner().invoke(cli_module.cli, ["compile", str(source), "-o", str(tmp_path)])

    assert result.exit_code == 1
    assert "error CS5001: no Main" in result.output
    assert "Build failed with exit code 1." in result.output


def test_invalid_configuration_is_reported(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PACKAGE_DEPENDENCY_BEHAVIOR", "newest")
    cli_module.get_settings.cache_clear()
    result = CliRunner().invoke(cli_module.cli, ["versions"])
    assert result.exit_code == 1
    assert "PACKAGE_DEPENDENCY_BEHAVIOR" in result.output


def test_kill_without_match(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli_module, "kill_processes", lambda name: [])
    result = CliRunner().invoke(cli_module.cli, ["kill", "App"])
    assert result.exit_code == 0
    assert "no running process named App" in result.output


def test_kill_lists_outcomes(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        cli_module,
        "kill_processes",
        lambda name: [
            KillOutcome(10, "App", killed=True),
            KillOutcome(11, "App", killed=False, detail="permission denied"),
        ],
    )
    result = CliRunner().invoke(cli_module.cli, ["kill", "App"])
    assert "App [10]: killed" in result.output
    assert "App [11]: not killed (permission denied)" in result.output


@pytest.mark.skipif(sys.platform == "win32", reason="uses /bin/sh scripts")
def test_run_streams_output_and_exit_code(tmp_path: Path) -> None:
    script = tmp_path / "App"
    script.write_text("#!/bin/sh\necho hello\nexit 4\n")
    script.chmod(0o755)

    result = CliRunner().invoke(cli_module.cli, ["run", str(script)])

    assert "hello" in result.output
    assert result.exit_code == 4


def test_run_missing_artifact(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli_module.cli, ["run", str(tmp_path / "App")])
    assert result.exit_code == 1
    assert "process did not start" in result.output
