import subprocess
from pathlib import Path

import pytest

from sharprun.compiler import external as external_module
from sharprun.compiler.base import (
    BuildMode,
    CompilationContext,
    CompilationRequest,
    CompileStrategy,
)
from sharprun.compiler.external import (
    ExternalBuildBackend,
    ephemeral_workspace,
    render_project,
)
from sharprun.errors import CompilationError, ProcessLaunchError
from sharprun.packages.models import PackageRequest
from sharprun.toolchain.versions import DotnetVersion


def _context(tmp_path: Path) -> CompilationContext:
    return CompilationContext(
        version=DotnetVersion.NET6, output_dir=tmp_path / "out", app_name="App"
    )


def _workspaces(tmp_path: Path) -> list[Path]:
    root = tmp_path / "workspaces"
    return list(root.iterdir()) if root.exists() else []


def test_render_project_targets_version_and_packages() -> None:
    project = render_project(
        "net6.0", "App", [PackageRequest.parse("Newtonsoft.Json==13.0.1")]
    )
    assert "<OutputType>Exe</OutputType>" in project
    assert "<TargetFramework>net6.0</TargetFramework>" in project
    assert "<AssemblyName>App</AssemblyName>" in project
    assert '<PackageReference Include="Newtonsoft.Json" Version="13.0.1" />' in project


def test_render_project_without_packages_has_no_item_group() -> None:
    assert "ItemGroup" not in render_project("net8.0", "App")


def test_render_project_escapes_assembly_name() -> None:
    project = render_project("net8.0", "Tom&Jerry<1>")
    assert "<AssemblyName>Tom&amp;Jerry&lt;1&gt;</AssemblyName>" in project


def test_sources_are_written_as_utf8(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    seen: dict[str, bytes] = {}
    source = 'class P { static void Main() { System.Console.WriteLine("h\u00e9llo \u2713"); } }'

    def fake_run(command: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        seen["source"] = (Path(str(kwargs["cwd"])) / "Program.cs").read_bytes()
        Path(command[command.index("-o") + 1]).mkdir(parents=True)
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

    monkeypatch.setattr(external_module.subprocess, "run", fake_run)
    request = CompilationRequest(source=source, strategy=CompileStrategy.EXTERNAL)

    ExternalBuildBackend().compile(request, _context(tmp_path))

    assert seen["source"].decode("utf-8") == source


def test_ephemeral_workspace_is_removed_on_error(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError):
        with ephemeral_workspace(tmp_path / "ws") as workspace:
            (workspace / "Program.cs").write_text("class P {}")
            raise RuntimeError("boom")
    assert not workspace.exists()
    assert list((tmp_path / "ws").iterdir()) == []


def test_ephemeral_workspaces_are_unique(tmp_path: Path) -> None:
    with ephemeral_workspace(tmp_path) as first, ephemeral_workspace(tmp_path) as second:
        assert first != second


def test_successful_build_copies_outputs(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, hello_world_source: str
) -> None:
    seen: dict[str, object] = {}

    def fake_run(command: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        workspace = Path(str(kwargs["cwd"]))
        seen["command"] = command
        seen["project"] = (workspace / "App.csproj").read_text()
        seen["source"] = (workspace / "Program.cs").read_text()
        out = Path(command[command.index("-o") + 1])
        out.mkdir(parents=True)
        for name in ("App.dll", "App", "App.runtimeconfig.json"):
            (out / name).write_text(name)
        return subprocess.CompletedProcess(command, 0, stdout="Build succeeded.\n", stderr="")

    monkeypatch.setattr(external_module.subprocess, "run", fake_run)
    context = _context(tmp_path)
    (context.output_dir).mkdir()
    (context.output_dir / "App.dll").write_text("stale")
    request = CompilationRequest(
        source=hello_world_source,
        build_mode=BuildMode.DEBUG,
        strategy=CompileStrategy.EXTERNAL,
        packages=(PackageRequest.parse("Newtonsoft.Json==13.0.1"),),
    )

    result = ExternalBuildBackend().compile(request, context)

    command = seen["command"]
    assert command[:2] == ["dotnet", "build"]
    assert command[command.index("-c") + 1] == "Debug"
    assert "net6.0" in str(seen["project"])
    assert "Newtonsoft.Json" in str(seen["project"])
    assert seen["source"] == hello_world_source
    assert (context.output_dir / "App.dll").read_text() == "App.dll"
    assert (context.output_dir / "App.runtimeconfig.json").is_file()
    assert result.success is True
    assert result.strategy is CompileStrategy.EXTERNAL
    assert "Build succeeded." in result.output
    assert _workspaces(tmp_path) == []


def test_failed_build_embeds_toolchain_output(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, hello_world_source: str
) -> None:
    def fake_run(command: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(
            command,
            1,
            stdout="Program.cs(5,13): error CS1002: ; expected\n",
            stderr="Build FAILED.\n",
        )

    monkeypatch.setattr(external_module.subprocess, "run", fake_run)

    with pytest.raises(CompilationError) as excinfo:
        ExternalBuildBackend().compile(
            CompilationRequest(source=hello_world_source), _context(tmp_path)
        )

    message = str(excinfo.value)
    assert "error CS1002: ; expected" in message
    assert "Build FAILED." in message
    assert excinfo.value.diagnostics == []
    assert _workspaces(tmp_path) == []
    assert not (tmp_path / "out").exists()


def test_missing_dotnet_is_a_launch_error(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, hello_world_source: str
) -> None:
    def fake_run(command: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        raise FileNotFoundError(command[0])

    monkeypatch.setattr(external_module.subprocess, "run", fake_run)

    with pytest.raises(ProcessLaunchError):
        ExternalBuildBackend("/missing/dotnet").compile(
            CompilationRequest(source=hello_world_source), _context(tmp_path)
        )
    assert _workspaces(tmp_path) == []
