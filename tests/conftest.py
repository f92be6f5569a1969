import os
from pathlib import Path

import pytest

from sharprun.config import get_settings

HELLO_WORLD = """using System;

namespace Demo
{
    public static class Program
    {
        public static void Main(string[] args)
        {
            Console.WriteLine("hello");
        }
    }
}
"""


@pytest.fixture(autouse=True)
def test_env(tmp_path: Path):
    packages_dir = tmp_path / "packages"
    workspace_dir = tmp_path / "workspaces"
    os.environ["APP_ENV"] = "dev"
    os.environ["PACKAGES_DIR"] = str(packages_dir)
    os.environ["BUILD_WORKSPACE_DIR"] = str(workspace_dir)
    os.environ["PACKAGE_SOURCES"] = "https://api.nuget.org/v3/index.json"
    os.environ["PACKAGE_DEPENDENCY_BEHAVIOR"] = "lowest"
    os.environ["DOTNET_EXECUTABLE"] = "dotnet"
    os.environ["DEFAULT_APP_NAME"] = "App"
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def hello_world_source() -> str:
    return HELLO_WORLD
