"""Application configuration contract."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEPENDENCY_BEHAVIORS = ("lowest", "highest")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field(alias="APP_ENV", default="dev")
    log_level: str = Field(alias="LOG_LEVEL", default="INFO")

    dotnet_executable: str = Field(alias="DOTNET_EXECUTABLE", default="dotnet")
    dotnet_root: str = Field(alias="DOTNET_ROOT", default="")
    roslyn_dir: str = Field(alias="ROSLYN_DIR", default="")
    toolchain_probe_timeout_seconds: float = Field(
        alias="TOOLCHAIN_PROBE_TIMEOUT_SECONDS", default=1.0
    )

    package_sources: str = Field(
        alias="PACKAGE_SOURCES", default="https://api.nuget.org/v3/index.json"
    )
    packages_dir: str = Field(alias="PACKAGES_DIR", default="~/.nuget/packages")
    package_target_framework: str = Field(
        alias="PACKAGE_TARGET_FRAMEWORK", default="netstandard2.1"
    )
    package_dependency_behavior: str = Field(
        alias="PACKAGE_DEPENDENCY_BEHAVIOR", default="lowest"
    )
    registry_timeout_seconds: int = Field(alias="REGISTRY_TIMEOUT_SECONDS", default=30)
    registry_user_agent: str = Field(alias="REGISTRY_USER_AGENT", default="sharprun/0.1")

    # Empty means the platform temp directory.
    build_workspace_dir: str = Field(alias="BUILD_WORKSPACE_DIR", default="")
    default_app_name: str = Field(alias="DEFAULT_APP_NAME", default="App")


def package_source_list(settings: Settings) -> list[str]:
    return [item.strip() for item in settings.package_sources.split(",") if item.strip()]


def validate_settings_for_env(settings: Settings) -> None:
    import logging as _logging

    _logger = _logging.getLogger(__name__)

    problems: list[str] = []
    behavior = settings.package_dependency_behavior.strip().lower()
    if behavior not in DEPENDENCY_BEHAVIORS:
        problems.append(f"PACKAGE_DEPENDENCY_BEHAVIOR({behavior!r} not in lowest|highest)")
    if not package_source_list(settings):
        problems.append("PACKAGE_SOURCES")
    if settings.toolchain_probe_timeout_seconds <= 0:
        problems.append("TOOLCHAIN_PROBE_TIMEOUT_SECONDS(must be > 0)")
    if not settings.default_app_name.strip():
        problems.append("DEFAULT_APP_NAME")

    if behavior == "highest":
        _logger.warning(
            "PACKAGE_DEPENDENCY_BEHAVIOR=highest: builds will follow newest compatible "
            "package versions and are not reproducible across feed updates"
        )

    if settings.app_env == "prod":
        if not settings.packages_dir.startswith("/"):
            problems.append("PACKAGES_DIR(absolute path required)")
        if settings.build_workspace_dir and not settings.build_workspace_dir.startswith("/"):
            problems.append("BUILD_WORKSPACE_DIR(absolute path required)")

    if problems:
        keys = ", ".join(sorted(set(problems)))
        raise ValueError(f"invalid configuration: {keys}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
