"""Caller-facing compilation facade."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from pathlib import Path

from sharprun.compiler.base import (
    CompilationContext,
    CompilationRequest,
    CompilationResult,
    CompilerBackend,
    CompileStrategy,
)
from sharprun.compiler.embedded import EmbeddedCompileBackend
from sharprun.compiler.external import ExternalBuildBackend
from sharprun.compiler.syntax import ensure_no_free_statements
from sharprun.config import get_settings
from sharprun.ids import new_id
from sharprun.logging import bind_context, clear_context
from sharprun.packages.models import ReferenceSet
from sharprun.packages.resolver import DependencyResolver
from sharprun.toolchain.versions import (
    DotnetVersion,
    discover_installed_versions,
    require_version,
)

logger = logging.getLogger(__name__)


class CompilationService:
    """Probe the toolchain, resolve packages and hand off to a backend.

    The embedded backend compiles against resolved package assemblies; the
    external backend passes package requests to the SDK as PackageReference
    items and does its own restore.
    """

    def __init__(
        self,
        *,
        resolver: DependencyResolver | None = None,
        backends: Mapping[CompileStrategy, CompilerBackend] | None = None,
        version_probe: Callable[[], list[DotnetVersion]] = discover_installed_versions,
    ) -> None:
        self._resolver = resolver
        self._backends: dict[CompileStrategy, CompilerBackend] = dict(backends or {})
        self._version_probe = version_probe

    def backend_for(self, strategy: CompileStrategy) -> CompilerBackend:
        backend = self._backends.get(strategy)
        if backend is None:
            if strategy is CompileStrategy.EXTERNAL:
                backend = ExternalBuildBackend()
            else:
                backend = EmbeddedCompileBackend()
            self._backends[strategy] = backend
        return backend

    @property
    def resolver(self) -> DependencyResolver:
        if self._resolver is None:
            self._resolver = DependencyResolver.from_settings()
        return self._resolver

    async def installed_versions(self) -> list[DotnetVersion]:
        return await asyncio.to_thread(self._version_probe)

    async def compile(self, request: CompilationRequest, output_dir: Path) -> CompilationResult:
        request_id = new_id("cmp")
        bind_context(request_id=request_id, strategy=request.strategy.value)
        try:
            if request.strategy is CompileStrategy.EMBEDDED:
                # Reject free statements before probing or touching package feeds.
                ensure_no_free_statements(request.source)
            installed = await self.installed_versions()
            version = require_version(request.version, installed)
            app_name = request.app_name or get_settings().default_app_name

            references = ReferenceSet()
            if request.strategy is CompileStrategy.EMBEDDED and request.packages:
                references = await self.resolver.resolve(request.packages)

            context = CompilationContext(
                version=version,
                output_dir=Path(output_dir),
                app_name=app_name,
                references=references,
            )
            backend = self.backend_for(request.strategy)
            logger.info(
                "Compiling %s for %s with %s backend",
                app_name,
                version.label,
                request.strategy.value,
            )
            result = await asyncio.to_thread(backend.compile, request, context)
            logger.info("Compiled %s", result.artifact_path)
            return result
        finally:
            clear_context()
