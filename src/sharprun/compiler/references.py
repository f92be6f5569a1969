"""Baseline framework references for the embedded compiler."""

from __future__ import annotations

import logging
from pathlib import Path

from sharprun.packages.models import ReferenceSet

logger = logging.getLogger(__name__)

# Core runtime, collections, concurrency, console I/O and dynamic binding.
BASELINE_ASSEMBLIES = (
    "System.Private.CoreLib.dll",
    "System.Runtime.dll",
    "System.Collections.dll",
    "System.Collections.Concurrent.dll",
    "System.Threading.dll",
    "System.Threading.Tasks.dll",
    "System.Console.dll",
    "System.Linq.dll",
    "System.Linq.Expressions.dll",
    "Microsoft.CSharp.dll",
    "netstandard.dll",
)
REQUIRED_ASSEMBLIES = frozenset({"System.Private.CoreLib.dll", "System.Runtime.dll"})


def baseline_references(runtime_dir: Path) -> ReferenceSet:
    references = ReferenceSet()
    for name in BASELINE_ASSEMBLIES:
        path = runtime_dir / name
        if path.is_file():
            references.add(path)
        elif name in REQUIRED_ASSEMBLIES:
            raise FileNotFoundError(f"{name} missing from {runtime_dir}")
        else:
            logger.debug("Baseline assembly %s not present in %s", name, runtime_dir)
    return references
