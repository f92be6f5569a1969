"""Compile and run single-file C# programs against installed .NET toolchains."""

__version__ = "0.1.0"
