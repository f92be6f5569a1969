"""Run a built artifact and stream its output as typed events."""

from __future__ import annotations

import asyncio
import codecs
import csv
import io
import logging
import os
import shlex
import signal
import subprocess
import sys
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from pathlib import Path

from sharprun.config import get_settings

logger = logging.getLogger(__name__)

_READ_LIMIT = 1 << 20
_POSIX_COMM_LENGTH = 15
_IS_WINDOWS = sys.platform == "win32"


@dataclass(frozen=True, slots=True)
class OutputLine:
    text: str


@dataclass(frozen=True, slots=True)
class ErrorLine:
    text: str


@dataclass(frozen=True, slots=True)
class Exited:
    exit_code: int | None


ProcessEvent = OutputLine | ErrorLine | Exited


def _quote(value: str) -> str:
    if _IS_WINDOWS:
        return subprocess.list2cmdline([value])
    return shlex.quote(value)


def launch_command(path: Path, dotnet_executable: str | None = None) -> str:
    """Shell command line for *path*; framework-dependent ``.dll`` files go through dotnet."""
    if path.suffix.lower() == ".dll":
        dotnet = dotnet_executable or get_settings().dotnet_executable
        command = f"{_quote(dotnet)} {_quote(str(path))}"
    else:
        command = _quote(str(path))
    # exec keeps the shell from sitting between us and the program.
    return command if _IS_WINDOWS else f"exec {command}"


class ProcessSupervisor:
    """Owns at most one running child process.

    Output arrives through :meth:`events` as ``OutputLine`` / ``ErrorLine``
    items followed by exactly one ``Exited``. Launch failures are reported the
    same way instead of being raised.
    """

    def __init__(self, dotnet_executable: str | None = None) -> None:
        self._dotnet = dotnet_executable
        self._queue: asyncio.Queue[ProcessEvent] = asyncio.Queue()
        self._process: asyncio.subprocess.Process | None = None
        self._watcher: asyncio.Task[None] | None = None
        self.file_path: Path | None = None
        self.working_directory: Path | None = None

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def execute(
        self, path: str | Path, working_directory: str | Path | None = None
    ) -> None:
        if self._process is not None:
            await self.stop()
        self._queue = asyncio.Queue()
        self.file_path = Path(path)
        self.working_directory = Path(working_directory) if working_directory else (
            self.file_path.parent
        )
        if not self.file_path.is_file():
            self._fail(f"cannot start {self.file_path}: file not found")
            return

        command = launch_command(self.file_path, self._dotnet)
        logger.info("Starting %s in %s", self.file_path.name, self.working_directory)
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=str(self.working_directory),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_READ_LIMIT,
                start_new_session=not _IS_WINDOWS,
            )
        except OSError as exc:
            self._fail(f"cannot start {self.file_path}: {exc}")
            return

        self._process = process
        assert process.stdout is not None and process.stderr is not None
        readers = [
            asyncio.create_task(self._pump(process.stdout, OutputLine)),
            asyncio.create_task(self._pump(process.stderr, ErrorLine)),
        ]
        self._watcher = asyncio.create_task(self._watch(process, readers))

    def _fail(self, message: str) -> None:
        logger.warning(message)
        self._queue.put_nowait(ErrorLine(message))
        self._queue.put_nowait(Exited(exit_code=None))

    async def _pump(
        self, stream: asyncio.StreamReader, factory: Callable[[str], ProcessEvent]
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        continued = False
        while True:
            try:
                chunk, ended = await stream.readuntil(b"\n"), True
            except asyncio.IncompleteReadError as exc:
                chunk, ended = exc.partial, True
            except asyncio.LimitOverrunError as exc:
                # Line longer than the read limit: forward what is buffered, the rest follows.
                chunk, ended = await stream.readexactly(exc.consumed), False
            if not chunk:
                return
            text = decoder.decode(chunk, final=ended).rstrip("\r\n")
            # Skip the bare newline that closes an oversized line.
            if text or not continued:
                await self._queue.put(factory(text))
            continued = not ended

    async def _watch(
        self, process: asyncio.subprocess.Process, readers: list[asyncio.Task[None]]
    ) -> None:
        await asyncio.gather(*readers)
        exit_code = await process.wait()
        if self._process is process:
            self._process = None
        logger.info("%s exited with %s", self.file_path.name if self.file_path else "", exit_code)
        await self._queue.put(Exited(exit_code=exit_code))

    async def events(self) -> AsyncIterator[ProcessEvent]:
        """Yield events of the current run up to and including ``Exited``."""
        while True:
            event = await self._queue.get()
            yield event
            if isinstance(event, Exited):
                return

    async def stop(self) -> None:
        process, watcher = self._process, self._watcher
        if process is None or watcher is None:
            return
        if process.returncode is None:
            logger.info("Stopping %s (pid %d)", self.file_path, process.pid)
            try:
                if _IS_WINDOWS:
                    process.kill()
                else:
                    os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        await watcher
        self._watcher = None


@dataclass(frozen=True, slots=True)
class KillOutcome:
    pid: int
    name: str
    killed: bool
    detail: str = ""


def _list_processes() -> list[tuple[int, str]]:
    if _IS_WINDOWS:
        command = ["tasklist", "/FO", "CSV", "/NH"]
    else:
        command = ["ps", "-A", "-o", "pid=", "-o", "comm="]
    try:
        proc = subprocess.run(command, capture_output=True, text=True, timeout=10, check=False)
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.warning("Listing processes failed: %s", exc)
        return []
    if proc.returncode != 0:
        logger.warning("%s exited with %d", command[0], proc.returncode)
        return []

    found: list[tuple[int, str]] = []
    if _IS_WINDOWS:
        for row in csv.reader(io.StringIO(proc.stdout)):
            if len(row) >= 2 and row[1].isdigit():
                found.append((int(row[1]), row[0]))
        return found
    for line in proc.stdout.splitlines():
        pid, _, comm = line.strip().partition(" ")
        if pid.isdigit():
            found.append((int(pid), Path(comm.strip()).name))
    return found


def _base_name(name: str) -> str:
    stem = Path(name).name
    for suffix in (".exe", ".dll"):
        if stem.lower().endswith(suffix):
            stem = stem[: -len(suffix)]
    return stem


def _matches(process_name: str, target: str) -> bool:
    candidate = _base_name(process_name)
    if _IS_WINDOWS:
        return candidate.lower() == target.lower()
    # Linux truncates comm to 15 characters.
    return candidate == target or (
        len(target) > _POSIX_COMM_LENGTH and candidate == target[:_POSIX_COMM_LENGTH]
    )


def _alive(pid: int) -> bool:
    if _IS_WINDOWS:
        return any(found == pid for found, _ in _list_processes())
    try:
        reaped, _ = os.waitpid(pid, os.WNOHANG)
        if reaped == pid:
            return False
    except ChildProcessError:
        pass
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def kill_processes(name: str, *, wait_timeout_s: float = 5.0) -> list[KillOutcome]:
    """Terminate every process whose name matches the artifact base name."""
    target = _base_name(name)
    if not target:
        return []
    own_pid = os.getpid()
    outcomes: list[KillOutcome] = []
    for pid, process_name in _list_processes():
        if pid == own_pid or not _matches(process_name, target):
            continue
        try:
            os.kill(pid, signal.SIGTERM if _IS_WINDOWS else signal.SIGKILL)
        except ProcessLookupError:
            logger.warning("Process %s (pid %d) already exited", process_name, pid)
            outcomes.append(KillOutcome(pid, process_name, killed=False, detail="already exited"))
            continue
        except PermissionError as exc:
            logger.warning("Cannot kill %s (pid %d): %s", process_name, pid, exc)
            outcomes.append(
                KillOutcome(pid, process_name, killed=False, detail="permission denied")
            )
            continue
        except OSError as exc:
            logger.warning("Cannot kill %s (pid %d): %s", process_name, pid, exc)
            outcomes.append(KillOutcome(pid, process_name, killed=False, detail=str(exc)))
            continue

        deadline = time.monotonic() + wait_timeout_s
        while _alive(pid) and time.monotonic() < deadline:
            time.sleep(0.05)
        if _alive(pid):
            logger.warning("Process %s (pid %d) still running after kill", process_name, pid)
            outcomes.append(KillOutcome(pid, process_name, killed=False, detail="timed out"))
        else:
            logger.info("Killed %s (pid %d)", process_name, pid)
            outcomes.append(KillOutcome(pid, process_name, killed=True))
    return outcomes
