"""Running built artifacts."""

from sharprun.process.supervisor import (
    ErrorLine,
    Exited,
    KillOutcome,
    OutputLine,
    ProcessEvent,
    ProcessSupervisor,
    kill_processes,
)

__all__ = [
    "ErrorLine",
    "Exited",
    "KillOutcome",
    "OutputLine",
    "ProcessEvent",
    "ProcessSupervisor",
    "kill_processes",
]
