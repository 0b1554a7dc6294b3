"""Exceptions raised by the process runner.

Only failures a caller can act on synchronously are exceptions. Once a child
is running, every outcome (non-zero exit, signal, stream trouble) is reported
as data in the termination event instead.
"""

from __future__ import annotations

from enum import Enum

__all__ = [
    "AbnormalExitError",
    "ElevationError",
    "ProcessRunnerError",
    "SpawnError",
    "SpawnFailureKind",
]


class SpawnFailureKind(str, Enum):
    """Why an invocation never reached the running state."""

    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    OS_ERROR = "os_error"
    ELEVATION_UNAVAILABLE = "elevation_unavailable"
    ELEVATION_DECLINED = "elevation_declined"
    ELEVATION_FAILED = "elevation_failed"

    @property
    def is_elevation(self) -> bool:
        return self in (
            SpawnFailureKind.ELEVATION_UNAVAILABLE,
            SpawnFailureKind.ELEVATION_DECLINED,
            SpawnFailureKind.ELEVATION_FAILED,
        )


class ProcessRunnerError(Exception):
    """Base class for process runner errors."""
    pass


class SpawnError(ProcessRunnerError):
    """The program could not be launched.

    Attributes:
        program: program name as given by the caller
        kind: failure category
        message: human-readable reason
    """

    def __init__(self, program: str, kind: SpawnFailureKind, message: str) -> None:
        self.program = program
        self.kind = kind
        self.message = message
        super().__init__(f"{program}: {message}")


class ElevationError(SpawnError):
    """The privilege-escalation front-end failed, was missing or was declined."""
    pass


class AbnormalExitError(ProcessRunnerError):
    """A run-to-completion child ran but did not exit cleanly.

    Attributes:
        program: program name
        output: everything the child wrote before it ended
        exit_code: exit status, None when killed by a signal
        signal: signal number, None on a normal exit
    """

    def __init__(
        self,
        program: str,
        output: str,
        exit_code: int | None,
        signal: int | None,
    ) -> None:
        self.program = program
        self.output = output
        self.exit_code = exit_code
        self.signal = signal
        if signal is not None:
            detail = f"terminated by signal {signal}"
        else:
            detail = f"exited with code {exit_code}"
        super().__init__(f"{program} {detail}")
