"""Event model for a single invocation.

Every invocation produces one ordered stream:

    StartedEvent -> OutputEvent* -> TerminationEvent

A spawn failure skips straight to a TerminationEvent whose ``error`` is set.
Callbacks, awaitables and async iteration are all consumers of this stream.
"""

from __future__ import annotations

import signal as _signal
import time
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from .errors import ElevationError, SpawnError, SpawnFailureKind

__all__ = [
    "Outcome",
    "OutputEvent",
    "ProcessEvent",
    "SpawnFailure",
    "StartedEvent",
    "StreamName",
    "TerminationEvent",
]

SIGTERM = int(_signal.SIGTERM)


class StreamName(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


class Outcome(str, Enum):
    """Coarse classification of how an invocation ended."""

    COMPLETED = "completed"
    ABNORMAL_EXIT = "abnormal_exit"
    CANCELLED = "cancelled"
    SIGNALLED = "signalled"
    SPAWN_FAILED = "spawn_failed"


class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    timestamp: float = Field(default_factory=time.time)


class StartedEvent(_EventBase):
    """The child was spawned and is running."""

    kind: Literal["started"] = "started"
    process_identifier: str


class OutputEvent(_EventBase):
    """One chunk of child output, normally one line without its terminator.

    ``diagnostic`` marks text produced by the runner itself, e.g. when a
    stream closed unexpectedly.
    """

    kind: Literal["output"] = "output"
    stream: StreamName
    text: str
    diagnostic: bool = False


class SpawnFailure(BaseModel):
    """Spawn failure details carried by a TerminationEvent."""

    model_config = ConfigDict(frozen=True)

    kind: SpawnFailureKind
    message: str

    @classmethod
    def from_error(cls, error: SpawnError) -> "SpawnFailure":
        return cls(kind=error.kind, message=error.message)

    def to_error(self, program: str) -> SpawnError:
        error_cls = ElevationError if self.kind.is_elevation else SpawnError
        return error_cls(program, self.kind, self.message)


class TerminationEvent(_EventBase):
    """The single terminal record of an invocation.

    Attributes:
        exit_code: exit status when the child exited on its own, else None
        signal: raw signal number when the child was killed by a signal, else None
        error: set when the invocation never ran (or the elevation front-end refused)
    """

    kind: Literal["termination"] = "termination"
    exit_code: int | None = None
    signal: int | None = None
    error: SpawnFailure | None = None

    @classmethod
    def from_returncode(cls, returncode: int) -> "TerminationEvent":
        """Normalize a Popen-style return code (negative means killed by signal)."""
        if returncode < 0:
            return cls(exit_code=None, signal=-returncode)
        return cls(exit_code=returncode, signal=None)

    @property
    def outcome(self) -> Outcome:
        if self.error is not None:
            return Outcome.SPAWN_FAILED
        if self.signal is not None:
            return Outcome.CANCELLED if self.signal == SIGTERM else Outcome.SIGNALLED
        if self.exit_code == 0:
            return Outcome.COMPLETED
        return Outcome.ABNORMAL_EXIT

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.COMPLETED


ProcessEvent = StartedEvent | OutputEvent | TerminationEvent
