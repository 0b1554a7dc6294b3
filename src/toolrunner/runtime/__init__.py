"""Runtime module for spawning external tools and streaming their output.

This module provides isolated process execution, a single ordered event
stream per invocation, out-of-band signalling and a registry of live
process handles.
"""

from __future__ import annotations

from .errors import (
    AbnormalExitError,
    ElevationError,
    ProcessRunnerError,
    SpawnError,
    SpawnFailureKind,
)
from .events import (
    Outcome,
    OutputEvent,
    ProcessEvent,
    SpawnFailure,
    StartedEvent,
    StreamName,
    TerminationEvent,
)
from .process_runner import ProcessRunner
from .registry import HandleRegistry
from .signals import send_signal, send_signal_elevated
from .types import Invocation, PrivilegeMode, ProcessHandle, StreamingResult

__all__ = [
    "AbnormalExitError",
    "ElevationError",
    "HandleRegistry",
    "Invocation",
    "Outcome",
    "OutputEvent",
    "PrivilegeMode",
    "ProcessEvent",
    "ProcessHandle",
    "ProcessRunner",
    "ProcessRunnerError",
    "SpawnError",
    "SpawnFailure",
    "SpawnFailureKind",
    "StartedEvent",
    "StreamName",
    "StreamingResult",
    "TerminationEvent",
    "send_signal",
    "send_signal_elevated",
]
