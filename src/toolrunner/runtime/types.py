"""Invocation and handle types shared by the runner and the registry."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .argv import validate_argv
from .events import OutputEvent, TerminationEvent

__all__ = [
    "DataCallback",
    "Invocation",
    "PrivilegeMode",
    "ProcessHandle",
    "StreamingResult",
    "TerminationCallback",
]

logger = logging.getLogger(__name__)

# Receives the text of each output chunk
DataCallback = Callable[[str], None]
# Receives the single termination event
TerminationCallback = Callable[[TerminationEvent], None]


class PrivilegeMode(str, Enum):
    NORMAL = "normal"
    ELEVATED = "elevated"


@dataclass(frozen=True)
class Invocation:
    """One request to run a program with a specific argument vector.

    Attributes:
        program: executable name or path, resolved through PATH at spawn time
        args: ordered arguments, passed to the OS as-is
        privilege: NORMAL, or ELEVATED to launch through the escalation front-end
        cwd: working directory (None = inherit)
        env: environment variables (None = inherit parent)
    """

    program: str
    args: tuple[str, ...] = ()
    privilege: PrivilegeMode = PrivilegeMode.NORMAL
    cwd: Path | None = None
    env: Mapping[str, str] | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.program, str):
            raise TypeError(f"program must be str, got {type(self.program).__name__}")
        if not self.program.strip():
            raise ValueError("program must not be empty")
        object.__setattr__(self, "args", validate_argv(self.args))

    @property
    def elevated(self) -> bool:
        return self.privilege is PrivilegeMode.ELEVATED

    def argv(self, elevation_command: tuple[str, ...] = ()) -> list[str]:
        """Full argv for the OS, prefixed by the front-end when elevated."""
        prefix = list(elevation_command) if self.elevated else []
        return [*prefix, self.program, *self.args]


@dataclass(eq=False)
class ProcessHandle:
    """Identity and callback bindings of one live child process.

    The identifier is cleared the moment the termination event fires, so a
    stale handle can never be used to signal a recycled pid.
    """

    process_identifier: str
    invocation: Invocation
    on_data: DataCallback | None = None
    on_termination: TerminationCallback | None = None
    _termination: TerminationEvent | None = field(default=None, init=False, repr=False)
    _terminated: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)

    @property
    def alive(self) -> bool:
        return self._termination is None

    @property
    def pid(self) -> int | None:
        return int(self.process_identifier) if self.process_identifier else None

    @property
    def privilege(self) -> PrivilegeMode:
        return self.invocation.privilege

    @property
    def termination(self) -> TerminationEvent | None:
        return self._termination

    def deliver(self, event: OutputEvent) -> None:
        """Hand one output chunk to the data callback.

        Chunks arriving after termination are dropped.
        """
        if not self.alive:
            logger.debug(f"Dropping output after termination: {event.text[:40]!r}")
            return
        if self.on_data is None:
            return
        try:
            self.on_data(event.text)
        except Exception as e:
            logger.warning(f"Error in data callback pid={self.process_identifier}: {e}")

    def finish(self, event: TerminationEvent) -> bool:
        """Fire the termination callback once; later calls are ignored.

        Returns:
            True if this call delivered the event
        """
        if not self.alive:
            return False
        self._termination = event
        pid = self.process_identifier
        self.process_identifier = ""
        self._terminated.set()

        if self.on_termination is not None:
            try:
                self.on_termination(event)
            except Exception as e:
                logger.warning(f"Error in termination callback pid={pid}: {e}")
        return True

    async def wait(self) -> TerminationEvent:
        """Wait for the termination event."""
        await self._terminated.wait()
        if self._termination is None:
            raise RuntimeError("termination event missing after the terminated flag was set")
        return self._termination


@dataclass(frozen=True)
class StreamingResult:
    """What a streaming launch resolves to once the child is spawned.

    Attributes:
        process_identifier: pid as a string, for display and cancellation
        initial_output: output captured before the call returned
        handle: the live handle; ``await handle.wait()`` for the end
    """

    process_identifier: str
    initial_output: str
    handle: ProcessHandle
