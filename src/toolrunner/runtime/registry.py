"""Registry of live process handles.

Screens never keep "the current pid" in a shared slot. Each streaming
invocation's handle lives here under its process identifier, and callers
look it up (or signal it) through the identifier they were given.
"""

from __future__ import annotations

import logging
import signal
from typing import Callable, Dict, Optional

from .signals import send_signal
from .types import ProcessHandle

__all__ = ["HandleRegistry"]

logger = logging.getLogger(__name__)


class HandleRegistry:
    """Live handles keyed by process identifier.

    Provides:
    - registration when a child spawns, removal when it terminates
    - signalling one or all live children
    - liveness queries

    Not thread-safe: callers stay on the event loop that runs the children.

    Example:
        ```python
        registry = runner.registry
        result = await runner.run_streaming("dirb", args, on_data, on_term)

        # cancel button
        registry.cancel(result.process_identifier)

        # shutdown
        registry.cancel_all()
        ```
    """

    def __init__(self) -> None:
        self._handles: Dict[str, ProcessHandle] = {}
        self._on_empty_callbacks: list[Callable[[], None]] = []

    def register(self, handle: ProcessHandle) -> None:
        """Add a freshly spawned handle.

        Raises:
            ValueError: if the identifier is empty or already registered
        """
        process_identifier = handle.process_identifier
        if not process_identifier:
            raise ValueError("Cannot register a handle without a process identifier")
        if process_identifier in self._handles:
            raise ValueError(f"Process {process_identifier} already registered")

        self._handles[process_identifier] = handle
        logger.debug(
            f"Registered pid={process_identifier} program={handle.invocation.program} "
            f"privilege={handle.privilege.value}"
        )

    def unregister(self, process_identifier: str) -> bool:
        """Remove a handle.

        Returns:
            True if the identifier was registered
        """
        handle = self._handles.pop(process_identifier, None)
        if handle is None:
            return False

        logger.debug(f"Unregistered pid={process_identifier} program={handle.invocation.program}")

        if not self._handles and self._on_empty_callbacks:
            for callback in self._on_empty_callbacks:
                try:
                    callback()
                except Exception as e:
                    logger.warning(f"Error in on_empty callback: {e}")
        return True

    def get(self, process_identifier: str) -> Optional[ProcessHandle]:
        return self._handles.get(process_identifier)

    def signal(self, process_identifier: str, signal_number: int = signal.SIGTERM) -> bool:
        """Send a signal to a registered child and its process group.

        Unknown or already terminated identifiers are ignored.

        Returns:
            True if the signal was delivered
        """
        handle = self._handles.get(process_identifier)
        if handle is None or not handle.alive:
            logger.debug(f"No live process for identifier {process_identifier!r}")
            return False
        return send_signal(process_identifier, signal_number, group=True)

    def cancel(self, process_identifier: str) -> bool:
        """Ask one child to stop (SIGTERM)."""
        delivered = self.signal(process_identifier, signal.SIGTERM)
        if delivered:
            logger.info(f"Cancelled pid={process_identifier}")
        return delivered

    def cancel_all(self) -> int:
        """Send SIGTERM to every live child.

        Returns:
            Number of children the signal was delivered to
        """
        cancelled = 0
        for handle in list(self._handles.values()):
            if handle.alive and self.cancel(handle.process_identifier):
                cancelled += 1

        if cancelled > 0:
            logger.info(f"Cancelled {cancelled} running process(es)")

        return cancelled

    def has_active_handles(self) -> bool:
        return any(handle.alive for handle in self._handles.values())

    @property
    def active_count(self) -> int:
        return sum(1 for handle in self._handles.values() if handle.alive)

    @property
    def total_count(self) -> int:
        return len(self._handles)

    def list_active(self) -> list[ProcessHandle]:
        """Live handles in registration order."""
        return [handle for handle in self._handles.values() if handle.alive]

    def add_on_empty_callback(self, callback: Callable[[], None]) -> None:
        """Call ``callback`` whenever the last handle is removed."""
        self._on_empty_callbacks.append(callback)

    def remove_on_empty_callback(self, callback: Callable[[], None]) -> None:
        if callback in self._on_empty_callbacks:
            self._on_empty_callbacks.remove(callback)

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, process_identifier: str) -> bool:
        return process_identifier in self._handles
