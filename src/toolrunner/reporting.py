"""Human-readable outcome lines for tool consoles."""

from __future__ import annotations

from .runtime.events import Outcome, TerminationEvent

__all__ = ["describe_termination"]

COMPLETED_MESSAGE = "Process completed successfully."
CANCELLED_MESSAGE = "Process was manually terminated."


def describe_termination(event: TerminationEvent) -> str:
    """Return the line a tool console appends when a process ends.

    Example:
        >>> describe_termination(TerminationEvent(exit_code=0))
        'Process completed successfully.'
    """
    if event.error is not None:
        return f"Process could not be started: {event.error.message}"
    outcome = event.outcome
    if outcome is Outcome.COMPLETED:
        return COMPLETED_MESSAGE
    if outcome is Outcome.CANCELLED:
        return CANCELLED_MESSAGE
    return (
        f"Process terminated with exit code: {event.exit_code} "
        f"and signal code: {event.signal}"
    )
