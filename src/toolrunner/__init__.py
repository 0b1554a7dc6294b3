"""toolrunner - subprocess orchestration for command-line security tools.

Environment variables:
    TR_ELEVATION_COMMAND: privilege-escalation front-end (default pkexec)
    TR_LOG_DEBUG: write debug logs to a temp file (default false)

Usage:
    python -m toolrunner run dirb https://example.com /usr/share/wordlists/common.txt
"""

__version__ = "0.1.0"

from .reporting import describe_termination
from .runtime import (
    AbnormalExitError,
    ElevationError,
    HandleRegistry,
    ProcessRunner,
    SpawnError,
    TerminationEvent,
    send_signal,
    send_signal_elevated,
)

__all__ = [
    "AbnormalExitError",
    "ElevationError",
    "HandleRegistry",
    "ProcessRunner",
    "SpawnError",
    "TerminationEvent",
    "__version__",
    "describe_termination",
    "send_signal",
    "send_signal_elevated",
]
