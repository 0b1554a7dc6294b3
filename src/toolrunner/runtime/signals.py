"""Out-of-band signal delivery to a previously spawned child.

Cancellation is racy by nature: the child may exit between the moment a
caller reads its identifier and the moment the signal is sent. Every failure
here is therefore logged and reported as ``False``, never raised.
"""

from __future__ import annotations

import logging
import os
import signal
import sys
from typing import TYPE_CHECKING

from .errors import ProcessRunnerError

if TYPE_CHECKING:
    from .process_runner import ProcessRunner

__all__ = ["parse_process_identifier", "send_signal", "send_signal_elevated"]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"


def parse_process_identifier(process_identifier: str | int | None) -> int | None:
    """Turn a displayed identifier back into a pid, or None if it is not one."""
    if process_identifier is None or isinstance(process_identifier, bool):
        return None
    if isinstance(process_identifier, int):
        pid = process_identifier
    else:
        text = str(process_identifier).strip()
        if not text.isdigit():
            return None
        pid = int(text)
    # 0 and negatives address process groups in kill(2)
    return pid if pid > 0 else None


def send_signal(
    process_identifier: str | int | None,
    signal_number: int = signal.SIGTERM,
    *,
    group: bool = False,
) -> bool:
    """Send ``signal_number`` to a child.

    Args:
        process_identifier: pid as returned by a streaming launch
        signal_number: any signal number; SIGTERM by default
        group: signal the whole process group led by the pid (POSIX)

    Returns:
        True if the OS accepted the signal
    """
    pid = parse_process_identifier(process_identifier)
    if pid is None:
        logger.debug(f"Ignoring signal {signal_number} for invalid identifier {process_identifier!r}")
        return False

    try:
        if group and not IS_WINDOWS:
            os.killpg(pid, signal_number)
            logger.debug(f"Sent signal {signal_number} to process group pgid={pid}")
        else:
            os.kill(pid, signal_number)
            logger.debug(f"Sent signal {signal_number} to pid={pid}")
        return True
    except ProcessLookupError:
        logger.debug(f"Process already exited pid={pid}")
    except PermissionError:
        logger.warning(
            f"Not permitted to signal pid={pid}; elevated children need send_signal_elevated()"
        )
    except (OSError, ValueError, OverflowError) as e:
        logger.warning(f"Failed to send signal {signal_number} to pid={pid}: {e}")
    return False


async def send_signal_elevated(
    runner: "ProcessRunner",
    process_identifier: str | int | None,
    signal_number: int = signal.SIGTERM,
) -> bool:
    """Signal a child that runs with elevated privileges.

    Runs ``kill -<n> <pid>`` through the runner's escalation front-end as an
    independent invocation. Spawn failures, a declined prompt and ``kill``
    reporting a missing process all come back as ``False``.
    """
    pid = parse_process_identifier(process_identifier)
    if pid is None:
        logger.debug(f"Ignoring elevated signal for invalid identifier {process_identifier!r}")
        return False

    try:
        await runner.run_to_completion(
            "kill",
            [f"-{int(signal_number)}", str(pid)],
            elevated=True,
        )
    except ProcessRunnerError as e:
        logger.warning(f"Elevated signal {signal_number} to pid={pid} failed: {e}")
        return False
    logger.debug(f"Sent signal {signal_number} to elevated pid={pid}")
    return True
