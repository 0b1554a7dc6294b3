"""Host signal handling.

Ctrl+C in front of a running tool should stop the tool, not the host:
- SIGINT: stop the running tools (or exit, depending on TR_SIGINT_MODE)
- SIGTERM: stop the running tools and shut the host down

Tools launched through the escalation front-end belong to root, so a plain
signal from the host is refused. Those are stopped with an elevated
``kill`` instead.

Configuration:
- TR_SIGINT_MODE: cancel | exit | cancel_then_exit
- TR_SIGINT_DOUBLE_TAP_WINDOW: second Ctrl+C within this window forces exit
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from typing import Any, Callable, Optional

from .config import SigintMode, get_config
from .runtime import ProcessRunner, send_signal_elevated
from .runtime.registry import HandleRegistry

__all__ = ["SignalManager"]

logger = logging.getLogger(__name__)


class SignalManager:
    """Stops a runner's children when the host is interrupted.

    Example:
        ```python
        runner = ProcessRunner()
        signal_manager = SignalManager(runner)

        await signal_manager.start()
        try:
            result = await runner.run_streaming(...)
            await result.handle.wait()
        finally:
            await signal_manager.stop()
        ```

    Attributes:
        runner: runner whose children are stopped
        sigint_mode: what Ctrl+C does
        double_tap_window: seconds within which a second Ctrl+C forces exit
    """

    def __init__(
        self,
        runner: ProcessRunner,
        sigint_mode: Optional[SigintMode] = None,
        double_tap_window: Optional[float] = None,
        on_shutdown: Optional[Callable[[], None]] = None,
    ) -> None:
        self.runner = runner

        config = get_config()
        self.sigint_mode = sigint_mode if sigint_mode is not None else config.sigint_mode
        self.double_tap_window = (
            double_tap_window if double_tap_window is not None else config.sigint_double_tap_window
        )
        self._on_shutdown = on_shutdown

        # monotonic deadline until which another Ctrl+C forces exit
        self._force_deadline: float = 0.0
        self._shutdown = asyncio.Event()
        self._force_exit = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous_sigint: Any = None
        self._elevated_kills: set[asyncio.Task[bool]] = set()

    @property
    def registry(self) -> HandleRegistry:
        return self.runner.registry

    @property
    def is_shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    @property
    def is_force_exit(self) -> bool:
        """True after a second Ctrl+C inside the window."""
        return self._force_exit

    @property
    def installed(self) -> bool:
        return self._loop is not None

    async def start(self) -> None:
        """Install the handlers on the running loop."""
        if self.installed:
            logger.warning("Signal handlers already installed")
            return

        self._loop = asyncio.get_running_loop()
        if sys.platform == "win32":
            self._previous_sigint = signal.signal(
                signal.SIGINT, lambda signum, frame: self._loop.call_soon_threadsafe(self._on_sigint)
            )
        else:
            self._loop.add_signal_handler(signal.SIGINT, self._on_sigint)
            self._loop.add_signal_handler(signal.SIGTERM, self.request_shutdown)
        logger.debug(
            f"Signal handlers installed (mode={self.sigint_mode.value}, "
            f"double_tap_window={self.double_tap_window}s)"
        )

    async def stop(self) -> None:
        """Remove the handlers and let pending elevated kills finish."""
        loop = self._loop
        if loop is None:
            return
        self._loop = None

        if sys.platform == "win32":
            signal.signal(signal.SIGINT, self._previous_sigint or signal.default_int_handler)
        else:
            loop.remove_signal_handler(signal.SIGINT)
            loop.remove_signal_handler(signal.SIGTERM)

        if self._elevated_kills:
            await asyncio.gather(*self._elevated_kills, return_exceptions=True)
        logger.debug("Signal handlers removed")

    async def wait_for_shutdown(self) -> None:
        await self._shutdown.wait()

    async def close_runner(self) -> None:
        """Stop everything the runner still has running, then close it."""
        self.stop_running()
        if self._elevated_kills:
            await asyncio.gather(*self._elevated_kills, return_exceptions=True)
        await self.runner.aclose()

    def stop_running(self) -> int:
        """Send SIGTERM to every live child.

        Children that refuse a plain signal and were launched elevated are
        signalled through the escalation front-end in the background.

        Returns:
            Number of children a signal was sent (or scheduled) for
        """
        stopped = 0
        for handle in self.registry.list_active():
            pid = handle.process_identifier
            if self.registry.cancel(pid):
                stopped += 1
            elif handle.invocation.elevated and self._loop is not None:
                logger.info(f"Stopping elevated pid={pid} through the front-end")
                task = self._loop.create_task(
                    send_signal_elevated(self.runner, pid, signal.SIGTERM),
                    name=f"toolrunner-elevated-kill-{pid}",
                )
                self._elevated_kills.add(task)
                task.add_done_callback(self._elevated_kills.discard)
                stopped += 1
        return stopped

    def request_shutdown(self) -> None:
        """Stop all children and ask the host to exit (SIGTERM does this)."""
        logger.info("Shutdown requested")
        self.stop_running()
        self._begin_shutdown()

    def _on_sigint(self) -> None:
        now = time.monotonic()
        if now < self._force_deadline:
            logger.warning("Second Ctrl+C, forcing exit")
            self._force_exit = True
            self.request_shutdown()
            return

        if self.sigint_mode is SigintMode.EXIT:
            logger.info("Ctrl+C (mode=exit)")
            self.request_shutdown()
            return

        if not self.registry.has_active_handles():
            logger.info(f"Ctrl+C (mode={self.sigint_mode.value}) with nothing running")
            self._begin_shutdown()
            return

        stopped = self.stop_running()
        if stopped == 0:
            # nothing could be signalled; exiting is the only way out
            logger.warning("Ctrl+C could not stop any running tool, shutting down")
            self._begin_shutdown()
            return

        logger.info(f"Ctrl+C (mode={self.sigint_mode.value}): stopping {stopped} tool(s)")
        if self.sigint_mode is SigintMode.CANCEL_THEN_EXIT:
            self._force_deadline = now + self.double_tap_window

    def _begin_shutdown(self) -> None:
        self._force_deadline = time.monotonic() + self.double_tap_window
        if self._shutdown.is_set():
            return
        self._shutdown.set()

        if self._on_shutdown is not None:
            try:
                self._on_shutdown()
            except Exception as e:
                logger.warning(f"Error in shutdown callback: {e}")
