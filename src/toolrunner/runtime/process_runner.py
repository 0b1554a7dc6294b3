"""Process runner: spawn external tools and stream their output.

toolrunner runtime module

This module provides:
- One ordered event stream per invocation (started, output..., termination)
- Run-to-completion, streaming-with-live-pid and elevated launch modes
- Stdout/stderr multiplexing with per-stream ordering
- Termination normalization (exit code, raw signal, spawn failure)
- Cancel-safe cleanup using asyncio.shield

Key design points:
- Arguments are handed to the OS as a vector, never through a shell
- POSIX: start_new_session=True so each child leads its own process group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- Callers cancel with a signal to the pid; only an abandoned stream is
  escalated to SIGKILL
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import subprocess
import sys
from collections.abc import AsyncIterator, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import anyio

from ..config import get_config
from .argv import find_joined_flags, validate_argv
from .errors import AbnormalExitError, ElevationError, SpawnError, SpawnFailureKind
from .events import (
    OutputEvent,
    ProcessEvent,
    SpawnFailure,
    StartedEvent,
    StreamName,
    TerminationEvent,
)
from .registry import HandleRegistry
from .types import (
    DataCallback,
    Invocation,
    PrivilegeMode,
    ProcessHandle,
    StreamingResult,
    TerminationCallback,
)

__all__ = [
    "ProcessRunner",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# pkexec(1): 126 = authentication dialog dismissed, 127 = not authorized or error
ELEVATION_DECLINED_EXIT_CODE = 126
ELEVATION_FAILED_EXIT_CODE = 127

STREAM_ERROR_PREFIX = "[stream error]"

# How often a silent child's event stream checks its cancel scope
CANCEL_POLL_INTERVAL = 0.05

_EOF = object()


class _Execution:
    """Per-invocation state: the child, its two readers and their queue.

    Nothing here is shared between invocations.
    """

    def __init__(self, runner: "ProcessRunner", invocation: Invocation) -> None:
        self.runner = runner
        self.invocation = invocation
        self.process: asyncio.subprocess.Process | None = None
        self.termination: TerminationEvent | None = None
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._readers: list[asyncio.Task[None]] = []
        self._open_streams = 0

    async def events(
        self,
        cancel_scope: anyio.CancelScope | None = None,
    ) -> AsyncIterator[ProcessEvent]:
        """Yield StartedEvent, OutputEvents, then exactly one TerminationEvent.

        Cancelling ``cancel_scope``, or cancelling the consuming task, stops
        the child. The TerminationEvent is still yielded; a task cancellation
        is re-raised on the step after it. If the consumer closes the
        iterator instead, the child is stopped and ``self.termination`` is
        set without being yielded.
        """
        try:
            process = await self.spawn()
        except SpawnError as e:
            logger.debug(f"Spawn failed program={self.invocation.program}: {e.message}")
            self.termination = TerminationEvent(error=SpawnFailure.from_error(e))
            yield self.termination
            return

        yield StartedEvent(process_identifier=str(process.pid))

        termination: TerminationEvent | None = None
        interrupted: BaseException | None = None
        closing = False
        try:
            while True:
                event = await self._next_output(cancel_scope)
                if cancel_scope is not None and cancel_scope.cancel_called:
                    logger.debug(f"Cancel scope triggered pid={process.pid}")
                    break
                if event is None:
                    termination = await self.wait()
                    break
                yield event
        except (anyio.get_cancelled_exc_class(), asyncio.CancelledError) as e:
            logger.debug(f"Consumer cancelled pid={process.pid}")
            interrupted = e
        except GeneratorExit:
            closing = True
            raise
        finally:
            if termination is None:
                try:
                    termination = await self.abandon()
                except (anyio.get_cancelled_exc_class(), asyncio.CancelledError) as e:
                    termination = self.termination
                    if interrupted is None:
                        interrupted = e
            self.termination = termination
            if closing and interrupted is not None:
                raise interrupted

        yield termination
        if interrupted is not None:
            raise interrupted

    async def _next_output(
        self,
        cancel_scope: anyio.CancelScope | None,
    ) -> OutputEvent | None:
        """``next_output``, giving up with None once ``cancel_scope`` is cancelled.

        A silent child must not keep a cancelled scope waiting, so the scope
        is checked every CANCEL_POLL_INTERVAL while no output arrives.
        """
        if cancel_scope is None:
            return await self.next_output()

        getter = asyncio.ensure_future(self.next_output())
        try:
            while not getter.done():
                if cancel_scope.cancel_called:
                    return None
                await asyncio.wait({getter}, timeout=CANCEL_POLL_INTERVAL)
            return getter.result()
        finally:
            if not getter.done():
                getter.cancel()

    async def spawn(self) -> asyncio.subprocess.Process:
        """Start the child.

        Raises:
            SpawnError: the program (or the elevation front-end) could not be launched
        """
        invocation = self.invocation
        argv = invocation.argv(self.runner.elevation_command)
        kwargs = self.runner._build_subprocess_kwargs(invocation)

        try:
            # stdin=DEVNULL: children never inherit the host's stdin
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs,
            )
        except OSError as e:
            raise self._spawn_error(argv[0], e) from e
        except ValueError as e:
            # e.g. an embedded NUL byte in an argument
            raise SpawnError(invocation.program, SpawnFailureKind.OS_ERROR, str(e)) from e

        self.process = process
        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"argv={argv[0]} privilege={invocation.privilege.value}"
        )

        self._open_streams = 2
        self._readers = [
            asyncio.create_task(self._pump_stream(process.stdout, StreamName.STDOUT)),
            asyncio.create_task(self._pump_stream(process.stderr, StreamName.STDERR)),
        ]
        return process

    def _spawn_error(self, executable: str, error: OSError) -> SpawnError:
        invocation = self.invocation
        program = invocation.program
        cwd = invocation.cwd

        if cwd is not None and error.filename is not None and str(error.filename) == str(cwd):
            return SpawnError(program, SpawnFailureKind.OS_ERROR, f"working directory unavailable: {cwd}")

        if invocation.elevated:
            return ElevationError(
                program,
                SpawnFailureKind.ELEVATION_UNAVAILABLE,
                f"elevation front-end {executable!r} could not be started: {error.strerror or error}",
            )

        if isinstance(error, FileNotFoundError):
            return SpawnError(program, SpawnFailureKind.NOT_FOUND, "command not found")
        if isinstance(error, PermissionError):
            return SpawnError(program, SpawnFailureKind.PERMISSION_DENIED, "permission denied")
        return SpawnError(program, SpawnFailureKind.OS_ERROR, error.strerror or str(error))

    async def _pump_stream(
        self,
        reader: asyncio.StreamReader | None,
        stream: StreamName,
    ) -> None:
        """Read one stream line by line into the shared queue.

        A read failure becomes a diagnostic chunk; the stream is then treated
        as closed and the termination event still follows.
        """
        decoder = codecs.getincrementaldecoder(self.runner.encoding)(errors="replace")
        try:
            if reader is None:
                return
            while True:
                data = await self._read_chunk(reader)
                if not data:
                    break
                text = decoder.decode(data)
                if text.endswith("\n"):
                    text = text[:-1]
                    if text.endswith("\r"):
                        text = text[:-1]
                elif not text:
                    # only half of a multi-byte character so far
                    continue
                self._queue.put_nowait(OutputEvent(stream=stream, text=text))

            tail = decoder.decode(b"", final=True)
            if tail:
                self._queue.put_nowait(OutputEvent(stream=stream, text=tail))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            pid = self.process.pid if self.process else None
            logger.warning(f"Stream {stream.value} failed pid={pid}: {e}")
            self._queue.put_nowait(
                OutputEvent(
                    stream=stream,
                    text=f"{STREAM_ERROR_PREFIX} {stream.value} closed unexpectedly: {e}",
                    diagnostic=True,
                )
            )
        finally:
            self._queue.put_nowait(_EOF)

    async def _read_chunk(self, reader: asyncio.StreamReader) -> bytes:
        """Return the next line, an oversize slice of one, or b"" at EOF."""
        try:
            return await reader.readuntil(b"\n")
        except asyncio.IncompleteReadError as e:
            return e.partial
        except asyncio.LimitOverrunError as e:
            return await reader.read(e.consumed or self.runner.stream_limit)

    async def next_output(self) -> OutputEvent | None:
        """Next output chunk in arrival order, or None once both streams closed."""
        while self._open_streams > 0:
            item = await self._queue.get()
            if item is _EOF:
                self._open_streams -= 1
                continue
            return item
        return None

    async def wait(self) -> TerminationEvent:
        """Reap the child after its streams closed and normalize the result."""
        if self.process is None:
            raise RuntimeError("wait() called before the child was spawned")
        returncode = await self.process.wait()
        if self._readers:
            await asyncio.gather(*self._readers, return_exceptions=True)

        logger.debug(
            f"Subprocess completed pid={self.process.pid} returncode={returncode}"
        )
        return self._normalize(returncode)

    def _normalize(self, returncode: int) -> TerminationEvent:
        event = TerminationEvent.from_returncode(returncode)
        if not self.invocation.elevated or event.signal is not None:
            return event

        front_end = self.runner.elevation_command[0]
        if event.exit_code == ELEVATION_DECLINED_EXIT_CODE:
            failure = SpawnFailure(
                kind=SpawnFailureKind.ELEVATION_DECLINED,
                message=f"{front_end}: authorization was declined",
            )
        elif event.exit_code == ELEVATION_FAILED_EXIT_CODE:
            failure = SpawnFailure(
                kind=SpawnFailureKind.ELEVATION_FAILED,
                message=f"{front_end}: not authorized or the command could not be run",
            )
        else:
            return event
        return TerminationEvent(exit_code=event.exit_code, signal=None, error=failure)

    async def abandon(self) -> TerminationEvent:
        """Terminate a child nobody is listening to any more.

        The cleanup runs in its own task and is always waited for to the end,
        however often the caller is cancelled meanwhile, so the child is never
        leaked and its real return code is reported. A cancellation received
        during the wait is re-raised once ``self.termination`` is set.
        """
        cleanup = asyncio.ensure_future(self._do_cleanup())
        interrupted: BaseException | None = None
        while not cleanup.done():
            try:
                await asyncio.shield(cleanup)
            except (anyio.get_cancelled_exc_class(), asyncio.CancelledError) as e:
                interrupted = e

        if self.termination is None:
            self.termination = self._abandoned_termination()
        if interrupted is not None:
            raise interrupted
        return self.termination

    def _abandoned_termination(self) -> TerminationEvent:
        process = self.process
        if process is not None and process.returncode is not None:
            return self._normalize(process.returncode)
        logger.warning(
            f"Subprocess still running after cleanup pid={process.pid if process else None}"
        )
        return TerminationEvent(exit_code=None, signal=None)

    async def _do_cleanup(self) -> None:
        for task in self._readers:
            if not task.done():
                task.cancel()
        if self._readers:
            await asyncio.gather(*self._readers, return_exceptions=True)

        process = self.process
        if process is not None and process.returncode is None:
            await self.runner._terminate_process(process)


@dataclass
class ProcessRunner:
    """Runs external tools under one of three contracts.

    - ``run_to_completion``: await the end, get all output as one string
    - ``run_streaming``: get the pid right away, output and the termination
      event arrive through callbacks
    - ``run_streaming_elevated``: the same, through the escalation front-end

    All three consume the event stream exposed by ``events``. Unset settings
    are taken from the environment configuration.

    Example:
        runner = ProcessRunner()

        result = await runner.run_streaming(
            "dirb", [url, wordlist], on_data=console.append, on_termination=done
        )
        cancel_button.bind(result.process_identifier)
    """

    elevation_command: tuple[str, ...] | None = None
    encoding: str | None = None
    stream_limit: int | None = None
    term_timeout: float | None = None
    kill_timeout: float | None = None
    registry: HandleRegistry = field(default_factory=HandleRegistry)
    _tasks: set[asyncio.Task[None]] = field(default_factory=set, init=False, repr=False)

    def __post_init__(self) -> None:
        config = get_config()
        if self.elevation_command is None:
            self.elevation_command = config.elevation_command
        else:
            self.elevation_command = tuple(self.elevation_command)
        if not self.elevation_command:
            raise ValueError("elevation_command must not be empty")
        if self.encoding is None:
            self.encoding = config.encoding
        if self.stream_limit is None:
            self.stream_limit = config.stream_limit
        if self.term_timeout is None:
            self.term_timeout = config.term_timeout
        if self.kill_timeout is None:
            self.kill_timeout = config.kill_timeout

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def run_to_completion(
        self,
        program: str,
        args: Iterable[str] = (),
        *,
        elevated: bool = False,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> str:
        """Run a program and return its whole output once it has exited.

        Output lines from both streams are joined with newlines in the order
        they were observed.

        Raises:
            SpawnError: the program never ran (no output is returned)
            ElevationError: the escalation front-end failed or was declined
            AbnormalExitError: the program ran but exited non-zero or by signal
        """
        invocation = self._invocation(program, args, elevated=elevated, cwd=cwd, env=env)
        execution = _Execution(self, invocation)

        chunks: list[str] = []
        termination: TerminationEvent | None = None
        async for event in execution.events():
            if isinstance(event, OutputEvent):
                chunks.append(event.text)
            elif isinstance(event, TerminationEvent):
                termination = event

        if termination is None:
            raise RuntimeError(f"{program}: event stream ended without a termination event")
        if termination.error is not None:
            raise termination.error.to_error(program)

        output = "\n".join(chunks)
        if not termination.succeeded:
            raise AbnormalExitError(program, output, termination.exit_code, termination.signal)
        return output

    async def run_streaming(
        self,
        program: str,
        args: Iterable[str] = (),
        on_data: DataCallback | None = None,
        on_termination: TerminationCallback | None = None,
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> StreamingResult:
        """Spawn a program and return as soon as its pid is known.

        ``on_data`` gets every output chunk, ``on_termination`` gets the single
        TerminationEvent; nothing is delivered after it.

        Raises:
            SpawnError: the program never ran; ``on_termination`` has already
                been called with the failure
        """
        invocation = self._invocation(program, args, elevated=False, cwd=cwd, env=env)
        return await self._launch(invocation, on_data, on_termination)

    async def run_streaming_elevated(
        self,
        program: str,
        args: Iterable[str] = (),
        on_data: DataCallback | None = None,
        on_termination: TerminationCallback | None = None,
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> StreamingResult:
        """``run_streaming`` through the privilege-escalation front-end.

        A missing front-end raises ElevationError here. A declined or failed
        authorization is only known once the front-end exits, so it arrives
        as a TerminationEvent whose ``error`` has an elevation kind.
        """
        invocation = self._invocation(program, args, elevated=True, cwd=cwd, env=env)
        return await self._launch(invocation, on_data, on_termination)

    def events(
        self,
        program: str,
        args: Iterable[str] = (),
        *,
        elevated: bool = False,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        cancel_scope: anyio.CancelScope | None = None,
    ) -> AsyncIterator[ProcessEvent]:
        """Iterate over the raw event stream of one invocation.

        Cancelling ``cancel_scope`` stops output delivery, terminates the child
        and still yields the final TerminationEvent.

        Example:
            async for event in runner.events("exiftool", [path]):
                if isinstance(event, OutputEvent):
                    print(event.text)
        """
        invocation = self._invocation(program, args, elevated=elevated, cwd=cwd, env=env)
        return _Execution(self, invocation).events(cancel_scope)

    async def aclose(self) -> None:
        """Stop every streaming invocation started by this runner.

        Live children get SIGTERM, then SIGKILL after ``term_timeout``. Pumps
        that still have not finished after ``kill_timeout`` are cancelled.
        Every termination callback still fires.
        """
        tasks = [task for task in self._tasks if not task.done()]
        if not tasks:
            return

        self.registry.cancel_all()
        _, pending = await asyncio.wait(tasks, timeout=self.term_timeout)

        if pending:
            for handle in self.registry.list_active():
                self.registry.signal(handle.process_identifier, signal.SIGKILL)
            _, pending = await asyncio.wait(pending, timeout=self.kill_timeout)

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        logger.info(f"Stopped {len(tasks)} running invocation(s)")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _invocation(
        self,
        program: str,
        args: Iterable[str],
        *,
        elevated: bool,
        cwd: Path | None,
        env: Mapping[str, str] | None,
    ) -> Invocation:
        invocation = Invocation(
            program=program,
            args=validate_argv(args),
            privilege=PrivilegeMode.ELEVATED if elevated else PrivilegeMode.NORMAL,
            cwd=Path(cwd) if cwd is not None else None,
            env=env,
        )
        for arg in find_joined_flags(invocation.args):
            logger.warning(
                f"Argument {arg!r} for {program} holds a flag and its value in one "
                f"element; it is passed to the program unchanged"
            )
        return invocation

    async def _launch(
        self,
        invocation: Invocation,
        on_data: DataCallback | None,
        on_termination: TerminationCallback | None,
    ) -> StreamingResult:
        execution = _Execution(self, invocation)
        events = execution.events()

        first = await events.__anext__()
        if isinstance(first, TerminationEvent):
            await events.aclose()
            if on_termination is not None:
                try:
                    on_termination(first)
                except Exception as e:
                    logger.warning(f"Error in termination callback program={invocation.program}: {e}")
            if first.error is None:
                raise RuntimeError(f"{invocation.program}: terminated before it was started")
            raise first.error.to_error(invocation.program)

        if not isinstance(first, StartedEvent):
            raise RuntimeError(f"{invocation.program}: unexpected first event {first.kind!r}")
        handle = ProcessHandle(
            process_identifier=first.process_identifier,
            invocation=invocation,
            on_data=on_data,
            on_termination=on_termination,
        )
        self.registry.register(handle)

        task = asyncio.create_task(
            self._drive(execution, events, handle),
            name=f"toolrunner-pid-{first.process_identifier}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        return StreamingResult(
            process_identifier=first.process_identifier,
            initial_output="",
            handle=handle,
        )

    async def _drive(
        self,
        execution: _Execution,
        events: AsyncIterator[ProcessEvent],
        handle: ProcessHandle,
    ) -> None:
        """Feed one invocation's event stream into its handle's callbacks."""
        pid = handle.process_identifier
        try:
            async for event in events:
                if isinstance(event, OutputEvent):
                    handle.deliver(event)
        except (anyio.get_cancelled_exc_class(), asyncio.CancelledError):
            logger.debug(f"Streaming invocation cancelled pid={pid}")
            raise
        finally:
            termination = execution.termination
            if termination is None:
                await events.aclose()  # type: ignore[attr-defined]
                termination = execution.termination or TerminationEvent()
            self.registry.unregister(pid)
            handle.finish(termination)

    def _build_subprocess_kwargs(self, invocation: Invocation) -> dict[str, Any]:
        """Build platform-specific kwargs for asyncio.create_subprocess_exec."""
        kwargs: dict[str, Any] = {"limit": self.stream_limit}

        if invocation.cwd is not None:
            kwargs["cwd"] = invocation.cwd
        if invocation.env is not None:
            kwargs["env"] = dict(invocation.env)

        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        return kwargs

    async def _terminate_process(
        self,
        process: asyncio.subprocess.Process,
    ) -> None:
        """Terminate an abandoned child gracefully, then forcefully if needed.

        1. Send SIGTERM to the process group (CTRL_BREAK_EVENT on Windows)
        2. Wait up to term_timeout
        3. Send SIGKILL (kill() on Windows)
        4. Wait up to kill_timeout
        """
        pid = process.pid
        logger.debug(f"Terminating abandoned subprocess pid={pid}")

        try:
            if IS_WINDOWS:
                self._windows_terminate(process)
            else:
                self._posix_signal_group(process, signal.SIGTERM)

            try:
                await asyncio.wait_for(process.wait(), timeout=self.term_timeout)
                logger.debug(
                    f"Subprocess terminated gracefully pid={pid} "
                    f"returncode={process.returncode}"
                )
                return
            except asyncio.TimeoutError:
                pass

            logger.debug(f"Force killing subprocess pid={pid}")
            if IS_WINDOWS:
                process.kill()
            else:
                self._posix_signal_group(process, signal.SIGKILL)

            try:
                await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
                logger.debug(
                    f"Subprocess killed pid={pid} returncode={process.returncode}"
                )
            except asyncio.TimeoutError:
                logger.warning(f"Subprocess did not exit after kill pid={pid}")

        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={pid}")
        except Exception as e:
            logger.warning(f"Error terminating subprocess pid={pid}: {e}")

    def _posix_signal_group(
        self,
        process: asyncio.subprocess.Process,
        signum: int,
    ) -> None:
        try:
            # pgid == pid because of start_new_session
            pgid = os.getpgid(process.pid)
            os.killpg(pgid, signum)
            logger.debug(f"Sent signal {signum} to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to the process itself: {e}")
            process.send_signal(signum)

    def _windows_terminate(self, process: asyncio.subprocess.Process) -> None:
        try:
            # Reaches the whole group because of CREATE_NEW_PROCESS_GROUP
            os.kill(process.pid, signal.CTRL_BREAK_EVENT)
            logger.debug(f"Sent CTRL_BREAK_EVENT to pid={process.pid}")
        except (ProcessLookupError, OSError) as e:
            logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
            process.terminate()
