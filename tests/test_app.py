"""CLI host tests.

Unit tests for exit status mapping and argument parsing, plus
integration tests that run ``python -m toolrunner`` as a real process.
"""

from __future__ import annotations

import os
import signal
import subprocess
import sys
from pathlib import Path

import pytest

from toolrunner.app import build_parser, exit_status, run_tool, signal_process
from toolrunner.runtime import SpawnFailure, SpawnFailureKind, TerminationEvent

PROJECT_ROOT = Path(__file__).parent.parent
SRC_DIR = PROJECT_ROOT / "src"
FAKE_TOOL_PATH = PROJECT_ROOT / "tests" / "fixtures" / "fake_tool.py"


class TestExitStatus:
    """Shell-style exit status."""

    def test_clean_exit(self):
        assert exit_status(TerminationEvent(exit_code=0)) == 0

    def test_exit_code_passes_through(self):
        assert exit_status(TerminationEvent(exit_code=3)) == 3

    def test_signal(self):
        assert exit_status(TerminationEvent(signal=15)) == 143
        assert exit_status(TerminationEvent(signal=9)) == 137

    def test_not_found(self):
        event = TerminationEvent(
            error=SpawnFailure(kind=SpawnFailureKind.NOT_FOUND, message="command not found")
        )
        assert exit_status(event) == 127

    def test_permission_denied(self):
        event = TerminationEvent(
            error=SpawnFailure(kind=SpawnFailureKind.PERMISSION_DENIED, message="permission denied")
        )
        assert exit_status(event) == 126

    def test_front_end_code_kept(self):
        event = TerminationEvent(
            exit_code=126,
            error=SpawnFailure(kind=SpawnFailureKind.ELEVATION_DECLINED, message="declined"),
        )
        assert exit_status(event) == 126

    def test_unknown_end(self):
        assert exit_status(TerminationEvent()) == 1


class TestParser:
    """Command-line parsing."""

    def test_run_passes_tool_flags_through(self):
        options = build_parser().parse_args(["run", "theHarvester", "-d", "example.com", "-b", "all"])
        assert options.command == "run"
        assert options.program == "theHarvester"
        assert options.args == ["-d", "example.com", "-b", "all"]
        assert options.elevated is False

    def test_run_elevated(self):
        options = build_parser().parse_args(["run", "--elevated", "tiger", "-l", "/tmp"])
        assert options.elevated is True
        assert options.program == "tiger"
        assert options.args == ["-l", "/tmp"]

    def test_signal_defaults_to_sigterm(self):
        options = build_parser().parse_args(["signal", "4242"])
        assert options.command == "signal"
        assert options.pid == "4242"
        assert options.signal_number == 15
        assert options.elevated is False

    def test_signal_number(self):
        options = build_parser().parse_args(["signal", "4242", "-s", "9", "--elevated"])
        assert options.signal_number == 9
        assert options.elevated is True

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestRunTool:
    """run_tool inside the test event loop."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signal handling")
    async def test_streams_output_and_outcome(self, capsys: pytest.CaptureFixture[str]):
        code = await run_tool(sys.executable, [str(FAKE_TOOL_PATH), "--lines", "2"])

        captured = capsys.readouterr()
        assert code == 0
        assert captured.out.splitlines() == ["line 1", "line 2"]
        assert "Process completed successfully." in captured.err

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signal handling")
    async def test_exit_code(self, capsys: pytest.CaptureFixture[str]):
        code = await run_tool(sys.executable, [str(FAKE_TOOL_PATH), "--exit-code", "5"])

        captured = capsys.readouterr()
        assert code == 5
        assert "Process terminated with exit code: 5 and signal code: None" in captured.err

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signal handling")
    async def test_missing_program(self, capsys: pytest.CaptureFixture[str]):
        code = await run_tool("nonexistent-binary-xyz", [])

        captured = capsys.readouterr()
        assert code == 127
        assert "Process could not be started: command not found" in captured.err

    @pytest.mark.asyncio
    async def test_signal_invalid_pid(self):
        assert await signal_process("not-a-pid", 15) == 1


def _cli_env() -> dict[str, str]:
    env = {k: v for k, v in os.environ.items() if not k.startswith("TR_")}
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(SRC_DIR), env.get("PYTHONPATH")]))
    return env


@pytest.mark.integration
@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signal handling")
class TestCommandLine:
    """python -m toolrunner as a real process."""

    @pytest.mark.timeout(20)
    def test_run(self):
        completed = subprocess.run(
            [sys.executable, "-m", "toolrunner", "run", sys.executable, str(FAKE_TOOL_PATH), "--exit-code", "2"],
            capture_output=True,
            text=True,
            env=_cli_env(),
            timeout=15,
        )

        assert completed.returncode == 2
        assert completed.stdout.splitlines() == ["line 1", "line 2", "line 3"]
        assert "exit code: 2" in completed.stderr

    @pytest.mark.timeout(20)
    def test_ctrl_c_cancels_the_tool(self):
        process = subprocess.Popen(
            [
                sys.executable, "-m", "toolrunner", "run",
                sys.executable, str(FAKE_TOOL_PATH), "--lines", "0", "--sleep", "30",
            ],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=_cli_env(),
        )
        try:
            assert process.stdout.readline().strip() == "ready"

            process.send_signal(signal.SIGINT)
            stdout, stderr = process.communicate(timeout=15)
        finally:
            if process.poll() is None:
                process.kill()
                process.wait()

        assert process.returncode == 128 + signal.SIGTERM
        assert "Process was manually terminated." in stderr
