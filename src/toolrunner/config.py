"""toolrunner environment configuration.

Environment variables:
    TR_ELEVATION_COMMAND: privilege-escalation front-end used for elevated launches
        - default "pkexec"
        - split with shell rules, e.g. "sudo -n" or "doas"

    TR_ENCODING: encoding used to decode child output (default utf-8)
        - undecodable bytes are replaced, never raised

    TR_STREAM_LIMIT: per-stream read buffer in bytes (default 65536)
        - lines longer than this are delivered in several chunks
        - clamped to 1 KiB - 16 MiB

    TR_TERM_TIMEOUT: seconds to wait after SIGTERM when an abandoned child is cleaned up
        - default 2.0

    TR_KILL_TIMEOUT: seconds to wait after SIGKILL during the same cleanup
        - default 1.0

    TR_LOG_DEBUG: debug logging
        - true/1/yes = on (debug log written to a temp file)
        - false/0/no = off (default, logs go to stderr)

    TR_SIGINT_MODE: SIGINT (Ctrl+C) handling in the CLI host
        - cancel = signal live children (exit when nothing is running) (default)
        - exit = exit immediately
        - cancel_then_exit = signal children first, exit on the second Ctrl+C

    TR_SIGINT_DOUBLE_TAP_WINDOW: double Ctrl+C window in seconds
        - default 1.0
"""

from __future__ import annotations

import codecs
import os
import shlex
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

__all__ = ["Config", "SigintMode", "get_config", "load_config", "reload_config"]


class SigintMode(Enum):
    """SIGINT handling mode.

    - CANCEL: signal live children only; exit when nothing is running
    - EXIT: exit straight away
    - CANCEL_THEN_EXIT: signal children first, exit on the second SIGINT
    """

    CANCEL = "cancel"
    EXIT = "exit"
    CANCEL_THEN_EXIT = "cancel_then_exit"

    @classmethod
    def from_string(cls, value: str) -> "SigintMode":
        """Parse a mode name, falling back to CANCEL for unknown values."""
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.CANCEL


DEFAULT_ELEVATION_COMMAND: tuple[str, ...] = ("pkexec",)
DEFAULT_ENCODING = "utf-8"
DEFAULT_STREAM_LIMIT = 64 * 1024
MIN_STREAM_LIMIT = 1024
MAX_STREAM_LIMIT = 16 * 1024 * 1024
DEFAULT_TERM_TIMEOUT = 2.0
DEFAULT_KILL_TIMEOUT = 1.0


def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_elevation_command(value: str | None) -> tuple[str, ...]:
    """Split the front-end command line; empty or malformed values use pkexec."""
    if not value or not value.strip():
        return DEFAULT_ELEVATION_COMMAND
    try:
        parts = shlex.split(value)
    except ValueError:
        return DEFAULT_ELEVATION_COMMAND
    return tuple(parts) or DEFAULT_ELEVATION_COMMAND


def _parse_encoding(value: str | None) -> str:
    if not value or not value.strip():
        return DEFAULT_ENCODING
    try:
        return codecs.lookup(value.strip()).name
    except LookupError:
        return DEFAULT_ENCODING


def _parse_stream_limit(value: str | None) -> int:
    if not value:
        return DEFAULT_STREAM_LIMIT
    try:
        limit = int(value)
    except ValueError:
        return DEFAULT_STREAM_LIMIT
    return max(MIN_STREAM_LIMIT, min(limit, MAX_STREAM_LIMIT))


def _parse_timeout(value: str | None, default: float) -> float:
    if not value:
        return default
    try:
        timeout = float(value)
    except ValueError:
        return default
    return timeout if timeout > 0 else default


def _parse_sigint_mode(value: str | None) -> SigintMode:
    if not value:
        return SigintMode.CANCEL
    return SigintMode.from_string(value)


def _parse_double_tap_window(value: str | None) -> float:
    if not value:
        return 1.0
    try:
        window = float(value)
        return max(0.1, min(window, 10.0))
    except ValueError:
        return 1.0


def _generate_log_file_path() -> str:
    """Return a timestamped log file path under the system temp directory."""
    log_dir = Path(tempfile.gettempdir()) / "toolrunner"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"toolrunner_debug_{timestamp}.log"

    return str(log_file.resolve())


@dataclass
class Config:
    """toolrunner configuration.

    Attributes:
        elevation_command: front-end argv prefix for elevated launches
        encoding: codec for child output
        stream_limit: per-stream read buffer in bytes
        term_timeout: grace period after SIGTERM for abandoned children
        kill_timeout: grace period after SIGKILL for abandoned children
        log_debug: write debug logs to a temp file
        log_file: that file (set when log_debug is on)
        sigint_mode: SIGINT handling mode
        sigint_double_tap_window: double Ctrl+C window (seconds)
    """

    elevation_command: tuple[str, ...] = field(default=DEFAULT_ELEVATION_COMMAND)
    encoding: str = DEFAULT_ENCODING
    stream_limit: int = DEFAULT_STREAM_LIMIT
    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    log_debug: bool = False
    log_file: str | None = None
    sigint_mode: SigintMode = SigintMode.CANCEL
    sigint_double_tap_window: float = 1.0

    def __repr__(self) -> str:
        return (
            f"Config(elevation_command={' '.join(self.elevation_command)}, "
            f"encoding={self.encoding}, "
            f"stream_limit={self.stream_limit}, "
            f"term_timeout={self.term_timeout}, "
            f"kill_timeout={self.kill_timeout}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"sigint_mode={self.sigint_mode.value}, "
            f"sigint_double_tap_window={self.sigint_double_tap_window})"
        )


def load_config() -> Config:
    """Build a Config from the environment."""
    log_debug = _parse_bool(os.environ.get("TR_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        elevation_command=_parse_elevation_command(os.environ.get("TR_ELEVATION_COMMAND")),
        encoding=_parse_encoding(os.environ.get("TR_ENCODING")),
        stream_limit=_parse_stream_limit(os.environ.get("TR_STREAM_LIMIT")),
        term_timeout=_parse_timeout(os.environ.get("TR_TERM_TIMEOUT"), DEFAULT_TERM_TIMEOUT),
        kill_timeout=_parse_timeout(os.environ.get("TR_KILL_TIMEOUT"), DEFAULT_KILL_TIMEOUT),
        log_debug=log_debug,
        log_file=log_file,
        sigint_mode=_parse_sigint_mode(os.environ.get("TR_SIGINT_MODE")),
        sigint_double_tap_window=_parse_double_tap_window(
            os.environ.get("TR_SIGINT_DOUBLE_TAP_WINDOW")
        ),
    )


# Loaded lazily
_config: Config | None = None


def get_config() -> Config:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Reload the config from the environment (used by tests)."""
    global _config
    _config = load_config()
    return _config
