"""Pytest configuration and fixtures."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from unittest import mock

import pytest

PROJECT_ROOT = Path(__file__).parent.parent

# Add src to the path when the package is not installed
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

FIXTURES_DIR = PROJECT_ROOT / "tests" / "fixtures"
FAKE_TOOL_PATH = FIXTURES_DIR / "fake_tool.py"


@pytest.fixture
def fake_tool() -> list[str]:
    """argv prefix that runs the fake tool with this interpreter."""
    return [sys.executable, str(FAKE_TOOL_PATH)]


@pytest.fixture
def clean_env():
    """Run a test with no TR_* variables set and a fresh config."""
    from toolrunner.config import reload_config

    env = {k: v for k, v in os.environ.items() if not k.startswith("TR_")}
    with mock.patch.dict(os.environ, env, clear=True):
        yield reload_config()
    reload_config()
