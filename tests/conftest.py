"""Pytest configuration and fixtures."""

from __future__ import annotations

import sys
import uuid
from collections.abc import Callable
from pathlib import Path

import pytest

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Add src to the Python path
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from taskstream.config import Config  # noqa: E402

ScriptFactory = Callable[..., Path]


@pytest.fixture
def script_file(tmp_path: Path) -> ScriptFactory:
    """Factory writing an executable bash script into tmp_path.

    Usage:
        path = script_file("echo hello", "exit 3")
    """

    def _make(*commands: str, executable: bool = True) -> Path:
        path = tmp_path / f"{uuid.uuid4().hex}.sh"
        path.write_text("\n".join(["#!/bin/bash", *commands]) + "\n", encoding="utf-8")
        if executable:
            path.chmod(0o770)
        return path

    return _make


@pytest.fixture
def fast_config() -> Config:
    """Config with short cleanup timeouts for testing."""
    return Config(term_timeout=0.5, kill_timeout=0.3)
