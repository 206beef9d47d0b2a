"""taskstream environment configuration.

Environment variables:
    TASKSTREAM_TERM_TIMEOUT: seconds to wait after SIGTERM during cleanup
        - default 2.0, clamped to 0.05-60

    TASKSTREAM_KILL_TIMEOUT: seconds to wait after SIGKILL during cleanup
        - default 1.0, clamped to 0.05-60

    TASKSTREAM_DRAIN_TIMEOUT: max seconds to drain stdout/stderr after exit
        - unset/empty = wait for EOF on both pipes (default)

    TASKSTREAM_READ_CHUNK_SIZE: bytes requested per pipe read
        - default 4096, clamped to 1-1048576

    TASKSTREAM_NEW_SESSION: start children in their own session/process group
        - true/1/yes = on (default)
        - false/0/no = off (children share the caller's process group)

    TASKSTREAM_INPUT_ENCODING: encoding applied to str chunks fed to stdin
        - default utf-8

    TASKSTREAM_LOG_DEBUG: CLI debug logging
        - true/1/yes = DEBUG level, written to a temp file
        - false/0/no = INFO level on stderr (default)
"""

from __future__ import annotations

import codecs
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config"]

DEFAULT_TERM_TIMEOUT = 2.0
DEFAULT_KILL_TIMEOUT = 1.0
DEFAULT_READ_CHUNK_SIZE = 4096
DEFAULT_INPUT_ENCODING = "utf-8"

MIN_TIMEOUT = 0.05
MAX_TIMEOUT = 60.0
MAX_READ_CHUNK_SIZE = 1024 * 1024


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment variable."""
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("true", "1", "yes", "on")


def _parse_timeout(value: str | None, default: float) -> float:
    """Parse a timeout in seconds, clamped to a sane range."""
    if not value:
        return default
    try:
        timeout = float(value)
    except ValueError:
        return default
    return max(MIN_TIMEOUT, min(timeout, MAX_TIMEOUT))


def _parse_optional_timeout(value: str | None) -> float | None:
    """Parse a timeout where unset means "no limit"."""
    if not value or not value.strip():
        return None
    try:
        timeout = float(value)
    except ValueError:
        return None
    if timeout <= 0:
        return None
    return min(timeout, MAX_TIMEOUT)


def _parse_chunk_size(value: str | None) -> int:
    """Parse the pipe read size."""
    if not value:
        return DEFAULT_READ_CHUNK_SIZE
    try:
        size = int(value)
    except ValueError:
        return DEFAULT_READ_CHUNK_SIZE
    return max(1, min(size, MAX_READ_CHUNK_SIZE))


def _parse_encoding(value: str | None) -> str:
    """Parse an encoding name, falling back to utf-8 if Python does not know it."""
    if not value or not value.strip():
        return DEFAULT_INPUT_ENCODING
    try:
        return codecs.lookup(value.strip()).name
    except LookupError:
        return DEFAULT_INPUT_ENCODING


@dataclass
class Config:
    """taskstream configuration.

    Attributes:
        term_timeout: seconds to wait for a graceful exit after SIGTERM
        kill_timeout: seconds to wait after SIGKILL
        drain_timeout: max seconds to drain pipes after exit (None = until EOF)
        read_chunk_size: bytes requested per pipe read
        new_session: isolate children in their own session/process group
        input_encoding: encoding for str chunks written to stdin
        log_debug: CLI debug logging to a temp file
        log_file: debug log path (set when log_debug is on)
    """

    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    drain_timeout: float | None = None
    read_chunk_size: int = DEFAULT_READ_CHUNK_SIZE
    new_session: bool = True
    input_encoding: str = DEFAULT_INPUT_ENCODING
    log_debug: bool = False
    log_file: str | None = None

    def __repr__(self) -> str:
        return (
            f"Config(term_timeout={self.term_timeout}, "
            f"kill_timeout={self.kill_timeout}, "
            f"drain_timeout={self.drain_timeout}, "
            f"read_chunk_size={self.read_chunk_size}, "
            f"new_session={self.new_session}, "
            f"input_encoding={self.input_encoding}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """Build a timestamped debug log path under the system temp directory."""
    log_dir = Path(tempfile.gettempdir()) / "taskstream"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"taskstream_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """Load configuration from the environment."""
    log_debug = _parse_bool(os.environ.get("TASKSTREAM_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        term_timeout=_parse_timeout(
            os.environ.get("TASKSTREAM_TERM_TIMEOUT"), DEFAULT_TERM_TIMEOUT
        ),
        kill_timeout=_parse_timeout(
            os.environ.get("TASKSTREAM_KILL_TIMEOUT"), DEFAULT_KILL_TIMEOUT
        ),
        drain_timeout=_parse_optional_timeout(os.environ.get("TASKSTREAM_DRAIN_TIMEOUT")),
        read_chunk_size=_parse_chunk_size(os.environ.get("TASKSTREAM_READ_CHUNK_SIZE")),
        new_session=_parse_bool(os.environ.get("TASKSTREAM_NEW_SESSION"), default=True),
        input_encoding=_parse_encoding(os.environ.get("TASKSTREAM_INPUT_ENCODING")),
        log_debug=log_debug,
        log_file=log_file,
    )


# Lazily loaded global instance
_config: Config | None = None


def get_config() -> Config:
    """Return the global configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Reload the global configuration (used by tests)."""
    global _config
    _config = load_config()
    return _config
