"""taskstream command-line entry point.

Runs one executable and renders its event stream:

    taskstream -- make -j4
    taskstream --mode events -- ./build.sh --verbose
    printf 'a\\nb\\n' | taskstream --stdin -- sort
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import io
import json
import logging
import os
import stat
import sys
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import BinaryIO

from . import __version__
from .config import get_config
from .errors import ExitFailure, InputEncodingFailure, TaskLaunchError, UncaughtSignal
from .events import StdErr, StdOut
from .runtime.handle import IS_WINDOWS
from .task import Task

__all__ = ["build_parser", "build_task", "run", "main"]

logger = logging.getLogger(__name__)

MODES = ("passthrough", "events", "output", "exit-status")

# Shell conventions
EXIT_LAUNCH_FAILURE = 127
EXIT_INTERRUPTED = 130
SIGNAL_EXIT_BASE = 128

STDIN_CHUNK_SIZE = 64 * 1024


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="taskstream",
        description="Run an executable and stream its lifecycle events.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--cwd", default=None, help="Working directory (default: current)")
    parser.add_argument(
        "--env",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Set an environment variable (repeatable)",
    )
    parser.add_argument(
        "--clear-env",
        action="store_true",
        help="Start from an empty environment instead of inheriting this one",
    )
    parser.add_argument(
        "--stdin",
        action="store_true",
        help="Forward this process's stdin to the task",
    )
    parser.add_argument(
        "--mode",
        choices=MODES,
        default="passthrough",
        help=(
            "passthrough: child stdout/stderr to ours; events: one JSON object per "
            "event; output: stdout and stderr merged on stdout; exit-status: only "
            "the exit status"
        ),
    )
    parser.add_argument("executable", help="Executable to launch")
    parser.add_argument("arguments", nargs=argparse.REMAINDER, help="Arguments for the executable")
    return parser


def parse_env(entries: Sequence[str]) -> dict[str, str]:
    """Parse KEY=VALUE entries.

    Raises:
        ValueError: if an entry has no '=' or an empty key
    """
    env: dict[str, str] = {}
    for entry in entries:
        key, sep, value = entry.partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid --env entry (expected KEY=VALUE): {entry!r}")
        env[key] = value
    return env


def build_task(
    args: argparse.Namespace,
    *,
    environ: Mapping[str, str] | None = None,
    stdin: BinaryIO | None = None,
) -> Task:
    """Build the Task described by parsed arguments.

    ``--env`` entries are merged over the inherited environment unless
    ``--clear-env`` is set; without either the task inherits it untouched.
    """
    arguments = list(args.arguments)
    if arguments and arguments[0] == "--":
        arguments = arguments[1:]

    overrides = parse_env(args.env)
    environment: dict[str, str] | None = None
    if args.clear_env:
        environment = overrides
    elif overrides:
        environment = {**(os.environ if environ is None else environ), **overrides}

    return Task(
        executable_path=args.executable,
        arguments=arguments,
        working_directory=args.cwd,
        environment=environment,
        stdin=_read_chunks(stdin if stdin is not None else sys.stdin.buffer) if args.stdin else None,
    )


async def _read_chunks(file: BinaryIO) -> AsyncIterator[bytes]:
    """Yield chunks of a binary file until EOF.

    Pipes, terminals and sockets are read through a non-blocking pipe
    transport, so cancelling the reader stops the read and no worker thread is
    left blocked when the task exits. Regular files and in-memory buffers never
    block indefinitely and are read in a worker thread.
    """
    if not _is_stream_fd(file):
        while True:
            chunk = await asyncio.to_thread(file.read1, STDIN_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
        return

    fd = file.fileno()
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=STDIN_CHUNK_SIZE)
    # The transport owns (and closes) a duplicate so the caller's file stays open
    pipe = os.fdopen(os.dup(fd), "rb", buffering=0)
    transport, _ = await loop.connect_read_pipe(
        lambda: asyncio.StreamReaderProtocol(reader), pipe
    )
    try:
        while True:
            chunk = await reader.read(STDIN_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    finally:
        transport.close()
        # O_NONBLOCK lives on the shared open file description
        with contextlib.suppress(OSError):
            os.set_blocking(fd, True)


def _is_stream_fd(file: BinaryIO) -> bool:
    """True for pipes, FIFOs, character devices and sockets."""
    if IS_WINDOWS:
        return False
    try:
        mode = os.fstat(file.fileno()).st_mode
    except (AttributeError, OSError, io.UnsupportedOperation):
        return False
    return stat.S_ISFIFO(mode) or stat.S_ISCHR(mode) or stat.S_ISSOCK(mode)


async def run(
    args: argparse.Namespace,
    *,
    stdout: BinaryIO,
    stderr: BinaryIO,
    stdin: BinaryIO | None = None,
) -> int:
    """Run the task described by ``args`` and render it.

    Returns:
        Process exit code for the CLI
    """
    task = build_task(args, stdin=stdin)
    stream = task.launch()
    logger.debug(f"Launching {task} mode={args.mode}")

    try:
        async with stream:
            if args.mode == "exit-status":
                async for status in stream.only_exit_status():
                    stdout.write(f"{status}\n".encode())
            elif args.mode == "output":
                async for chunk in stream.only_output():
                    stdout.write(chunk)
                    stdout.flush()
            else:
                async for event in stream:
                    if args.mode == "events":
                        line = json.dumps(event.to_dict(), ensure_ascii=False)
                        stdout.write(line.encode("utf-8") + b"\n")
                        stdout.flush()
                    elif isinstance(event, StdOut):
                        stdout.write(event.data)
                        stdout.flush()
                    elif isinstance(event, StdErr):
                        stderr.write(event.data)
                        stderr.flush()
    except TaskLaunchError as e:
        stderr.write(f"taskstream: {e}\n".encode())
        return EXIT_LAUNCH_FAILURE
    except ExitFailure as e:
        logger.debug(f"{task} failed with status {e.status_code}")
        return e.status_code
    except UncaughtSignal as e:
        logger.debug(f"{task} terminated by {e.signal_name}")
        return SIGNAL_EXIT_BASE + (e.signal_number or 0)
    except InputEncodingFailure as e:
        stderr.write(f"taskstream: {e}\n".encode())
        return 1
    finally:
        stdout.flush()

    return 0


def _configure_logging() -> None:
    config = get_config()
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        # LOG_DEBUG mode: write to a temp file
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # Root logger (third-party libraries) at WARNING to reduce noise
    logging.basicConfig(level=logging.WARNING, handlers=log_handlers)
    logging.getLogger("taskstream").setLevel(log_level)


def main(argv: Sequence[str] | None = None) -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        parse_env(args.env)
    except ValueError as e:
        parser.error(str(e))

    _configure_logging()

    try:
        code = asyncio.run(run(args, stdout=sys.stdout.buffer, stderr=sys.stderr.buffer))
    except KeyboardInterrupt:
        logger.debug("Interrupted, exiting with code 130")
        code = EXIT_INTERRUPTED
    sys.exit(code)


if __name__ == "__main__":
    main()
