"""Process handle: one OS process and its pipes.

taskstream runtime module

This module provides:
- Process spawn with optional session/process-group isolation
- Chunked stdout/stderr pumps driven by pipe readiness
- An exit watcher that drains both pipes before reporting termination
- Ordered stdin feeding with OS pipe backpressure
- Idempotent termination and cancel-safe cleanup using asyncio.shield

Key design points:
- POSIX: start_new_session=True makes the child a process group leader, so
  termination reaches the whole group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- A negative asyncio returncode means the child died from that signal
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import os
import signal
import subprocess
import sys
from collections.abc import AsyncIterable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..config import Config, get_config
from ..errors import InputEncodingFailure

if TYPE_CHECKING:
    from ..task import StdinSource, Task

__all__ = [
    "IS_WINDOWS",
    "ProcessHandle",
    "Termination",
    "TerminationReason",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Seconds between returncode checks while pipes are still open
EXIT_POLL_INTERVAL = 0.05

ChunkCallback = Callable[[bytes], None]
ErrorCallback = Callable[[BaseException], None]


class TerminationReason(str, enum.Enum):
    """How the process ended."""

    EXIT = "exit"
    UNCAUGHT_SIGNAL = "uncaught_signal"


@dataclass(frozen=True)
class Termination:
    """OS termination report for one process.

    Attributes:
        reason: normal exit or uncaught signal
        status: exit status for EXIT, signal number for UNCAUGHT_SIGNAL
    """

    reason: TerminationReason
    status: int

    @classmethod
    def from_returncode(cls, returncode: int) -> "Termination":
        """Map an asyncio returncode (negative = killed by signal)."""
        if returncode < 0:
            return cls(TerminationReason.UNCAUGHT_SIGNAL, -returncode)
        return cls(TerminationReason.EXIT, returncode)


class ProcessHandle:
    """Owns one OS process started from a Task.

    The handle only starts the process, hands out raw byte chunks and reports
    termination; turning that into ordered events is the stream's job.

    Example:
        handle = ProcessHandle(Task("/bin/echo", ["hi"]))
        await handle.start(
            on_stdout=out.append,
            on_stderr=err.append,
            on_exit=exits.append,
        )
        ...
        await handle.aclose()
    """

    def __init__(self, task: Task, *, config: Config | None = None) -> None:
        self.task = task
        self.config = config or get_config()

        self._process: asyncio.subprocess.Process | None = None
        self._pumps: list[asyncio.Task[None]] = []
        self._watcher: asyncio.Task[None] | None = None
        self._feeder: asyncio.Task[None] | None = None
        self._cleanup: asyncio.Future[None] | None = None
        self._on_error: ErrorCallback | None = None
        self._terminate_sent = False
        self._kill_sent = False

    # =========================================================================
    # State
    # =========================================================================

    @property
    def process(self) -> asyncio.subprocess.Process | None:
        return self._process

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def is_running(self) -> bool:
        """True between a successful spawn and the process being reaped."""
        return self._process is not None and self._process.returncode is None

    # =========================================================================
    # Start
    # =========================================================================

    async def start(
        self,
        on_stdout: ChunkCallback,
        on_stderr: ChunkCallback,
        on_exit: Callable[[Termination], None],
        *,
        on_error: ErrorCallback | None = None,
        on_spawn: Callable[[asyncio.subprocess.Process], None] | None = None,
    ) -> asyncio.subprocess.Process:
        """Spawn the process and start delivering its output.

        Args:
            on_stdout: called once per chunk read from stdout
            on_stderr: called once per chunk read from stderr
            on_exit: called exactly once, after both pipes are drained
            on_error: receives failures from the pumps and the stdin feeder
            on_spawn: called right after the spawn, before any output callback

        Returns:
            The running asyncio process

        Raises:
            OSError: if the executable cannot be started
            RuntimeError: if the handle was already started
        """
        if self._process is not None:
            raise RuntimeError("ProcessHandle already started")

        self._on_error = on_error
        task = self.task

        # Use DEVNULL rather than inheriting the caller's stdin when no input
        # is provided; the child must not consume the parent's input.
        process = await asyncio.create_subprocess_exec(
            task.executable_path,
            *task.arguments,
            stdin=asyncio.subprocess.PIPE if task.stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=task.working_directory,
            **self._build_subprocess_kwargs(),
        )
        self._process = process

        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"executable={task.executable_path} cwd={task.working_directory}"
        )

        if on_spawn:
            on_spawn(process)

        self._pumps = [
            asyncio.create_task(
                self._pump(process.stdout, on_stdout), name=f"taskstream-stdout-{process.pid}"
            ),
            asyncio.create_task(
                self._pump(process.stderr, on_stderr), name=f"taskstream-stderr-{process.pid}"
            ),
        ]
        self._watcher = asyncio.create_task(
            self._watch_exit(process, on_exit), name=f"taskstream-exit-{process.pid}"
        )
        return process

    def _build_subprocess_kwargs(self) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs."""
        kwargs: dict[str, Any] = {}

        if self.task.environment is not None:
            kwargs["env"] = dict(self.task.environment)

        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        elif self.config.new_session:
            # Equivalent to setsid: own session, own process group
            kwargs["start_new_session"] = True

        return kwargs

    async def _pump(
        self,
        reader: asyncio.StreamReader | None,
        callback: ChunkCallback,
    ) -> None:
        """Forward every available chunk until the pipe reports EOF."""
        if reader is None:
            return
        while True:
            chunk = await reader.read(self.config.read_chunk_size)
            if not chunk:
                break
            callback(chunk)

    async def _watch_exit(
        self,
        process: asyncio.subprocess.Process,
        on_exit: Callable[[Termination], None],
    ) -> None:
        """Wait for the process, drain its pipes, then report termination once."""
        try:
            returncode = await self._wait_for_returncode(process)
            # EOF comes only after every buffered byte has been read, so
            # draining here keeps output ahead of the exit report.
            await self._drain_pumps()
        except Exception as e:
            self._report_error(e)
            return

        termination = Termination.from_returncode(returncode)
        logger.debug(
            f"Subprocess finished pid={process.pid} "
            f"reason={termination.reason.value} status={termination.status}"
        )
        on_exit(termination)

    async def _wait_for_returncode(self, process: asyncio.subprocess.Process) -> int:
        """Wait for the OS exit status.

        Process.wait() only returns once every pipe is closed, which a
        background grandchild can postpone indefinitely. With a drain timeout
        configured the returncode is polled instead so the timeout starts at
        the actual exit.
        """
        if self.config.drain_timeout is None:
            return await process.wait()

        waiter = asyncio.ensure_future(process.wait())
        try:
            while process.returncode is None and not waiter.done():
                await asyncio.wait({waiter}, timeout=EXIT_POLL_INTERVAL)
            if waiter.done():
                return waiter.result()
            return process.returncode
        finally:
            waiter.cancel()

    async def _drain_pumps(self) -> None:
        """Wait for both pumps to hit EOF, bounded by config.drain_timeout."""
        if not self._pumps:
            return
        timeout = self.config.drain_timeout
        if timeout is None:
            await asyncio.gather(*self._pumps)
            return

        done, pending = await asyncio.wait(self._pumps, timeout=timeout)
        for pump in done:
            pump.result()
        if pending:
            logger.warning(
                f"Output pipes still open {timeout}s after exit "
                f"pid={self.pid}, dropping remaining output"
            )
            for pump in pending:
                pump.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    def _report_error(self, error: BaseException) -> None:
        if self._on_error is not None:
            self._on_error(error)
        else:
            logger.warning(f"Unhandled error in subprocess pid={self.pid}: {error!r}")

    # =========================================================================
    # Stdin
    # =========================================================================

    def feed_input(self, chunks: StdinSource) -> None:
        """Write chunks to the process's stdin in order, then close it.

        Feeding runs as a task owned by this handle and is cancelled with it.
        Encoding failures are reported through ``on_error`` as
        InputEncodingFailure.

        Raises:
            RuntimeError: if the process was not started with a stdin pipe
        """
        process = self._process
        if process is None or process.stdin is None:
            raise RuntimeError("Process was not started with a stdin pipe")
        if self._feeder is not None:
            raise RuntimeError("Input is already being fed")

        self._feeder = asyncio.create_task(
            self._feed(process.stdin, chunks), name=f"taskstream-stdin-{process.pid}"
        )

    async def _feed(self, stdin: asyncio.StreamWriter, chunks: StdinSource) -> None:
        try:
            if isinstance(chunks, AsyncIterable):
                async for chunk in chunks:
                    await self._write_chunk(stdin, chunk)
            else:
                for chunk in chunks:
                    await self._write_chunk(stdin, chunk)
        except (BrokenPipeError, ConnectionResetError):
            # The child closed its end; nothing left to feed.
            logger.debug(f"Stdin closed by subprocess pid={self.pid}")
        except Exception as e:
            self._report_error(e)
        finally:
            await self._close_stdin(stdin)

    async def _write_chunk(self, stdin: asyncio.StreamWriter, chunk: Any) -> None:
        stdin.write(self._encode(chunk))
        await stdin.drain()

    def _encode(self, chunk: Any) -> bytes:
        if isinstance(chunk, (bytes, bytearray, memoryview)):
            return bytes(chunk)
        if isinstance(chunk, str):
            try:
                return chunk.encode(self.config.input_encoding)
            except UnicodeEncodeError as e:
                raise InputEncodingFailure(chunk) from e
        raise InputEncodingFailure(repr(chunk))

    async def _close_stdin(self, stdin: asyncio.StreamWriter) -> None:
        if stdin.is_closing():
            return
        stdin.close()
        with contextlib.suppress(BrokenPipeError, ConnectionResetError):
            await stdin.wait_closed()

    # =========================================================================
    # Termination
    # =========================================================================

    def terminate(self) -> None:
        """Ask the process to exit (SIGTERM / CTRL_BREAK_EVENT).

        No-op when the process is not running or termination was already
        requested.
        """
        process = self._process
        if process is None or process.returncode is not None or self._terminate_sent:
            return
        self._terminate_sent = True
        logger.debug(f"Terminating subprocess pid={process.pid}")

        if IS_WINDOWS:
            self._windows_terminate(process)
        else:
            self._posix_signal(process, signal.SIGTERM)

    def kill(self) -> None:
        """Force the process to exit (SIGKILL / TerminateProcess).

        No-op when the process is not running or was already killed.
        """
        process = self._process
        if process is None or process.returncode is not None or self._kill_sent:
            return
        self._kill_sent = True
        logger.debug(f"Force killing subprocess pid={process.pid}")

        if IS_WINDOWS:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
        else:
            self._posix_signal(process, signal.SIGKILL)

    def _posix_signal(self, process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        """Signal the process group when isolated, the process otherwise."""
        try:
            if self.config.new_session:
                # pgid equals pid because of start_new_session
                pgid = os.getpgid(process.pid)
                os.killpg(pgid, sig)
                logger.debug(f"Sent {sig.name} to process group pgid={pgid}")
            else:
                process.send_signal(sig)
                logger.debug(f"Sent {sig.name} to pid={process.pid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to send_signal: {e}")
            with contextlib.suppress(ProcessLookupError):
                process.send_signal(sig)

    def _windows_terminate(self, process: asyncio.subprocess.Process) -> None:
        """Send CTRL_BREAK_EVENT to the process group on Windows."""
        try:
            # Works because of CREATE_NEW_PROCESS_GROUP
            os.kill(process.pid, signal.CTRL_BREAK_EVENT)
            logger.debug(f"Sent CTRL_BREAK_EVENT to pid={process.pid}")
        except (ProcessLookupError, OSError) as e:
            logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
            with contextlib.suppress(ProcessLookupError):
                process.terminate()

    # =========================================================================
    # Cleanup
    # =========================================================================

    async def aclose(self) -> None:
        """Stop feeding, end the process if needed and reap helper tasks.

        The cleanup runs as its own task and is awaited through asyncio.shield,
        so cancelling the caller does not interrupt it. Safe to call repeatedly.
        """
        if self._cleanup is None:
            self._cleanup = asyncio.ensure_future(self._do_cleanup())
        await asyncio.shield(self._cleanup)

    async def _do_cleanup(self) -> None:
        await self._cancel_task(self._feeder)

        process = self._process
        if process is not None and process.returncode is None:
            await self._terminate_process(process)

        for pump in self._pumps:
            await self._cancel_task(pump)
        await self._cancel_task(self._watcher)

    async def _cancel_task(self, task: asyncio.Task[None] | None) -> None:
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _terminate_process(self, process: asyncio.subprocess.Process) -> None:
        """Terminate gracefully, then forcefully if needed.

        Termination strategy:
        1. SIGTERM (CTRL_BREAK_EVENT on Windows)
        2. Wait up to term_timeout
        3. SIGKILL (TerminateProcess on Windows)
        4. Wait up to kill_timeout
        """
        pid = process.pid
        self.terminate()

        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.term_timeout)
            logger.debug(
                f"Subprocess terminated gracefully pid={pid} "
                f"returncode={process.returncode}"
            )
            return
        except asyncio.TimeoutError:
            pass

        self.kill()

        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.kill_timeout)
            logger.debug(f"Subprocess killed pid={pid} returncode={process.returncode}")
        except asyncio.TimeoutError:
            logger.warning(f"Subprocess did not exit after kill pid={pid}")
