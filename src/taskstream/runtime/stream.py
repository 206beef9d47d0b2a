"""Task event stream.

Turns one ProcessHandle into an ordered, cancellable async iterator of
TaskEvents with exactly one terminal outcome:

    Start -> (StdOut | StdErr)* -> Exit          (status 0, iteration ends)
    Start -> (StdOut | StdErr)* -> raise TaskError

The handle's callbacks are the only writer of an unbounded in-memory channel;
``__anext__`` is the only reader. Leaving the stream early (break + aclose,
``async with``, task cancellation or ``cancel()``) terminates the process if
it is still running.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import math
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from ..config import Config, get_config
from ..errors import ExitFailure, TaskLaunchError, UncaughtSignal
from ..events import Exit, Start, StdErr, StdOut, TaskEvent
from .handle import ProcessHandle, Termination, TerminationReason

if TYPE_CHECKING:
    from ..task import Task

__all__ = ["StreamState", "TaskEventStream"]

logger = logging.getLogger(__name__)


class StreamState(str, enum.Enum):
    """Lifecycle of a stream, seen from the producer side."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (StreamState.COMPLETED, StreamState.FAILED, StreamState.CANCELLED)


@dataclass(frozen=True)
class _Failure:
    """Channel item carrying the stream's terminal error."""

    error: BaseException


_Item = Union[TaskEvent, _Failure]


class TaskEventStream:
    """Ordered event stream for one launch of a Task.

    The process is spawned on the first ``__anext__``. Each stream owns its
    process, pipes and stdin feeder exclusively and can be iterated once.

    Example:
        async with task.launch() as stream:
            async for event in stream:
                if isinstance(event, StdOut):
                    sys.stdout.buffer.write(event.data)
    """

    def __init__(self, task: Task, *, config: Config | None = None) -> None:
        self._task = task
        self._config = config or get_config()
        self._handle: ProcessHandle | None = None
        self._state = StreamState.NOT_STARTED
        # Set once the consumer must not see any more events
        self._exhausted = False

        send: MemoryObjectSendStream[_Item]
        receive: MemoryObjectReceiveStream[_Item]
        send, receive = anyio.create_memory_object_stream(max_buffer_size=math.inf)
        self._send = send
        self._receive = receive

    def __repr__(self) -> str:
        return f"TaskEventStream(command={self.command!r}, state={self._state.value})"

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def task(self) -> Task:
        return self._task

    @property
    def command(self) -> str:
        return self._task.description

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def handle(self) -> ProcessHandle | None:
        """The process handle, once the stream has been started."""
        return self._handle

    # =========================================================================
    # Iteration
    # =========================================================================

    def __aiter__(self) -> TaskEventStream:
        return self

    async def __anext__(self) -> TaskEvent:
        if self._exhausted:
            raise StopAsyncIteration

        item: _Item | None
        try:
            if self._state is StreamState.NOT_STARTED:
                await self._start()
            item = await self._receive.receive()
        except (anyio.EndOfStream, anyio.ClosedResourceError):
            item = None
        except asyncio.CancelledError:
            # The consumer's task is being cancelled: end the process with it
            self.cancel()
            await self.aclose()
            raise

        if item is None or self._exhausted:
            self._exhausted = True
            await self.aclose()
            raise StopAsyncIteration

        if isinstance(item, _Failure):
            self._exhausted = True
            await self.aclose()
            raise item.error

        return item

    async def __aenter__(self) -> TaskEventStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _start(self) -> None:
        """Spawn the process; ``Start`` is queued before any output."""
        handle = ProcessHandle(self._task, config=self._config)
        self._handle = handle

        try:
            await handle.start(
                on_stdout=lambda data: self._emit(StdOut(data=data)),
                on_stderr=lambda data: self._emit(StdErr(data=data)),
                on_exit=self._on_exit,
                on_error=self._on_error,
                on_spawn=self._on_spawn,
            )
        except OSError as e:
            logger.debug(f"Launch failed for {self.command!r}: {e}")
            self._state = StreamState.FAILED
            self._exhausted = True
            self._send.close()
            self._receive.close()
            raise TaskLaunchError(self._task.executable_path, e) from e

        if self._task.stdin is not None and self._state is StreamState.RUNNING:
            handle.feed_input(self._task.stdin)

    # =========================================================================
    # Producer callbacks
    # =========================================================================

    def _on_spawn(self, process: asyncio.subprocess.Process) -> None:
        if self._state is not StreamState.NOT_STARTED:
            # Cancelled while the spawn was in flight
            if self._handle is not None:
                self._handle.terminate()
            return
        self._state = StreamState.RUNNING
        self._emit(Start(command=self.command))

    def _on_exit(self, termination: Termination) -> None:
        if termination.reason is TerminationReason.UNCAUGHT_SIGNAL:
            self._finish(StreamState.FAILED, _Failure(UncaughtSignal(termination.status)))
        elif termination.status != 0:
            self._finish(StreamState.FAILED, _Failure(ExitFailure(termination.status)))
        else:
            self._finish(StreamState.COMPLETED, Exit(status_code=termination.status))

    def _on_error(self, error: BaseException) -> None:
        self._finish(StreamState.FAILED, _Failure(error))

    def _emit(self, item: _Item) -> None:
        if self._state is not StreamState.RUNNING:
            logger.debug(f"Dropping {type(item).__name__} after stream {self._state.value}")
            return
        self._send.send_nowait(item)

    def _finish(self, state: StreamState, item: _Item) -> None:
        """Queue the terminal outcome and close the channel."""
        if self._state is not StreamState.RUNNING:
            logger.debug(f"Ignoring terminal outcome after stream {self._state.value}")
            return
        self._send.send_nowait(item)
        self._state = state
        self._send.close()
        logger.debug(f"Stream {state.value} command={self.command!r}")

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancel(self) -> None:
        """Stop observing; terminates the process if it is still running.

        Fire-and-forget and idempotent. Use ``aclose()`` to also wait for
        cleanup.
        """
        self._exhausted = True
        if self._state.is_terminal:
            return
        self._state = StreamState.CANCELLED
        logger.debug(f"Stream cancelled command={self.command!r}")
        if self._handle is not None:
            self._handle.terminate()
        self._send.close()

    async def aclose(self) -> None:
        """Cancel if still running and wait for the process to be cleaned up."""
        self.cancel()
        if self._handle is not None:
            await self._handle.aclose()
        self._receive.close()

    # =========================================================================
    # Collectors and projections
    # =========================================================================

    async def to_list(self) -> list[TaskEvent]:
        """Collect every event until completion.

        Raises:
            TaskError: if the task fails
        """
        async with self:
            return [event async for event in self]

    def only_exit_status(self) -> AsyncIterator[int]:
        """See ``taskstream.projections.only_exit_status``."""
        from ..projections import only_exit_status

        return only_exit_status(self)

    def only_output(self, encoding: str | None = None) -> AsyncIterator[bytes | str]:
        """See ``taskstream.projections.only_output``."""
        from ..projections import only_output

        return only_output(self, encoding=encoding)
