"""taskstream - observe a subprocess as an ordered, cancellable event stream.

Usage:
    from taskstream import Task, StdOut

    async with Task("/bin/echo", ["hello"]).launch() as stream:
        async for event in stream:
            ...

Environment variables:
    TASKSTREAM_TERM_TIMEOUT: seconds to wait after SIGTERM (default 2.0)
    TASKSTREAM_KILL_TIMEOUT: seconds to wait after SIGKILL (default 1.0)
    TASKSTREAM_DRAIN_TIMEOUT: max seconds to drain output after exit (default: until EOF)
    TASKSTREAM_NEW_SESSION: isolate children in a new session (default true)
"""

__version__ = "0.1.0"

from .errors import (
    ExitFailure,
    InputEncodingFailure,
    TaskError,
    TaskLaunchError,
    TaskStreamError,
    UncaughtSignal,
)
from .events import Exit, Start, StdErr, StdOut, TaskEvent
from .projections import only_exit_status, only_output
from .runtime import ProcessHandle, StreamState, TaskEventStream
from .task import Task

__all__ = [
    "__version__",
    "Task",
    "TaskEventStream",
    "StreamState",
    "ProcessHandle",
    "TaskEvent",
    "Start",
    "StdOut",
    "StdErr",
    "Exit",
    "TaskStreamError",
    "TaskLaunchError",
    "TaskError",
    "ExitFailure",
    "UncaughtSignal",
    "InputEncodingFailure",
    "only_exit_status",
    "only_output",
]
