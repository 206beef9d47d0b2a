"""Runtime module for process management and event streaming.

ProcessHandle owns one OS process and its pipes; TaskEventStream turns a
handle into the ordered, cancellable event stream returned by Task.launch().
"""

from __future__ import annotations

from .handle import ProcessHandle, Termination, TerminationReason
from .stream import StreamState, TaskEventStream

__all__ = [
    "ProcessHandle",
    "StreamState",
    "TaskEventStream",
    "Termination",
    "TerminationReason",
]
