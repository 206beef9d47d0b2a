"""taskstream exceptions.

TaskError and its subclasses are the terminal failures a stream can end with.
TaskLaunchError is raised before a stream produces anything, when the OS refuses
to start the process at all.
"""

from __future__ import annotations

import signal

__all__ = [
    "TaskStreamError",
    "TaskLaunchError",
    "TaskError",
    "ExitFailure",
    "UncaughtSignal",
    "InputEncodingFailure",
]


class TaskStreamError(Exception):
    """Base exception for taskstream."""
    pass


class TaskLaunchError(TaskStreamError):
    """The executable could not be started.

    Attributes:
        executable_path: the path that was handed to the OS
        reason: the underlying OS error
    """

    def __init__(self, executable_path: str, reason: OSError) -> None:
        self.executable_path = executable_path
        self.reason = reason
        super().__init__(f"Failed to launch {executable_path}: {reason}")


class TaskError(TaskStreamError):
    """Terminal failure of a task's event stream.

    Errors compare by value: two errors are equal when they are the same
    variant carrying the same payload.
    """

    def _payload(self) -> tuple[object, ...]:
        return ()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TaskError):
            return NotImplemented
        return type(self) is type(other) and self._payload() == other._payload()

    def __hash__(self) -> int:
        return hash((type(self), self._payload()))


class ExitFailure(TaskError):
    """The process exited normally with a non-zero status.

    Attributes:
        status_code: the exit status
    """

    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(f"Task exited with status {status_code}")

    def _payload(self) -> tuple[object, ...]:
        return (self.status_code,)


class UncaughtSignal(TaskError):
    """The process was terminated by a signal instead of exiting.

    Equality includes the signal number, so an error without one only equals
    another error without one.

    Attributes:
        signal_number: the terminating signal, when the OS reported one
    """

    def __init__(self, signal_number: int | None = None) -> None:
        self.signal_number = signal_number
        if signal_number is None:
            super().__init__("Task terminated by an uncaught signal")
        else:
            super().__init__(f"Task terminated by uncaught signal {self.signal_name}")

    def _payload(self) -> tuple[object, ...]:
        return (self.signal_number,)

    @property
    def signal_name(self) -> str | None:
        """Symbolic name of the signal, e.g. ``SIGTERM``."""
        if self.signal_number is None:
            return None
        try:
            return signal.Signals(self.signal_number).name
        except ValueError:
            return str(self.signal_number)


class InputEncodingFailure(TaskError):
    """A stdin chunk could not be turned into bytes.

    Attributes:
        text: the offending chunk (its repr for non-text objects)
    """

    def __init__(self, text: str) -> None:
        self.text = text
        super().__init__(f"Could not encode stdin chunk: {text!r}")

    def _payload(self) -> tuple[object, ...]:
        return (self.text,)
