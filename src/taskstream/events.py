"""Task lifecycle event models.

A launched task reports its lifecycle as a sequence of these events:

1. ``Start`` - exactly once, first
2. ``StdOut`` / ``StdErr`` - zero or more, in pipe read order
3. ``Exit`` - only on a clean exit with status 0, always last

Failures are not events; they are raised as ``TaskError`` from the stream.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

__all__ = [
    "TaskEventBase",
    "Start",
    "StdOut",
    "StdErr",
    "Exit",
    "TaskEvent",
    "parse_event",
]


class TaskEventBase(BaseModel):
    """Base class for all task events.

    Events are immutable values; two events are equal when they are the same
    variant carrying the same payload.
    """

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
    )

    kind: str

    @property
    def exit_status(self) -> int | None:
        """Exit status carried by an ``Exit`` event, otherwise None."""
        return None

    @property
    def output(self) -> bytes | None:
        """Bytes carried by a ``StdOut``/``StdErr`` event, otherwise None."""
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dict."""
        return self.model_dump()


class Start(TaskEventBase):
    """The task's process has been launched."""

    kind: Literal["start"] = "start"
    command: str


class StdOut(TaskEventBase):
    """A chunk read from the process's stdout."""

    kind: Literal["stdout"] = "stdout"
    data: bytes

    @property
    def output(self) -> bytes:
        return self.data

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "data": self.data.decode("utf-8", errors="replace")}


class StdErr(TaskEventBase):
    """A chunk read from the process's stderr."""

    kind: Literal["stderr"] = "stderr"
    data: bytes

    @property
    def output(self) -> bytes:
        return self.data

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "data": self.data.decode("utf-8", errors="replace")}


class Exit(TaskEventBase):
    """The process exited successfully."""

    kind: Literal["exit"] = "exit"
    status_code: int = 0

    @property
    def exit_status(self) -> int:
        return self.status_code


TaskEvent = Annotated[
    Union[Start, StdOut, StdErr, Exit],
    Field(discriminator="kind"),
]

_event_adapter: TypeAdapter[TaskEvent] = TypeAdapter(TaskEvent)


def parse_event(data: dict[str, Any]) -> TaskEvent:
    """Rebuild an event from its dict form (see ``to_dict``)."""
    return _event_adapter.validate_python(data)
