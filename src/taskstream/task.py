"""Task launch descriptor."""

from __future__ import annotations

import os
from collections.abc import AsyncIterable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
    from .config import Config
    from .runtime.stream import TaskEventStream

__all__ = ["Task", "StdinSource"]

# Lazy source of stdin chunks; str chunks are encoded on write
StdinSource = Union[Iterable[Union[bytes, str]], AsyncIterable[Union[bytes, str]]]


@dataclass(frozen=True)
class Task:
    """Immutable description of a process to launch.

    A Task holds no runtime state, so it can be launched any number of times;
    every launch gets its own process and its own event stream.

    Attributes:
        executable_path: path of the executable (passed verbatim to exec)
        arguments: positional arguments, passed verbatim
        working_directory: working directory (None = inherit the caller's)
        environment: full replacement environment (None = inherit the caller's)
        stdin: optional lazy source of chunks written to the process's stdin

    Example:
        task = Task("/bin/echo", ["hello", "world"])

        async with task.launch() as stream:
            async for event in stream:
                print(event)
    """

    executable_path: str
    arguments: Sequence[str] = ()
    working_directory: str | None = None
    environment: Mapping[str, str] | None = field(default=None, hash=False)
    stdin: StdinSource | None = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        """Normalise path-likes and copy mutable inputs."""
        object.__setattr__(self, "executable_path", os.fspath(self.executable_path))
        object.__setattr__(self, "arguments", tuple(self.arguments))
        if self.working_directory is not None:
            object.__setattr__(self, "working_directory", os.fspath(self.working_directory))
        if self.environment is not None:
            object.__setattr__(self, "environment", dict(self.environment))

    @property
    def description(self) -> str:
        """Executable path and arguments joined by spaces (descriptive only, unquoted)."""
        return " ".join([self.executable_path, *self.arguments])

    def __str__(self) -> str:
        return self.description

    def launch(self, *, config: Config | None = None) -> TaskEventStream:
        """Create a fresh event stream for one run of this task.

        The process is spawned when the stream is first iterated.

        Args:
            config: runtime settings (default: the global configuration)

        Returns:
            A new TaskEventStream
        """
        from .runtime.stream import TaskEventStream

        return TaskEventStream(self, config=config)
