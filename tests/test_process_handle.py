"""ProcessHandle unit tests.

Test coverage:
- Spawn and output delivery (stdout/stderr chunks)
- Exit reporting after pipes are drained
- Stdin feeding
- Process isolation (new session/process group)
- Idempotent termination and cleanup
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
from pathlib import Path
from unittest import mock

import pytest

from taskstream import InputEncodingFailure, Task
from taskstream.config import Config
from taskstream.runtime.handle import (
    IS_WINDOWS,
    ProcessHandle,
    Termination,
    TerminationReason,
)

pytestmark = pytest.mark.skipif(IS_WINDOWS, reason="POSIX-specific tests")


class Recorder:
    """Collects handle callbacks in arrival order."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, object]] = []
        self.exited = asyncio.Event()
        self.errors: list[BaseException] = []

    def on_stdout(self, chunk: bytes) -> None:
        self.calls.append(("stdout", chunk))

    def on_stderr(self, chunk: bytes) -> None:
        self.calls.append(("stderr", chunk))

    def on_exit(self, termination: Termination) -> None:
        self.calls.append(("exit", termination))
        self.exited.set()

    def on_error(self, error: BaseException) -> None:
        self.errors.append(error)

    def on_spawn(self, process: asyncio.subprocess.Process) -> None:
        self.calls.append(("spawn", process.pid))

    def output(self, kind: str) -> bytes:
        return b"".join(data for name, data in self.calls if name == kind)  # type: ignore[misc]

    @property
    def terminations(self) -> list[Termination]:
        return [data for name, data in self.calls if name == "exit"]  # type: ignore[misc]

    async def start(self, handle: ProcessHandle) -> asyncio.subprocess.Process:
        return await handle.start(
            self.on_stdout,
            self.on_stderr,
            self.on_exit,
            on_error=self.on_error,
            on_spawn=self.on_spawn,
        )


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


# =============================================================================
# Termination
# =============================================================================


class TestTermination:
    """Termination.from_returncode mapping."""

    def test_normal_exit(self):
        assert Termination.from_returncode(0) == Termination(TerminationReason.EXIT, 0)
        assert Termination.from_returncode(3) == Termination(TerminationReason.EXIT, 3)

    def test_signal(self):
        assert Termination.from_returncode(-signal.SIGKILL) == Termination(
            TerminationReason.UNCAUGHT_SIGNAL, signal.SIGKILL
        )


# =============================================================================
# Basic Execution Tests
# =============================================================================


class TestBasicExecution:
    """Spawn, output callbacks and exit reporting."""

    @pytest.mark.asyncio
    async def test_stdout_then_exit(self, recorder: Recorder, fast_config: Config):
        handle = ProcessHandle(Task("/bin/echo", ["hello"]), config=fast_config)
        await recorder.start(handle)
        await asyncio.wait_for(recorder.exited.wait(), timeout=5)

        assert recorder.output("stdout") == b"hello\n"
        assert recorder.terminations == [Termination(TerminationReason.EXIT, 0)]
        assert recorder.calls[-1][0] == "exit"
        assert handle.returncode == 0
        assert not handle.is_running
        await handle.aclose()

    @pytest.mark.asyncio
    async def test_spawn_reported_before_output(self, recorder: Recorder, fast_config: Config):
        handle = ProcessHandle(Task("/bin/echo", ["hello"]), config=fast_config)
        process = await recorder.start(handle)
        await asyncio.wait_for(recorder.exited.wait(), timeout=5)

        assert recorder.calls[0] == ("spawn", process.pid)
        assert handle.pid == process.pid
        await handle.aclose()

    @pytest.mark.asyncio
    async def test_stderr_callback(self, recorder: Recorder, fast_config: Config):
        handle = ProcessHandle(
            Task("/bin/sh", ["-c", "echo 'error message' >&2"]), config=fast_config
        )
        await recorder.start(handle)
        await asyncio.wait_for(recorder.exited.wait(), timeout=5)

        assert recorder.output("stderr") == b"error message\n"
        assert recorder.output("stdout") == b""
        await handle.aclose()

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, recorder: Recorder, fast_config: Config):
        handle = ProcessHandle(Task("/bin/sh", ["-c", "exit 7"]), config=fast_config)
        await recorder.start(handle)
        await asyncio.wait_for(recorder.exited.wait(), timeout=5)

        assert recorder.terminations == [Termination(TerminationReason.EXIT, 7)]
        await handle.aclose()

    @pytest.mark.asyncio
    async def test_signal_exit(self, recorder: Recorder, fast_config: Config):
        handle = ProcessHandle(Task("/bin/sh", ["-c", "kill -KILL $$"]), config=fast_config)
        await recorder.start(handle)
        await asyncio.wait_for(recorder.exited.wait(), timeout=5)

        assert recorder.terminations == [
            Termination(TerminationReason.UNCAUGHT_SIGNAL, signal.SIGKILL)
        ]
        await handle.aclose()

    @pytest.mark.asyncio
    async def test_output_drained_before_exit(self, recorder: Recorder, fast_config: Config):
        """A fast-exiting process still has all of its buffered output delivered."""
        size = 512 * 1024
        handle = ProcessHandle(
            Task("/bin/sh", ["-c", f"head -c {size} /dev/zero"]), config=fast_config
        )
        await recorder.start(handle)
        await asyncio.wait_for(recorder.exited.wait(), timeout=10)

        assert len(recorder.output("stdout")) == size
        await handle.aclose()

    @pytest.mark.asyncio
    async def test_chunk_size(self, recorder: Recorder):
        config = Config(read_chunk_size=4, term_timeout=0.5, kill_timeout=0.3)
        handle = ProcessHandle(Task("/bin/echo", ["0123456789"]), config=config)
        await recorder.start(handle)
        await asyncio.wait_for(recorder.exited.wait(), timeout=5)

        chunks = [data for name, data in recorder.calls if name == "stdout"]
        assert all(len(chunk) <= 4 for chunk in chunks)  # type: ignore[arg-type]
        assert recorder.output("stdout") == b"0123456789\n"
        await handle.aclose()

    @pytest.mark.asyncio
    async def test_working_directory(self, tmp_path: Path, recorder: Recorder, fast_config: Config):
        handle = ProcessHandle(Task("/bin/pwd", working_directory=tmp_path), config=fast_config)
        await recorder.start(handle)
        await asyncio.wait_for(recorder.exited.wait(), timeout=5)

        assert recorder.output("stdout").decode().strip() == os.path.realpath(tmp_path)
        await handle.aclose()

    @pytest.mark.asyncio
    async def test_environment_replaces(self, recorder: Recorder, fast_config: Config):
        handle = ProcessHandle(
            Task("/bin/sh", ["-c", 'echo "$TEST_VAR:$HOME"'], environment={"TEST_VAR": "abc"}),
            config=fast_config,
        )
        await recorder.start(handle)
        await asyncio.wait_for(recorder.exited.wait(), timeout=5)

        assert recorder.output("stdout") == b"abc:\n"
        await handle.aclose()

    @pytest.mark.asyncio
    async def test_nonexistent_command(self, tmp_path: Path, recorder: Recorder):
        handle = ProcessHandle(Task(str(tmp_path / "missing")))

        with pytest.raises(OSError):
            await recorder.start(handle)

        assert handle.process is None
        assert recorder.calls == []

    @pytest.mark.asyncio
    async def test_start_twice(self, recorder: Recorder, fast_config: Config):
        handle = ProcessHandle(Task("/bin/true"), config=fast_config)
        await recorder.start(handle)

        with pytest.raises(RuntimeError):
            await recorder.start(handle)
        await handle.aclose()


# =============================================================================
# Drain Timeout Tests
# =============================================================================


class TestDrainTimeout:
    """Exit delivery when a grandchild keeps the pipes open."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_exit_delivered_after_drain_timeout(self, recorder: Recorder):
        config = Config(drain_timeout=0.2, term_timeout=0.5, kill_timeout=0.3)
        handle = ProcessHandle(
            Task("/bin/sh", ["-c", "sleep 3 & echo done"]), config=config
        )
        await recorder.start(handle)
        await asyncio.wait_for(recorder.exited.wait(), timeout=2)

        assert recorder.output("stdout") == b"done\n"
        assert recorder.terminations == [Termination(TerminationReason.EXIT, 0)]

        # The background sleep still holds the pipes; it shares the process group
        assert handle.pid is not None
        with contextlib.suppress(ProcessLookupError):
            os.killpg(handle.pid, signal.SIGKILL)
        await handle.aclose()


# =============================================================================
# Stdin Tests
# =============================================================================


class TestStdin:
    """feed_input behaviour."""

    @pytest.mark.asyncio
    async def test_chunks_written_in_order(self, recorder: Recorder, fast_config: Config):
        handle = ProcessHandle(
            Task("/bin/cat", stdin=[b"line1\n", "line2\n", bytearray(b"line3\n")]),
            config=fast_config,
        )
        await recorder.start(handle)
        handle.feed_input(handle.task.stdin)  # type: ignore[arg-type]
        await asyncio.wait_for(recorder.exited.wait(), timeout=5)

        assert recorder.output("stdout") == b"line1\nline2\nline3\n"
        assert recorder.errors == []
        await handle.aclose()

    @pytest.mark.asyncio
    async def test_async_source(self, recorder: Recorder, fast_config: Config):
        async def chunks():
            for word in (b"a", b"b", b"c"):
                await asyncio.sleep(0.01)
                yield word

        handle = ProcessHandle(Task("/bin/cat", stdin=chunks()), config=fast_config)
        await recorder.start(handle)
        handle.feed_input(handle.task.stdin)  # type: ignore[arg-type]
        await asyncio.wait_for(recorder.exited.wait(), timeout=5)

        assert recorder.output("stdout") == b"abc"
        await handle.aclose()

    @pytest.mark.asyncio
    async def test_unencodable_text(self, recorder: Recorder, fast_config: Config):
        handle = ProcessHandle(Task("/bin/cat", stdin=["ok", "\ud800"]), config=fast_config)
        await recorder.start(handle)
        handle.feed_input(handle.task.stdin)  # type: ignore[arg-type]
        await asyncio.wait_for(recorder.exited.wait(), timeout=5)

        assert len(recorder.errors) == 1
        assert isinstance(recorder.errors[0], InputEncodingFailure)
        assert recorder.errors[0].text == "\ud800"
        await handle.aclose()

    @pytest.mark.asyncio
    async def test_non_text_chunk(self, recorder: Recorder, fast_config: Config):
        handle = ProcessHandle(Task("/bin/cat", stdin=[123]), config=fast_config)  # type: ignore[list-item]
        await recorder.start(handle)
        handle.feed_input(handle.task.stdin)  # type: ignore[arg-type]
        await asyncio.wait_for(recorder.exited.wait(), timeout=5)

        assert isinstance(recorder.errors[0], InputEncodingFailure)
        assert recorder.errors[0].text == "123"
        await handle.aclose()

    @pytest.mark.asyncio
    async def test_without_stdin_pipe(self, recorder: Recorder, fast_config: Config):
        handle = ProcessHandle(Task("/bin/true"), config=fast_config)
        await recorder.start(handle)

        with pytest.raises(RuntimeError):
            handle.feed_input([b"x"])
        await handle.aclose()

    @pytest.mark.asyncio
    async def test_child_ignoring_stdin(self, recorder: Recorder, fast_config: Config):
        """A child that exits without reading does not turn into an error."""
        big = [b"x" * 65536] * 32
        handle = ProcessHandle(Task("/bin/true", stdin=big), config=fast_config)
        await recorder.start(handle)
        handle.feed_input(big)
        await asyncio.wait_for(recorder.exited.wait(), timeout=5)
        await handle.aclose()

        assert recorder.errors == []
        assert recorder.terminations == [Termination(TerminationReason.EXIT, 0)]


# =============================================================================
# Process Isolation Tests
# =============================================================================


class TestProcessIsolation:
    """Session/process-group isolation."""

    @pytest.mark.asyncio
    async def test_new_session(self, recorder: Recorder, fast_config: Config):
        handle = ProcessHandle(Task("/bin/sleep", ["5"]), config=fast_config)
        await recorder.start(handle)

        assert handle.pid is not None
        assert os.getpgid(handle.pid) == handle.pid
        assert os.getsid(handle.pid) != os.getsid(0)
        await handle.aclose()

    @pytest.mark.asyncio
    async def test_shared_session(self, recorder: Recorder):
        config = Config(new_session=False, term_timeout=0.5, kill_timeout=0.3)
        handle = ProcessHandle(Task("/bin/sleep", ["5"]), config=config)
        await recorder.start(handle)

        assert handle.pid is not None
        assert os.getpgid(handle.pid) == os.getpgid(0)
        await handle.aclose()
        assert handle.returncode == -signal.SIGTERM


# =============================================================================
# Termination Tests
# =============================================================================


class TestTerminate:
    """terminate()/kill()/aclose()."""

    @pytest.mark.asyncio
    async def test_terminate_running_process(self, recorder: Recorder, fast_config: Config):
        handle = ProcessHandle(Task("/bin/sleep", ["30"]), config=fast_config)
        await recorder.start(handle)
        assert handle.is_running

        handle.terminate()
        await asyncio.wait_for(recorder.exited.wait(), timeout=5)

        assert recorder.terminations == [
            Termination(TerminationReason.UNCAUGHT_SIGNAL, signal.SIGTERM)
        ]
        await handle.aclose()

    def test_terminate_before_start_is_noop(self):
        ProcessHandle(Task("/bin/true")).terminate()

    @pytest.mark.asyncio
    async def test_terminate_signals_once(self, recorder: Recorder, fast_config: Config):
        handle = ProcessHandle(Task("/bin/sleep", ["30"]), config=fast_config)
        await recorder.start(handle)

        with mock.patch("taskstream.runtime.handle.os.killpg") as killpg:
            handle.terminate()
            handle.terminate()
        assert killpg.call_count == 1

        # The mocked SIGTERM never arrived; cleanup escalates to SIGKILL
        await handle.aclose()
        assert handle.returncode == -signal.SIGKILL

    @pytest.mark.asyncio
    async def test_terminate_after_exit_is_noop(self, recorder: Recorder, fast_config: Config):
        handle = ProcessHandle(Task("/bin/true"), config=fast_config)
        await recorder.start(handle)
        await asyncio.wait_for(recorder.exited.wait(), timeout=5)

        with mock.patch("taskstream.runtime.handle.os.killpg") as killpg:
            handle.terminate()
            handle.kill()
        killpg.assert_not_called()
        await handle.aclose()

    @pytest.mark.asyncio
    async def test_aclose_terminates_and_is_idempotent(self, recorder: Recorder, fast_config: Config):
        handle = ProcessHandle(Task("/bin/sleep", ["30"]), config=fast_config)
        await recorder.start(handle)
        pid = handle.pid
        assert pid is not None

        await handle.aclose()
        await handle.aclose()

        assert handle.returncode == -signal.SIGTERM
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)

    @pytest.mark.asyncio
    async def test_kill_after_ignored_sigterm(self, recorder: Recorder, fast_config: Config):
        handle = ProcessHandle(
            Task("/bin/sh", ["-c", "trap '' TERM; echo ready; sleep 30"]), config=fast_config
        )
        await recorder.start(handle)
        while b"ready" not in recorder.output("stdout"):
            await asyncio.sleep(0.01)

        await handle.aclose()

        assert handle.returncode == -signal.SIGKILL
