"""Launch and supervise robot processes with a hard wall-clock timeout."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from robot_worker.errors import RobotLaunchError, SupervisionCancelled

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 64 * 1024


@dataclass(frozen=True, slots=True)
class ProcessInvocation:
    """Executable, ordered arguments and working directory of one robot run."""

    executable: Path | str
    arguments: tuple[str, ...] = ()
    working_directory: Path | None = None

    @property
    def argv(self) -> list[str]:
        return [str(self.executable), *self.arguments]

    @property
    def command_line(self) -> str:
        return render_command_line(self.argv)


@dataclass(slots=True)
class ProcessResult:
    """Exit status and captured streams of a finished robot process."""

    exit_code: int | None
    stdout: bytes
    stderr: bytes
    timed_out: bool
    command_line: str
    duration_seconds: float = 0.0


@dataclass(slots=True)
class RobotProcessHandle:
    """Running robot process together with its stream drains."""

    process: subprocess.Popen[bytes]
    command_line: str
    started_at: float
    stdout_drain: _StreamDrain
    stderr_drain: _StreamDrain
    finished: bool = field(default=False)

    @property
    def pid(self) -> int:
        return self.process.pid


class _StreamDrain:
    """Background reader that empties one pipe while the process runs."""

    def __init__(self, stream: IO[bytes], *, name: str) -> None:
        self._stream = stream
        self._chunks: list[bytes] = []
        self._thread = threading.Thread(target=self._run, daemon=True, name=name)
        self._thread.start()

    def _run(self) -> None:
        try:
            while True:
                chunk = self._stream.read1(_READ_CHUNK_BYTES)  # type: ignore[attr-defined]
                if not chunk:
                    return
                self._chunks.append(chunk)
        except (OSError, ValueError):
            # Pipe closed underneath us after the process was killed.
            return
        finally:
            try:
                self._stream.close()
            except OSError:
                pass

    def collect(self, timeout: float) -> bytes:
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.debug("Stream drain %s still open after %.1fs", self._thread.name, timeout)
        return b"".join(self._chunks)


class ProcessSupervisor:
    """Starts robot processes and waits for them with timeout and cancellation."""

    def __init__(
        self,
        *,
        kill_grace_seconds: float = 5.0,
        poll_interval_seconds: float = 0.1,
        drain_timeout_seconds: float = 5.0,
    ) -> None:
        self.kill_grace_seconds = kill_grace_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.drain_timeout_seconds = drain_timeout_seconds

    def launch(self, invocation: ProcessInvocation) -> RobotProcessHandle:
        """Spawn the process and start draining its output; never waits for exit."""

        command_line = invocation.command_line
        logger.info("Starting robot process %s", command_line)
        try:
            process = subprocess.Popen(  # noqa: S603
                invocation.argv,
                cwd=invocation.working_directory,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except (OSError, ValueError) as error:
            raise RobotLaunchError(
                f"Could not start {invocation.argv[0]}: {error}",
                command_line=command_line,
            ) from error

        assert process.stdout is not None  # noqa: S101
        assert process.stderr is not None  # noqa: S101
        return RobotProcessHandle(
            process=process,
            command_line=command_line,
            started_at=time.monotonic(),
            stdout_drain=_StreamDrain(process.stdout, name=f"robot-{process.pid}-stdout"),
            stderr_drain=_StreamDrain(process.stderr, name=f"robot-{process.pid}-stderr"),
        )

    def wait(
        self,
        handle: RobotProcessHandle,
        timeout_seconds: float,
        *,
        cancel_requested: Callable[[], bool] | None = None,
    ) -> ProcessResult:
        """Block until exit or timeout; raise ``SupervisionCancelled`` on cancellation."""

        deadline = handle.started_at + timeout_seconds
        try:
            while True:
                remaining = deadline - time.monotonic()
                try:
                    exit_code = handle.process.wait(
                        timeout=max(0.0, min(self.poll_interval_seconds, remaining)),
                    )
                except subprocess.TimeoutExpired:
                    pass
                else:
                    return self._collect(handle, exit_code=exit_code, timed_out=False)

                if cancel_requested is not None and cancel_requested():
                    self._cancel(handle)
                    raise SupervisionCancelled(
                        f"Supervision of robot process {handle.pid} was cancelled",
                    )

                if time.monotonic() >= deadline:
                    logger.warning(
                        "Robot process %s timed out after %.1fs, killing process",
                        handle.pid,
                        timeout_seconds,
                    )
                    exit_code = _terminate_process(
                        handle.process,
                        grace_seconds=self.kill_grace_seconds,
                    )
                    return self._collect(handle, exit_code=exit_code, timed_out=True)
        except KeyboardInterrupt:
            self._cancel(handle)
            raise

    def run(
        self,
        invocation: ProcessInvocation,
        timeout_seconds: float,
        *,
        cancel_requested: Callable[[], bool] | None = None,
    ) -> ProcessResult:
        handle = self.launch(invocation)
        return self.wait(handle, timeout_seconds, cancel_requested=cancel_requested)

    def _cancel(self, handle: RobotProcessHandle) -> None:
        if handle.finished:
            return
        logger.info("Cancelling robot process %s", handle.pid)
        _terminate_process(handle.process, grace_seconds=self.kill_grace_seconds)
        self._collect(handle, exit_code=handle.process.returncode, timed_out=False)

    def _collect(
        self,
        handle: RobotProcessHandle,
        *,
        exit_code: int | None,
        timed_out: bool,
    ) -> ProcessResult:
        handle.finished = True
        stdout = handle.stdout_drain.collect(self.drain_timeout_seconds)
        stderr = handle.stderr_drain.collect(self.drain_timeout_seconds)
        return ProcessResult(
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            timed_out=timed_out,
            command_line=handle.command_line,
            duration_seconds=time.monotonic() - handle.started_at,
        )


def render_command_line(argv: list[str], *, os_name: str | None = None) -> str:
    """Render argv the way the host shell would display it."""

    if (os_name or os.name) == "nt":
        return subprocess.list2cmdline(argv)
    return shlex.join(argv)


def _terminate_process(process: subprocess.Popen[bytes], *, grace_seconds: float) -> int | None:
    try:
        process.terminate()
    except OSError:
        return process.poll()
    try:
        return process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return process.poll()
        return process.wait(timeout=grace_seconds or None)
