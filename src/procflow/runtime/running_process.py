"""Live handle to a spawned process and its stream pumps.

Lifecycle:
    RUNNING -> EXITED | TERMINATED | KILLED -> RESULT_READY

Key design points:
- Exit is observed only through the event loop's child watcher
  (process.returncode / process.wait()), the single authoritative source
- Pumps are joined (awaited, never cancelled) after the process exits, so a
  ProcessResult is never built while a pump could still add output
- One shared completion task serves every waiter: repeated or concurrent
  wait_for_exit/kill/terminate calls see the identical result object
- Signals are only delivered while the process has not been reaped
- After a stop signal, pipes still held open by descendants of the child
  are released once the process has exited and release_timeout has
  passed; the pumps then finish with the partial output
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from ..errors import PumpTaskError
from .spec import STDERR, STDIN, STDOUT, ProcessSpec

__all__ = [
    "IS_WINDOWS",
    "ProcessResult",
    "ProcessState",
    "RunningProcess",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

O = TypeVar("O")
E = TypeVar("E")


class ProcessState(str, Enum):
    """Lifecycle state of a RunningProcess."""

    RUNNING = "running"
    EXITED = "exited"
    TERMINATED = "terminated"
    KILLED = "killed"
    RESULT_READY = "result_ready"


@dataclass(frozen=True)
class ProcessResult(Generic[O, E]):
    """Outcome of a finished process.

    Attributes:
        exit_code: Exit code; negative (-signal) on POSIX if killed by a signal
        output: Value produced by the stdout redirection (None unless ToSink)
        error: Value produced by the stderr redirection (None unless ToSink)
    """

    exit_code: int
    output: O
    error: E

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class RunningProcess(Generic[O, E]):
    """A spawned process plus its three pump tasks.

    Created by ProcessRunner.spawn(). Inherited and file-backed streams have
    an already-completed future in place of a pump task.

    Example:
        running = await runner.spawn(spec)
        if running.is_alive():
            result = await running.terminate()
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        spec: ProcessSpec,
        input_task: asyncio.Future[None],
        output_task: asyncio.Future[O],
        error_task: asyncio.Future[E],
        *,
        new_session: bool = False,
        release_timeout: float | None = None,
    ) -> None:
        self._process = process
        self._spec = spec
        self.input_task = input_task
        self.output_task = output_task
        self.error_task = error_task
        self._new_session = new_session
        self._release_timeout = release_timeout
        self._release_handle: asyncio.TimerHandle | None = None

        # First stop signal delivered (TERMINATED or KILLED), if any
        self._stopped_by: ProcessState | None = None
        self._completion: asyncio.Task[ProcessResult[O, E]] | None = None

    def __repr__(self) -> str:
        return (
            f"RunningProcess(pid={self.pid}, executable={self._spec.executable!r}, "
            f"state={self.state.value})"
        )

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def spec(self) -> ProcessSpec:
        return self._spec

    @property
    def state(self) -> ProcessState:
        if self._completion is not None and self._completion.done():
            return ProcessState.RESULT_READY
        if self._stopped_by is not None:
            return self._stopped_by
        if self._process.returncode is None:
            return ProcessState.RUNNING
        return ProcessState.EXITED

    @property
    def outcome(self) -> ProcessState:
        """How the process ended: EXITED, TERMINATED or KILLED (RUNNING if alive)."""
        if self._stopped_by is not None:
            return self._stopped_by
        if self._process.returncode is None:
            return ProcessState.RUNNING
        return ProcessState.EXITED

    def is_alive(self) -> bool:
        """Non-blocking liveness check."""
        return self._process.returncode is None

    # =========================================================================
    # Waiting
    # =========================================================================

    async def wait_for_exit(self) -> ProcessResult[O, E]:
        """Wait for the process to exit and all pumps to finish.

        Cancelling the caller does not cancel the completion; a later call
        picks it up again.

        Returns:
            The cached ProcessResult (same object on every call)

        Raises:
            PumpTaskError: If any pump failed, even when the exit code is 0
        """
        if self._completion is None:
            self._completion = asyncio.ensure_future(self._complete())
        return await asyncio.shield(self._completion)

    async def _complete(self) -> ProcessResult[O, E]:
        try:
            returncode = await self._process.wait()
            logger.debug(
                f"Subprocess exited pid={self.pid} returncode={returncode}, joining pumps"
            )

            pending = [task for task in self._pumps().values() if not task.done()]
            if pending:
                await asyncio.wait(pending)
        finally:
            if self._release_handle is not None:
                self._release_handle.cancel()
                self._release_handle = None

        return self._assemble(returncode)

    def _pumps(self) -> dict[str, asyncio.Future[Any]]:
        return {
            STDIN: self.input_task,
            STDOUT: self.output_task,
            STDERR: self.error_task,
        }

    def _assemble(self, exit_code: int) -> ProcessResult[O, E]:
        values: dict[str, Any] = {}
        failed: tuple[str, BaseException | None] | None = None

        for stream, task in self._pumps().items():
            if task.cancelled():
                logger.warning(f"{stream} pump was cancelled pid={self.pid}")
                failed = failed or (stream, None)
                values[stream] = None
                continue
            exc = task.exception()
            if exc is not None:
                logger.debug(f"{stream} pump failed pid={self.pid}: {exc!r}")
                failed = failed or (stream, exc)
                values[stream] = None
            else:
                values[stream] = task.result()

        if failed is not None:
            stream, cause = failed
            raise PumpTaskError(
                stream,
                exit_code,
                output=values[STDOUT],
                error=values[STDERR],
            ) from cause

        return ProcessResult(exit_code=exit_code, output=values[STDOUT], error=values[STDERR])

    # =========================================================================
    # Stopping
    # =========================================================================

    async def terminate(self, timeout: float | None = None) -> ProcessResult[O, E]:
        """Send the graceful stop signal, then wait like wait_for_exit().

        Args:
            timeout: If set, kill the process when it is still alive after
                this many seconds

        Returns:
            The cached ProcessResult
        """
        self._deliver(ProcessState.TERMINATED)

        if timeout is not None and self.is_alive():
            try:
                await asyncio.wait_for(self._process.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.debug(f"Subprocess outlived SIGTERM, killing pid={self.pid}")
                return await self.kill()

        return await self.wait_for_exit()

    async def kill(self) -> ProcessResult[O, E]:
        """Send the forceful stop signal, then wait like wait_for_exit().

        Output produced before the kill is kept; the broken pipes are treated
        as end-of-stream.

        Returns:
            The cached ProcessResult
        """
        self._deliver(ProcessState.KILLED)
        return await self.wait_for_exit()

    def _deliver(self, kind: ProcessState) -> bool:
        """Send the stop signal for ``kind`` if the process is not reaped yet."""
        if self._process.returncode is not None:
            return False

        graceful = kind is ProcessState.TERMINATED
        try:
            if IS_WINDOWS:
                if graceful:
                    self._windows_terminate()
                else:
                    self._windows_kill()
            else:
                self._posix_signal(signal.SIGTERM if graceful else signal.SIGKILL)
        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={self.pid}")
            return False

        self._stopped_by = kind
        self._arm_release()
        return True

    def _posix_signal(self, sig: signal.Signals) -> None:
        """Signal the process, or its whole group when it leads a new session."""
        if self._new_session:
            try:
                pgid = os.getpgid(self.pid)
                os.killpg(pgid, sig)
                logger.debug(f"Sent {sig.name} to process group pgid={pgid}")
                return
            except ProcessLookupError:
                raise
            except OSError as e:
                logger.debug(f"killpg failed, falling back to the process: {e}")

        # os.kill instead of Popen.send_signal: the latter polls, and may reap
        # the child behind the event loop's child watcher
        os.kill(self.pid, sig)
        logger.debug(f"Sent {sig.name} to pid={self.pid}")

    def _windows_terminate(self) -> None:
        """CTRL_BREAK_EVENT for a new process group, terminate() otherwise."""
        if self._new_session:
            try:
                os.kill(self.pid, signal.CTRL_BREAK_EVENT)
                logger.debug(f"Sent CTRL_BREAK_EVENT to pid={self.pid}")
                return
            except OSError as e:
                logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
        self._process.terminate()

    def _windows_kill(self) -> None:
        self._process.kill()
        logger.debug(f"Called kill() on pid={self.pid}")

    # =========================================================================
    # Pipe release
    # =========================================================================

    def _arm_release(self) -> None:
        """(Re)start the countdown after which held pipes are released."""
        if self._release_timeout is None:
            return
        if self._release_handle is not None:
            self._release_handle.cancel()
        self._release_handle = asyncio.get_running_loop().call_later(
            self._release_timeout, self._release_pipes
        )

    def _release_pipes(self) -> None:
        """Close the parent's pipe ends once the stopped process has exited.

        A descendant of the child may inherit stdout/stderr and keep them
        open long after the child died, so EOF would never arrive. Closing
        our ends wakes process.wait() and feeds EOF to the drainers, which
        then return the output read so far.
        """
        self._release_handle = None
        if self._completion is not None and self._completion.done():
            return
        if self._process.returncode is None:
            # Still alive (e.g. SIGTERM ignored): check again later
            self._arm_release()
            return

        # asyncio.subprocess.Process exposes its transport only privately
        transport = getattr(self._process, "_transport", None)
        if transport is None:
            return
        for fd, stream in ((0, STDIN), (1, STDOUT), (2, STDERR)):
            pipe = transport.get_pipe_transport(fd)
            if pipe is None or pipe.is_closing():
                continue
            logger.debug(
                f"Releasing {stream} pipe still held open after exit pid={self.pid}"
            )
            if fd == 0:
                pipe.abort()
            else:
                pipe.close()
