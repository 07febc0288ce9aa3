"""Process runner: spawning, redirection wiring and scoped execution.

procflow runtime module v0.1.0

This module provides:
- spawn(): start a process from a ProcessSpec and return a RunningProcess
- start_scoped(): async context manager that never leaks the process
- run(): spawn, wait for the result, clean up

Key design points:
- Redirections are resolved before spawning; a file that cannot be opened
  fails fast with RedirectionSetupError and nothing is started. Running out
  of descriptors while the pipes are created is reported the same way
- Pump tasks start right after the process, concurrently with it
- Leaving a scope while the process is alive terminates it
  (SIGTERM -> timeout -> SIGKILL), shielded from cancellation
"""

from __future__ import annotations

import asyncio
import errno
import logging
import subprocess
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import anyio

from ..config import get_config
from ..errors import ProcessStartError, ProcflowError, RedirectionSetupError
from .redirection import ResolvedRedirection
from .running_process import IS_WINDOWS, ProcessResult, ProcessState, RunningProcess
from .spec import STDERR, STDIN, STDOUT, ProcessSpec

__all__ = [
    "ProcessRunner",
    "spawn",
    "run",
]

logger = logging.getLogger(__name__)

# Descriptor exhaustion while the spawn call creates the stream pipes
PIPE_SETUP_ERRNOS = frozenset({errno.EMFILE, errno.ENFILE})


def _first_piped_stream(*resolved: ResolvedRedirection) -> str | None:
    for stream, item in zip((STDIN, STDOUT, STDERR), resolved):
        if item.handle == subprocess.PIPE:
            return stream
    return None


@dataclass
class ProcessRunner:
    """Starts processes described by ProcessSpec.

    Defaults come from procflow.config (PROCFLOW_* environment variables).

    Example:
        runner = ProcessRunner()
        spec = (
            ProcessSpec("my-cli", ["--json"])
            .redirect_input(FromSource(b"prompt text"))
            .redirect_output(ToSink(collect_text()))
        )

        result = await runner.run(spec)
        print(result.exit_code, result.output)

    Attributes:
        term_timeout: Grace period after SIGTERM when a scope is cleaned up
        kill_timeout: Wait after SIGKILL when a scope is cleaned up; also how
            long a stopped process may leave its pipes held by descendants
        chunk_size: Pipe read size of the stream pumps
        new_session: Start children in a new session / process group
    """

    term_timeout: float = field(default_factory=lambda: get_config().term_timeout)
    kill_timeout: float = field(default_factory=lambda: get_config().kill_timeout)
    chunk_size: int = field(default_factory=lambda: get_config().chunk_size)
    new_session: bool = field(default_factory=lambda: get_config().new_session)

    # =========================================================================
    # Spawning
    # =========================================================================

    async def spawn(self, spec: ProcessSpec) -> RunningProcess[Any, Any]:
        """Start the process and its pumps; do not wait for it.

        Args:
            spec: Process specification

        Returns:
            The RunningProcess handle

        Raises:
            RedirectionSetupError: If a redirection file cannot be opened, or
                the pipes cannot be created (descriptor limit reached)
            ProcessStartError: If the OS cannot create the process
        """
        stdin, stdout, stderr = self._resolve(spec)
        kwargs = self._build_subprocess_kwargs(spec)

        try:
            process = await asyncio.create_subprocess_exec(
                spec.executable,
                *spec.arguments,
                stdin=stdin.handle,
                stdout=stdout.handle,
                stderr=stderr.handle,
                **kwargs,
            )
        except (OSError, ValueError) as e:
            reason = getattr(e, "strerror", None) or str(e)
            piped = _first_piped_stream(stdin, stdout, stderr)
            if piped is not None and getattr(e, "errno", None) in PIPE_SETUP_ERRNOS:
                logger.debug(f"Failed to create pipes for {spec.executable!r}: {reason}")
                raise RedirectionSetupError(piped, None, reason) from e
            logger.debug(f"Failed to start {spec.executable!r}: {reason}")
            raise ProcessStartError(spec.executable, reason) from e
        finally:
            # The child holds its own copies of opened files
            for resolved in (stdin, stdout, stderr):
                resolved.close()

        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"argv={spec.executable} cwd={spec.working_directory}"
        )

        return RunningProcess(
            process,
            spec,
            input_task=self._start_pump(stdin, process.stdin, STDIN, process.pid),
            output_task=self._start_pump(stdout, process.stdout, STDOUT, process.pid),
            error_task=self._start_pump(stderr, process.stderr, STDERR, process.pid),
            new_session=self.new_session,
            release_timeout=self.kill_timeout,
        )

    def _resolve(
        self, spec: ProcessSpec
    ) -> tuple[ResolvedRedirection, ResolvedRedirection, ResolvedRedirection]:
        """Resolve all three redirections, closing partial work on failure."""
        resolved: list[ResolvedRedirection] = []
        try:
            resolved.append(spec.input_redirection.resolve(self.chunk_size))
            resolved.append(spec.output_redirection.resolve(STDOUT, self.chunk_size))
            resolved.append(spec.error_redirection.resolve(STDERR, self.chunk_size))
        except RedirectionSetupError:
            for item in resolved:
                item.close()
            raise
        return resolved[0], resolved[1], resolved[2]

    def _build_subprocess_kwargs(self, spec: ProcessSpec) -> dict[str, Any]:
        """Build cwd/env and platform-specific isolation kwargs.

        Args:
            spec: Process specification

        Returns:
            Dict of kwargs for asyncio.create_subprocess_exec
        """
        kwargs: dict[str, Any] = {
            "env": spec.merged_environment(),
        }
        if spec.working_directory is not None:
            kwargs["cwd"] = spec.working_directory

        if self.new_session:
            if IS_WINDOWS:
                kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
            else:
                kwargs["start_new_session"] = True

        return kwargs

    @staticmethod
    def _start_pump(
        resolved: ResolvedRedirection,
        pipe: Any,
        stream: str,
        pid: int,
    ) -> asyncio.Future[Any]:
        if resolved.pump is None or pipe is None:
            done: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
            done.set_result(None)
            return done
        return asyncio.create_task(resolved.pump(pipe), name=f"procflow-{stream}-{pid}")

    # =========================================================================
    # Scoped execution
    # =========================================================================

    @asynccontextmanager
    async def start_scoped(
        self, spec: ProcessSpec
    ) -> AsyncIterator[asyncio.Task[ProcessResult[Any, Any]]]:
        """Spawn the process and yield a task resolving to its result.

        Cancelling the yielded task terminates the process. Leaving the scope
        while the process is still alive (normally, by exception or by
        cancellation) terminates it too.

        Example:
            async with runner.start_scoped(spec) as task:
                result = await task
        """
        running = await self.spawn(spec)
        task = asyncio.create_task(
            self._wait_or_terminate(running),
            name=f"procflow-wait-{running.pid}",
        )
        try:
            yield task
        finally:
            await self._safe_cleanup(running, task)

    async def run(
        self,
        spec: ProcessSpec,
        *,
        timeout: float | None = None,
    ) -> ProcessResult[Any, Any]:
        """Run the process to completion.

        Args:
            spec: Process specification
            timeout: Optional limit in seconds; on expiry the process is
                terminated and TimeoutError is raised

        Returns:
            The ProcessResult

        Raises:
            RedirectionSetupError, ProcessStartError, PumpTaskError, TimeoutError
        """
        async with self.start_scoped(spec) as task:
            if timeout is None:
                return await task
            with anyio.fail_after(timeout):
                return await task

    async def _wait_or_terminate(self, running: RunningProcess[Any, Any]) -> ProcessResult[Any, Any]:
        try:
            return await running.wait_for_exit()
        except asyncio.CancelledError:
            if running.state is not ProcessState.RESULT_READY:
                await asyncio.shield(self._terminate_process(running))
            raise

    async def _safe_cleanup(
        self,
        running: RunningProcess[Any, Any],
        task: asyncio.Task[ProcessResult[Any, Any]],
    ) -> None:
        """Cleanup shielded from cancellation of the caller.

        Args:
            running: The process owned by the scope
            task: The task yielded by the scope
        """
        try:
            await asyncio.shield(self._do_cleanup(running, task))
        except asyncio.CancelledError:
            # If shield itself is cancelled, still finish cleanup
            await self._do_cleanup(running, task)
            raise

    async def _do_cleanup(
        self,
        running: RunningProcess[Any, Any],
        task: asyncio.Task[ProcessResult[Any, Any]],
    ) -> None:
        if not task.done():
            logger.debug(f"Scope left with subprocess alive pid={running.pid}")
            task.cancel()

        try:
            await task
        except asyncio.CancelledError:
            pass
        except ProcflowError as e:
            logger.debug(f"Scoped subprocess pid={running.pid} failed: {e}")

    async def _terminate_process(self, running: RunningProcess[Any, Any]) -> None:
        """Terminate gracefully, then forcefully if needed.

        Termination strategy:
        1. Send SIGTERM (or CTRL_BREAK_EVENT / terminate() on Windows)
        2. Wait up to term_timeout for graceful exit
        3. If still running, send SIGKILL (or kill() on Windows)
        4. Wait up to kill_timeout for forced exit, then up to kill_timeout
           more for pipes held open by descendants to be released

        Args:
            running: The process to terminate
        """
        pid = running.pid
        logger.debug(f"Terminating subprocess pid={pid}")

        try:
            result = await asyncio.wait_for(
                running.terminate(timeout=self.term_timeout),
                # SIGKILL wait plus the pipe release that may follow it
                timeout=self.term_timeout + 2 * self.kill_timeout,
            )
            logger.debug(
                f"Subprocess stopped pid={pid} state={running.outcome.value} "
                f"returncode={result.exit_code}"
            )
        except asyncio.TimeoutError:
            logger.warning(f"Subprocess did not exit after kill pid={pid}")
        except ProcflowError as e:
            logger.debug(f"Subprocess pid={pid} stopped with pump failure: {e}")


# Convenience functions for simple use cases
async def spawn(spec: ProcessSpec) -> RunningProcess[Any, Any]:
    """Spawn ``spec`` with a default ProcessRunner."""
    return await ProcessRunner().spawn(spec)


async def run(spec: ProcessSpec, *, timeout: float | None = None) -> ProcessResult[Any, Any]:
    """Run ``spec`` to completion with a default ProcessRunner."""
    return await ProcessRunner().run(spec, timeout=timeout)
