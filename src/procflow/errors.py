"""procflow exception classes.

Each failure names the stage it came from:
- RedirectionSetupError: a stream target (file or pipe) could not be opened
  (nothing spawned)
- ProcessStartError: the OS refused to create the process (no pumps started)
- PumpTaskError: a feeder/drainer failed while the process ran
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

__all__ = [
    "ProcflowError",
    "ConfigurationError",
    "RedirectionSetupError",
    "ProcessStartError",
    "PumpTaskError",
]


class ProcflowError(Exception):
    """procflow base exception."""
    pass


class ConfigurationError(ProcflowError):
    """Invalid process specification (e.g. a stream redirected twice)."""
    pass


class RedirectionSetupError(ProcflowError):
    """A redirection target could not be opened before spawning.

    Attributes:
        stream: "stdin", "stdout" or "stderr"
        path: The file that failed to open, None for a pipe
    """

    def __init__(self, stream: str, path: Path | None, reason: str = "") -> None:
        self.stream = stream
        self.path = path
        target = "a pipe" if path is None else path
        message = f"cannot open {target} for {stream}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ProcessStartError(ProcflowError):
    """The OS failed to create the process.

    Attributes:
        executable: The executable that was invoked
    """

    def __init__(self, executable: str, reason: str = "") -> None:
        self.executable = executable
        message = f"failed to start {executable!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class PumpTaskError(ProcflowError):
    """A stream pump failed; raised in place of the ProcessResult.

    The values produced by the pumps that did succeed are kept, so output
    captured before the failure is not lost.

    Attributes:
        stream: The failing pump ("stdin", "stdout" or "stderr")
        exit_code: Exit code of the process, already reaped
        output: stdout value, None if the stdout pump is the one that failed
        error: stderr value, None if the stderr pump is the one that failed
    """

    def __init__(
        self,
        stream: str,
        exit_code: int,
        output: Any = None,
        error: Any = None,
    ) -> None:
        self.stream = stream
        self.exit_code = exit_code
        self.output = output
        self.error = error
        super().__init__(f"{stream} pump failed (exit code {exit_code})")
