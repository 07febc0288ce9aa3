"""Run report model.

Machine-readable summary of one finished run, printed by ``procflow --json``.
Captured output that is bytes is decoded (utf-8, invalid bytes replaced)
so the report always serializes.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .runtime.running_process import ProcessResult, ProcessState
from .runtime.spec import ProcessSpec

__all__ = ["RunReport"]

Outcome = Literal["exited", "terminated", "killed"]


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


class RunReport(BaseModel):
    """Summary of a finished process.

    Attributes:
        executable: Program that ran
        arguments: Its arguments
        exit_code: Exit code (negative: killed by that signal on POSIX)
        outcome: How it ended
        stdout: Captured stdout, None when not captured
        stderr: Captured stderr, None when not captured
        duration_s: Wall time from spawn to result, in seconds
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    executable: str
    arguments: list[str] = Field(default_factory=list)
    exit_code: int
    outcome: Outcome = "exited"
    stdout: str | None = None
    stderr: str | None = None
    duration_s: float = 0.0

    @classmethod
    def from_result(
        cls,
        spec: ProcessSpec,
        result: ProcessResult[Any, Any],
        *,
        outcome: ProcessState = ProcessState.EXITED,
        duration_s: float = 0.0,
    ) -> RunReport:
        """Build a report from a spec and its result."""
        if outcome not in (ProcessState.EXITED, ProcessState.TERMINATED, ProcessState.KILLED):
            outcome = ProcessState.EXITED
        return cls(
            executable=spec.executable,
            arguments=list(spec.arguments),
            exit_code=result.exit_code,
            outcome=outcome.value,
            stdout=_as_text(result.output),
            stderr=_as_text(result.error),
            duration_s=round(duration_s, 6),
        )
