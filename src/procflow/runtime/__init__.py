"""Runtime module for process execution and stream redirection.

This module provides isolated process execution with concurrent stream
pumps, a lifecycle state machine and reliable termination.
"""

from __future__ import annotations

from .process_runner import ProcessRunner, run, spawn
from .redirection import (
    Discard,
    FromFile,
    FromSource,
    Inherit,
    InputRedirection,
    OutputRedirection,
    ToFile,
    ToSink,
)
from .running_process import ProcessResult, ProcessState, RunningProcess
from .spec import ProcessSpec

__all__ = [
    "Discard",
    "FromFile",
    "FromSource",
    "Inherit",
    "InputRedirection",
    "OutputRedirection",
    "ProcessResult",
    "ProcessRunner",
    "ProcessSpec",
    "ProcessState",
    "RunningProcess",
    "ToFile",
    "ToSink",
    "run",
    "spawn",
]
