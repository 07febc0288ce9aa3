"""procflow - asyncio process execution with redirected, fully drained streams.

Environment variables:
    PROCFLOW_TERM_TIMEOUT: grace period after SIGTERM (default 2.0)
    PROCFLOW_KILL_TIMEOUT: wait after SIGKILL (default 1.0)
    PROCFLOW_CHUNK_SIZE: pipe read size (default 65536)
    PROCFLOW_NEW_SESSION: new session/process group per child (default false)

Usage:
    procflow --capture -- git status
"""

__version__ = "0.1.0"

from .errors import (
    ConfigurationError,
    ProcessStartError,
    ProcflowError,
    PumpTaskError,
    RedirectionSetupError,
)
from .runtime import (
    Discard,
    FromFile,
    FromSource,
    Inherit,
    ProcessResult,
    ProcessRunner,
    ProcessSpec,
    ProcessState,
    RunningProcess,
    ToFile,
    ToSink,
    run,
    spawn,
)
from .runtime import sinks

__all__ = [
    "__version__",
    "ConfigurationError",
    "Discard",
    "FromFile",
    "FromSource",
    "Inherit",
    "ProcessResult",
    "ProcessRunner",
    "ProcessSpec",
    "ProcessStartError",
    "ProcessState",
    "ProcflowError",
    "PumpTaskError",
    "RedirectionSetupError",
    "RunningProcess",
    "ToFile",
    "ToSink",
    "run",
    "sinks",
    "spawn",
]
