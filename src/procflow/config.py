"""procflow environment configuration.

Environment variables:
    PROCFLOW_TERM_TIMEOUT: seconds to wait after SIGTERM before SIGKILL
        when a scope is cleaned up
        - default 2.0, clamped to 0.1-60

    PROCFLOW_KILL_TIMEOUT: seconds to wait after SIGKILL before giving up;
        also the grace period before pipes a stopped child left to its
        descendants are closed
        - default 1.0, clamped to 0.1-60

    PROCFLOW_CHUNK_SIZE: bytes read from a pipe per pump iteration
        - default 65536, clamped to 1-16777216

    PROCFLOW_NEW_SESSION: run children in their own session / process group
        - true/1/yes/on = yes (signals reach the whole group)
        - false/0/no/off = no (default)

    PROCFLOW_LOG_DEBUG: debug logging
        - true/1/yes/on = on (debug log written to a temp file)
        - false/0/no/off = off (default, warnings to stderr)
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config"]

DEFAULT_TERM_TIMEOUT = 2.0
DEFAULT_KILL_TIMEOUT = 1.0
DEFAULT_CHUNK_SIZE = 64 * 1024
MAX_CHUNK_SIZE = 16 * 1024 * 1024


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_timeout(value: str | None, default: float) -> float:
    """Parse a timeout in seconds, clamped to 0.1-60."""
    if not value:
        return default
    try:
        timeout = float(value)
        return max(0.1, min(timeout, 60.0))
    except ValueError:
        return default


def _parse_chunk_size(value: str | None) -> int:
    """Parse the pump chunk size, clamped to 1-16 MiB."""
    if not value:
        return DEFAULT_CHUNK_SIZE
    try:
        size = int(value)
        return max(1, min(size, MAX_CHUNK_SIZE))
    except ValueError:
        return DEFAULT_CHUNK_SIZE


@dataclass
class Config:
    """procflow configuration.

    Attributes:
        term_timeout: Grace period after SIGTERM during scope cleanup
        kill_timeout: Wait after SIGKILL during scope cleanup
        chunk_size: Pipe read size for stream pumps
        new_session: Start children in a new session/process group
        log_debug: Debug logging to a temp file
        log_file: Debug log path (set when log_debug=True)
    """

    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    chunk_size: int = DEFAULT_CHUNK_SIZE
    new_session: bool = False
    log_debug: bool = False
    log_file: str | None = None

    def __repr__(self) -> str:
        return (
            f"Config(term_timeout={self.term_timeout}, "
            f"kill_timeout={self.kill_timeout}, "
            f"chunk_size={self.chunk_size}, "
            f"new_session={self.new_session}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """Build a timestamped debug log path under the system temp dir."""
    log_dir = Path(tempfile.gettempdir()) / "procflow"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"procflow_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """Load configuration from environment variables."""
    log_debug = _parse_bool(os.environ.get("PROCFLOW_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        term_timeout=_parse_timeout(
            os.environ.get("PROCFLOW_TERM_TIMEOUT"), DEFAULT_TERM_TIMEOUT
        ),
        kill_timeout=_parse_timeout(
            os.environ.get("PROCFLOW_KILL_TIMEOUT"), DEFAULT_KILL_TIMEOUT
        ),
        chunk_size=_parse_chunk_size(os.environ.get("PROCFLOW_CHUNK_SIZE")),
        new_session=_parse_bool(os.environ.get("PROCFLOW_NEW_SESSION"), default=False),
        log_debug=log_debug,
        log_file=log_file,
    )


# Lazily loaded global instance
_config: Config | None = None


def get_config() -> Config:
    """Return the global configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Reload configuration from the environment (for tests)."""
    global _config
    _config = load_config()
    return _config
