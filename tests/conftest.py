"""Pytest configuration and fixtures."""

from __future__ import annotations

import sys
from collections.abc import Callable
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent

# Add src to the Python path (development checkout)
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from procflow.config import reload_config  # noqa: E402
from procflow.runtime import ProcessRunner, ProcessSpec  # noqa: E402

FIXTURES_DIR = PROJECT_ROOT / "tests" / "fixtures"
FAKE_PROC_PATH = FIXTURES_DIR / "fake_proc.py"

# Larger than any default OS pipe buffer (64 KiB on Linux)
LARGE_SIZE = 1024 * 1024 + 7

# Printed by `fake_proc.py env NAME` when NAME is not set
UNSET = "<unset>"


def pattern(count: int) -> bytes:
    """Same byte pattern fake_proc.py emits."""
    return bytes(i % 251 for i in range(count))


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch: pytest.MonkeyPatch):
    """Isolate tests from PROCFLOW_* variables of the calling shell."""
    for name in (
        "PROCFLOW_TERM_TIMEOUT",
        "PROCFLOW_KILL_TIMEOUT",
        "PROCFLOW_CHUNK_SIZE",
        "PROCFLOW_NEW_SESSION",
        "PROCFLOW_LOG_DEBUG",
    ):
        monkeypatch.delenv(name, raising=False)
    reload_config()
    yield
    reload_config()


@pytest.fixture
def runner() -> ProcessRunner:
    """ProcessRunner with short timeouts for testing."""
    return ProcessRunner(term_timeout=0.5, kill_timeout=0.5)


@pytest.fixture
def fake() -> Callable[..., ProcessSpec]:
    """Build a ProcessSpec running tests/fixtures/fake_proc.py."""

    def make(*args: str) -> ProcessSpec:
        return ProcessSpec(sys.executable, [str(FAKE_PROC_PATH), *args])

    return make
