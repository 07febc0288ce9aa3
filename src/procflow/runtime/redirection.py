"""Stream redirections and the pumps that serve them.

A redirection describes where the bytes of one child stream come from or go
to. Resolving it (right before spawning) produces:
- the handle passed to asyncio.create_subprocess_exec
  (None = inherit, an open file, PIPE or DEVNULL)
- the files the parent opened and must close once the child holds them
- an optional pump coroutine factory, started right after spawning

Only FromSource and ToSink need a pump; for the other variants either the
parent's own stream is reused or the OS copies the bytes itself.

Pump rules:
- a closed/broken pipe is end-of-stream, never an error
- a drainer always reads its pipe to EOF, even when its sink stops early or
  fails, so the child never blocks on a full pipe buffer
"""

from __future__ import annotations

import asyncio
import functools
import logging
import subprocess
from abc import ABC, abstractmethod
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Union

from ..errors import RedirectionSetupError

__all__ = [
    "ByteSource",
    "Sink",
    "InputRedirection",
    "OutputRedirection",
    "ResolvedRedirection",
    "Inherit",
    "FromFile",
    "FromSource",
    "ToFile",
    "Discard",
    "ToSink",
]

logger = logging.getLogger(__name__)

# Source of stdin bytes: one buffer, or a finite (async) iterable of chunks
ByteSource = Union[bytes, Iterable[bytes], AsyncIterable[bytes]]

# Sink of output bytes: consumes the chunk stream, returns an aggregate
Sink = Callable[[AsyncIterator[bytes]], Awaitable[Any]]

# Errors that mean "the other end of the pipe is gone"
PIPE_CLOSED_ERRORS = (BrokenPipeError, ConnectionResetError)


@dataclass
class ResolvedRedirection:
    """A redirection materialized for one spawn.

    Attributes:
        handle: Value for the stdin/stdout/stderr argument of the spawn call
        opened: Files opened by the parent, closed once the child has them
        pump: Pump factory taking the child's pipe end, None if not needed
    """

    handle: Any = None
    opened: list[IO[bytes]] = field(default_factory=list)
    pump: Callable[[Any], Awaitable[Any]] | None = None

    def close(self) -> None:
        """Release the parent's copies of opened files."""
        for handle in self.opened:
            handle.close()
        self.opened.clear()


class InputRedirection(ABC):
    """Where the child's stdin comes from."""

    @abstractmethod
    def resolve(self, chunk_size: int) -> ResolvedRedirection:
        """Materialize the redirection.

        Raises:
            RedirectionSetupError: If a file cannot be opened
        """


class OutputRedirection(ABC):
    """Where the child's stdout or stderr goes."""

    @abstractmethod
    def resolve(self, stream: str, chunk_size: int) -> ResolvedRedirection:
        """Materialize the redirection for ``stream`` ("stdout"/"stderr").

        Raises:
            RedirectionSetupError: If a file cannot be opened
        """


def _open(path: Path, mode: str, stream: str) -> IO[bytes]:
    try:
        return open(path, mode)
    except OSError as e:
        raise RedirectionSetupError(stream, path, e.strerror or str(e)) from e


# =============================================================================
# Variants
# =============================================================================


@dataclass(frozen=True)
class Inherit(InputRedirection, OutputRedirection):
    """Share the caller's own stream with the child."""

    def resolve(self, *args: Any) -> ResolvedRedirection:
        return ResolvedRedirection()


@dataclass(frozen=True)
class FromFile(InputRedirection):
    """Read stdin from a file."""

    path: Path

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", Path(self.path))

    def resolve(self, chunk_size: int) -> ResolvedRedirection:
        handle = _open(self.path, "rb", "stdin")
        return ResolvedRedirection(handle=handle, opened=[handle])


@dataclass(frozen=True)
class FromSource(InputRedirection):
    """Feed stdin from bytes or a (sync or async) iterable of byte chunks."""

    source: ByteSource

    def __post_init__(self) -> None:
        if isinstance(self.source, str):
            raise TypeError("FromSource needs bytes, not str; encode it first")

    def resolve(self, chunk_size: int) -> ResolvedRedirection:
        return ResolvedRedirection(
            handle=subprocess.PIPE,
            pump=functools.partial(feed_source, self.source),
        )


@dataclass(frozen=True)
class ToFile(OutputRedirection):
    """Write the stream to a file, truncating unless ``append`` is set."""

    path: Path
    append: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", Path(self.path))

    def resolve(self, stream: str, chunk_size: int) -> ResolvedRedirection:
        handle = _open(self.path, "ab" if self.append else "wb", stream)
        return ResolvedRedirection(handle=handle, opened=[handle])


@dataclass(frozen=True)
class Discard(OutputRedirection):
    """Send the stream to the null device."""

    def resolve(self, stream: str, chunk_size: int) -> ResolvedRedirection:
        return ResolvedRedirection(handle=subprocess.DEVNULL)


@dataclass(frozen=True)
class ToSink(OutputRedirection):
    """Pipe the stream into a sink; the sink's return value becomes the result.

    Example:
        ToSink(collect_bytes())
    """

    sink: Sink

    def __post_init__(self) -> None:
        if not callable(self.sink):
            raise TypeError(f"sink must be callable, got {type(self.sink).__name__}")

    def resolve(self, stream: str, chunk_size: int) -> ResolvedRedirection:
        return ResolvedRedirection(
            handle=subprocess.PIPE,
            pump=functools.partial(drain_to_sink, self.sink, chunk_size=chunk_size),
        )


# =============================================================================
# Pumps
# =============================================================================


async def _iter_source(source: ByteSource) -> AsyncIterator[bytes]:
    if isinstance(source, (bytes, bytearray, memoryview)):
        yield bytes(source)
    elif isinstance(source, AsyncIterable):
        async for chunk in source:
            yield chunk
    else:
        for chunk in source:
            yield chunk


async def feed_source(source: ByteSource, writer: asyncio.StreamWriter) -> None:
    """Copy ``source`` into the child's stdin, then close it.

    Stops quietly when the child closes its end (e.g. exits or is killed
    before reading everything). Errors raised by the source propagate.
    """
    written = 0
    try:
        async for chunk in _iter_source(source):
            if writer.is_closing():
                logger.debug(f"stdin closed after {written} bytes, stopping feeder")
                break
            if not chunk:
                continue
            writer.write(chunk)
            await writer.drain()
            written += len(chunk)
    except PIPE_CLOSED_ERRORS:
        logger.debug(f"stdin pipe broken after {written} bytes, stopping feeder")
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except PIPE_CLOSED_ERRORS:
            pass


async def _read_chunks(reader: asyncio.StreamReader, chunk_size: int) -> AsyncIterator[bytes]:
    while True:
        try:
            chunk = await reader.read(chunk_size)
        except PIPE_CLOSED_ERRORS:
            return
        if not chunk:
            return
        yield chunk


async def _discard_remaining(reader: asyncio.StreamReader, chunk_size: int) -> int:
    discarded = 0
    async for chunk in _read_chunks(reader, chunk_size):
        discarded += len(chunk)
    return discarded


async def drain_to_sink(
    sink: Sink,
    reader: asyncio.StreamReader,
    *,
    chunk_size: int,
) -> Any:
    """Feed every chunk of ``reader`` to ``sink`` and return its aggregate.

    If the sink raises, the rest of the pipe is still drained before the
    error is re-raised.
    """
    chunks = _read_chunks(reader, chunk_size)
    try:
        value = await sink(chunks)
    except Exception:
        discarded = await _discard_remaining(reader, chunk_size)
        logger.debug(f"Sink failed, discarded {discarded} remaining bytes")
        raise
    finally:
        await chunks.aclose()

    discarded = await _discard_remaining(reader, chunk_size)
    if discarded:
        logger.debug(f"Sink returned early, discarded {discarded} remaining bytes")
    return value
