"""Ready-made sinks for ToSink.

A sink is an async callable taking the chunk stream of one pipe and
returning an aggregate. Each factory here returns a fresh sink, so one
ToSink redirection can be reused across runs.

Example:
    spec = ProcessSpec("git", ["status"]).redirect_output(ToSink(collect_text()))
    result = await run(spec)
    print(result.output)
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import TypeVar

import anyio

from .redirection import Sink

__all__ = [
    "collect_bytes",
    "collect_text",
    "collect_lines",
    "fold",
    "for_each",
    "tee_to_file",
]

T = TypeVar("T")


def collect_bytes() -> Sink:
    """Aggregate all chunks into one ``bytes`` value."""

    async def sink(chunks: AsyncIterator[bytes]) -> bytes:
        buffer = bytearray()
        async for chunk in chunks:
            buffer += chunk
        return bytes(buffer)

    return sink


def collect_text(encoding: str = "utf-8", errors: str = "replace") -> Sink:
    """Aggregate all chunks and decode them as text."""
    collect = collect_bytes()

    async def sink(chunks: AsyncIterator[bytes]) -> str:
        return (await collect(chunks)).decode(encoding, errors)

    return sink


def collect_lines(encoding: str = "utf-8", errors: str = "replace") -> Sink:
    """Decode the stream and split it into lines (without line endings)."""
    collect = collect_text(encoding, errors)

    async def sink(chunks: AsyncIterator[bytes]) -> list[str]:
        return (await collect(chunks)).splitlines()

    return sink


def fold(initial: T, step: Callable[[T, bytes], T]) -> Sink:
    """Left-fold the chunks: ``acc = step(acc, chunk)`` starting from ``initial``."""

    async def sink(chunks: AsyncIterator[bytes]) -> T:
        acc = initial
        async for chunk in chunks:
            acc = step(acc, chunk)
        return acc

    return sink


def for_each(callback: Callable[[bytes], None]) -> Sink:
    """Call ``callback`` for every chunk; the aggregate is ``None``."""

    async def sink(chunks: AsyncIterator[bytes]) -> None:
        async for chunk in chunks:
            callback(chunk)

    return sink


def tee_to_file(path: Path | str, append: bool = False) -> Sink:
    """Write chunks to ``path`` and also return them as ``bytes``.

    File I/O runs in a worker thread (anyio.open_file), off the event loop.
    """

    async def sink(chunks: AsyncIterator[bytes]) -> bytes:
        buffer = bytearray()
        async with await anyio.open_file(path, "ab" if append else "wb") as f:
            async for chunk in chunks:
                await f.write(chunk)
                buffer += chunk
        return bytes(buffer)

    return sink
