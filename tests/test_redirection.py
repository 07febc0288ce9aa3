"""Redirection model and pump tests.

Test coverage:
- resolve() of every variant (handles, opened files, pumps)
- Setup errors for unopenable files
- feed_source() with bytes / iterables / async iterables and broken pipes
- drain_to_sink() exhaustion, early-returning and failing sinks
"""

from __future__ import annotations

import asyncio
import subprocess
from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from procflow.errors import RedirectionSetupError
from procflow.runtime.redirection import (
    Discard,
    FromFile,
    FromSource,
    Inherit,
    ToFile,
    ToSink,
    drain_to_sink,
    feed_source,
)
from procflow.runtime.sinks import collect_bytes


class FakeWriter:
    """Minimal stand-in for the stdin StreamWriter."""

    def __init__(self, break_after: int | None = None) -> None:
        self.data = bytearray()
        self.closed = False
        self.break_after = break_after

    def is_closing(self) -> bool:
        return self.closed

    def write(self, data: bytes) -> None:
        self.data += data

    async def drain(self) -> None:
        if self.break_after is not None and len(self.data) >= self.break_after:
            raise BrokenPipeError()

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        pass


def make_reader(*chunks: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    for chunk in chunks:
        reader.feed_data(chunk)
    reader.feed_eof()
    return reader


# =============================================================================
# resolve()
# =============================================================================


class TestResolve:
    """Test materializing redirections."""

    def test_inherit(self):
        resolved = Inherit().resolve(1024)
        assert resolved.handle is None
        assert resolved.pump is None
        assert Inherit().resolve("stdout", 1024).handle is None

    def test_from_file(self, tmp_path: Path):
        source = tmp_path / "in.txt"
        source.write_bytes(b"data")

        resolved = FromFile(source).resolve(1024)
        try:
            assert resolved.handle.read() == b"data"
            assert resolved.opened == [resolved.handle]
            assert resolved.pump is None
        finally:
            resolved.close()
        assert resolved.handle.closed

    def test_from_file_missing(self, tmp_path: Path):
        with pytest.raises(RedirectionSetupError) as exc_info:
            FromFile(tmp_path / "missing").resolve(1024)

        assert exc_info.value.stream == "stdin"
        assert "missing" in str(exc_info.value)

    def test_from_source_uses_pipe(self):
        resolved = FromSource(b"abc").resolve(1024)
        assert resolved.handle == subprocess.PIPE
        assert resolved.pump is not None
        assert resolved.opened == []

    def test_from_source_rejects_str(self):
        with pytest.raises(TypeError):
            FromSource("text")

    def test_to_file_truncates(self, tmp_path: Path):
        target = tmp_path / "out.txt"
        target.write_bytes(b"old")

        ToFile(target).resolve("stdout", 1024).close()

        assert target.read_bytes() == b""

    def test_to_file_append_keeps_content(self, tmp_path: Path):
        target = tmp_path / "out.txt"
        target.write_bytes(b"old")

        resolved = ToFile(str(target), append=True).resolve("stdout", 1024)
        resolved.handle.write(b"new")
        resolved.close()

        assert target.read_bytes() == b"oldnew"

    def test_to_file_unopenable(self, tmp_path: Path):
        with pytest.raises(RedirectionSetupError) as exc_info:
            ToFile(tmp_path / "no" / "such" / "dir").resolve("stderr", 1024)

        assert exc_info.value.stream == "stderr"

    def test_discard(self):
        resolved = Discard().resolve("stdout", 1024)
        assert resolved.handle == subprocess.DEVNULL
        assert resolved.pump is None

    def test_to_sink(self):
        resolved = ToSink(collect_bytes()).resolve("stdout", 1024)
        assert resolved.handle == subprocess.PIPE
        assert resolved.pump is not None

    def test_to_sink_requires_callable(self):
        with pytest.raises(TypeError):
            ToSink(b"not callable")

    def test_paths_are_normalized(self):
        assert FromFile("a/b").path == Path("a/b")
        assert ToFile("a/b").path == Path("a/b")


# =============================================================================
# feed_source()
# =============================================================================


class TestFeedSource:
    """Test the stdin feeder."""

    @pytest.mark.asyncio
    async def test_bytes(self):
        writer = FakeWriter()
        await feed_source(b"hello", writer)
        assert writer.data == b"hello"
        assert writer.closed

    @pytest.mark.asyncio
    async def test_sync_iterable_skips_empty_chunks(self):
        writer = FakeWriter()
        await feed_source(iter([b"a", b"", b"b"]), writer)
        assert writer.data == b"ab"
        assert writer.closed

    @pytest.mark.asyncio
    async def test_async_iterable(self):
        async def source():
            for part in (b"x", b"y", b"z"):
                yield part

        writer = FakeWriter()
        await feed_source(source(), writer)
        assert writer.data == b"xyz"

    @pytest.mark.asyncio
    async def test_broken_pipe_is_end_of_stream(self):
        writer = FakeWriter(break_after=2)
        await feed_source([b"ab", b"cd", b"ef"], writer)
        assert writer.data == b"ab"
        assert writer.closed

    @pytest.mark.asyncio
    async def test_closed_pipe_stops_feeding(self):
        writer = FakeWriter()
        writer.closed = True
        await feed_source([b"ab"], writer)
        assert writer.data == b""

    @pytest.mark.asyncio
    async def test_source_error_propagates_and_closes(self):
        def source():
            yield b"ok"
            raise RuntimeError("boom")

        writer = FakeWriter()
        with pytest.raises(RuntimeError, match="boom"):
            await feed_source(source(), writer)
        assert writer.data == b"ok"
        assert writer.closed


# =============================================================================
# drain_to_sink()
# =============================================================================


class TestDrainToSink:
    """Test the output drainer."""

    @pytest.mark.asyncio
    async def test_collects_everything(self):
        reader = make_reader(b"abc", b"def", b"g")
        value = await drain_to_sink(collect_bytes(), reader, chunk_size=2)
        assert value == b"abcdefg"

    @pytest.mark.asyncio
    async def test_empty_stream(self):
        value = await drain_to_sink(collect_bytes(), make_reader(), chunk_size=16)
        assert value == b""

    @pytest.mark.asyncio
    async def test_early_return_drains_rest(self):
        async def first_chunk(chunks: AsyncIterator[bytes]) -> bytes:
            async for chunk in chunks:
                return chunk
            return b""

        reader = make_reader(b"0123456789")
        value = await drain_to_sink(first_chunk, reader, chunk_size=4)

        assert value == b"0123"
        assert reader.at_eof()

    @pytest.mark.asyncio
    async def test_failing_sink_drains_then_raises(self):
        async def failing(chunks: AsyncIterator[bytes]) -> None:
            async for _ in chunks:
                raise OSError(28, "No space left on device")

        reader = make_reader(b"x" * 100)
        with pytest.raises(OSError, match="No space"):
            await drain_to_sink(failing, reader, chunk_size=10)
        assert reader.at_eof()

    @pytest.mark.asyncio
    async def test_connection_reset_is_end_of_stream(self):
        reader = asyncio.StreamReader()
        reader.feed_data(b"partial")
        reader.set_exception(ConnectionResetError())

        value = await drain_to_sink(collect_bytes(), reader, chunk_size=1024)

        assert value == b""  # a pending exception wins over buffered data
