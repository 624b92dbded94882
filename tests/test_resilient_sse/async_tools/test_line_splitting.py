# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

import asyncio
from collections.abc import AsyncGenerator

import pytest

from resilient_sse.async_tools.asyncitertools import split_lines


async def chunks(*parts: bytes) -> AsyncGenerator[bytes, None]:
    for part in parts:
        await asyncio.sleep(0)
        yield part


async def collect(*parts: bytes) -> list[str]:
    return [line async for line in split_lines(chunks(*parts))]


@pytest.mark.asyncio
@pytest.mark.parametrize("terminator", [b"\n", b"\r", b"\r\n"])
async def test_split_lines_terminators(terminator: bytes) -> None:
    raw = terminator.join([b"data: a", b"data: b", b"", b""])
    assert await collect(raw) == ["data: a", "data: b", ""]


@pytest.mark.asyncio
async def test_split_lines_mixed_terminators() -> None:
    assert await collect(b"a\rb\nc\r\nd\n") == ["a", "b", "c", "d"]


@pytest.mark.asyncio
async def test_split_lines_crlf_across_chunks() -> None:
    # The b"\n" completes b"\r\n"; it must not produce an extra empty line.
    assert await collect(b"a\r", b"\nb\n") == ["a", "b"]


@pytest.mark.asyncio
async def test_split_lines_cr_at_chunk_end() -> None:
    assert await collect(b"a\r", b"b\n") == ["a", "b"]
    assert await collect(b"a\r", b"\r", b"\n") == ["a", ""]


@pytest.mark.asyncio
async def test_split_lines_trailing_cr_terminates_last_line() -> None:
    assert await collect(b"a\nb\r") == ["a", "b"]


@pytest.mark.asyncio
async def test_split_lines_drops_unterminated_tail() -> None:
    assert await collect(b"a\n", b"b") == ["a"]
    assert await collect(b"no terminator") == []
    assert await collect() == []


@pytest.mark.asyncio
async def test_split_lines_multibyte_across_chunks() -> None:
    encoded = "data: héllo ✓\n".encode()
    parts = [encoded[i : i + 1] for i in range(len(encoded))]
    assert await collect(*parts) == ["data: héllo ✓"]


@pytest.mark.asyncio
async def test_split_lines_strips_leading_byte_order_mark() -> None:
    assert await collect(b"\xef\xbb", b"\xbfdata: x\n") == ["data: x"]
    # Only at the very start of the stream.
    assert await collect(b"a\n\xef\xbb\xbfb\n") == ["a", "\ufeffb"]


@pytest.mark.asyncio
async def test_split_lines_replaces_invalid_utf8() -> None:
    assert await collect(b"data: \xff\n") == ["data: \ufffd"]


@pytest.mark.asyncio
async def test_split_lines_yields_cr_line_without_waiting() -> None:
    more = asyncio.Event()

    async def source() -> AsyncGenerator[bytes, None]:
        yield b"data: x\r\r"
        await more.wait()
        yield b"\ndata: y\n"

    lines = split_lines(source())
    try:
        # Both lines are available before the source produces anything else.
        assert await asyncio.wait_for(anext(lines), timeout=1) == "data: x"
        assert await asyncio.wait_for(anext(lines), timeout=1) == ""
        more.set()
        # The b"\n" completes the b"\r\n" from the previous chunk.
        assert await asyncio.wait_for(anext(lines), timeout=1) == "data: y"
    finally:
        await lines.aclose()
