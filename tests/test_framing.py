import json
from typing import AsyncIterator, List

import pytest

from transcoder.framing import DONE, LineFramer, format_sse, iter_lines, sse_data


async def _source(parts: List[bytes], fail_after: int = -1) -> AsyncIterator[bytes]:
    for i, part in enumerate(parts):
        if i == fail_after:
            raise ConnectionError("socket closed")
        yield part


async def _collect(parts: List[bytes], fail_after: int = -1) -> List[str]:
    return [line async for line in iter_lines(_source(parts, fail_after))]


def test_partial_lines_carry_across_reads():
    framer = LineFramer()
    assert framer.feed(b"data: {\"a\"") == []
    assert framer.pending == "data: {\"a\""
    assert framer.feed(b": 1}\r\n\r\ndata: x") == ["data: {\"a\": 1}", ""]
    assert framer.flush() == "data: x"
    assert framer.flush() is None


def test_split_utf8_sequence_is_reassembled():
    encoded = "data: 안녕\n".encode()
    framer = LineFramer()
    lines = []
    for i in range(len(encoded)):
        lines.extend(framer.feed(encoded[i : i + 1]))
    assert lines == ["data: 안녕"]


@pytest.mark.asyncio
async def test_iter_lines_flushes_tail_on_clean_end():
    lines = await _collect([b"data: 1\nda", b"ta: 2\n", b"data: 3"])
    assert lines == ["data: 1", "data: 2", "data: 3"]


@pytest.mark.asyncio
async def test_iter_lines_discards_tail_and_propagates_on_error():
    seen: List[str] = []
    with pytest.raises(ConnectionError):
        async for line in iter_lines(_source([b"data: 1\ndata: partial", b"more"], fail_after=1)):
            seen.append(line)
    assert seen == ["data: 1"]


def test_sse_data():
    assert sse_data("data: {\"x\": 1}") == "{\"x\": 1}"
    assert sse_data("data:{}") == "{}"
    assert sse_data("event: message_start") is None
    assert sse_data("") is None
    assert sse_data(": keep-alive") is None
    assert sse_data("data: [DONE]") is None


def test_format_sse_and_done():
    record = format_sse({"text": "é"})
    assert record.startswith(b"data: ")
    assert record.endswith(b"\n\n")
    assert json.loads(record[6:].decode()) == {"text": "é"}
    assert DONE == b"data: [DONE]\n\n"
