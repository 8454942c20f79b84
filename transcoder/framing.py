from __future__ import annotations

import codecs
import json
from typing import Any, AsyncIterable, AsyncIterator, List, Optional


DONE = b"data: [DONE]\n\n"


class LineFramer:
    """Reassemble arbitrarily split byte deliveries into text lines.

    A line is everything up to ``\\n`` (a trailing ``\\r`` is dropped). Bytes
    after the last newline are carried into the next :meth:`feed` call, and a
    UTF-8 sequence cut in half by a read boundary is completed on the next read.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._partial = ""

    @property
    def pending(self) -> str:
        return self._partial

    def feed(self, data: bytes) -> List[str]:
        text = self._partial + self._decoder.decode(data)
        lines = text.split("\n")
        self._partial = lines.pop()
        return [line[:-1] if line.endswith("\r") else line for line in lines]

    def flush(self) -> Optional[str]:
        """Return the carried partial line (if any) at clean end of stream."""
        tail = self._partial + self._decoder.decode(b"", final=True)
        self._partial = ""
        if tail.endswith("\r"):
            tail = tail[:-1]
        return tail or None

    def discard(self) -> None:
        self._partial = ""
        self._decoder.reset()


async def iter_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Yield logical lines from an async byte source.

    The partial tail is flushed only when the source ends cleanly; on error or
    cancellation it is dropped and the exception propagates.
    """
    framer = LineFramer()
    try:
        async for data in chunks:
            for line in framer.feed(data):
                yield line
    except BaseException:
        framer.discard()
        raise
    tail = framer.flush()
    if tail is not None:
        yield tail


def sse_data(line: str) -> Optional[str]:
    """Payload of a ``data:`` line, or None for event names, comments and blanks."""
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    if not payload or payload == "[DONE]":
        return None
    return payload


def format_sse(obj: Any) -> bytes:
    return f"data: {json.dumps(obj, ensure_ascii=False)}\n\n".encode()
