# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

import codecs
import re
from collections.abc import AsyncGenerator, AsyncIterable

_LINE_END = re.compile(r"\r\n|\r|\n")
_BYTE_ORDER_MARK = "\ufeff"


async def split_lines(
    chunks: AsyncIterable[bytes], encoding: str = "utf-8"
) -> AsyncGenerator[str, None]:
    """Decodes `chunks` incrementally and yields the lines they contain.

    Lines may end in b'\\r\\n', b'\\n' or b'\\r', as allowed by
    https://html.spec.whatwg.org/multipage/server-sent-events.html#parsing-an-event-stream
    The terminators are not included in the yielded lines.

    Chunk boundaries can fall anywhere, including inside a multi-byte
    character or between the two halves of b'\\r\\n'. Text after the last
    terminator is not a line and is dropped when `chunks` ends.
    """
    decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
    buffer = ""
    at_start = True
    # Set when the last line ended in b'\r', since b'\n' may follow in the next chunk.
    after_cr = False

    async for chunk in chunks:
        text = decoder.decode(chunk)
        if not text:
            continue
        if at_start:
            at_start = False
            if text.startswith(_BYTE_ORDER_MARK):
                text = text[1:]
        if after_cr and text.startswith("\n"):
            text = text[1:]

        buffer += text
        start = 0
        for match in _LINE_END.finditer(buffer):
            yield buffer[start : match.start()]
            start = match.end()
        after_cr = start == len(buffer) and buffer.endswith("\r")
        buffer = buffer[start:]

    buffer += decoder.decode(b"", final=True)
    start = 0
    for match in _LINE_END.finditer(buffer):
        yield buffer[start : match.start()]
        start = match.end()
