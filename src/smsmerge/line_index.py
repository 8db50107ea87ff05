"""Line offset index: 1-based line numbers -> absolute byte offsets.

Streaming XML parsers report positions as (line, column). To copy a record
verbatim we need byte offsets, so every document gets one pass over its
bytes that records where each line starts.

Terminators are LF, CR, or CR+LF (one terminator, two bytes): the same
rules expat uses when it counts lines. The scan works in bounded chunks and
never decides a CR at the end of a chunk until it has seen the first byte
of the next one.

Index layout: ``offsets[0]`` is an unused sentinel, ``offsets[1] == 0`` and
``offsets[n]`` is the first byte of line *n*, so parser line numbers index
the list directly.
"""
from __future__ import annotations

import logging
import re
import time
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from smsmerge.record_types import Position, PositionResolutionError

if TYPE_CHECKING:
    from collections.abc import Buffer

log = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1 << 20  # 1 MiB
MAX_CHAR_BYTES = 4  # widest character of any supported encoding

_TERMINATOR_RE: re.Pattern[bytes] = re.compile(rb"\r\n?|\n")
_CR = 0x0D
_LF = 0x0A


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------


def iter_chunks(fh: BinaryIO, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
    """Yield successive reads of at most *chunk_size* bytes until EOF."""
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    while True:
        chunk = fh.read(chunk_size)
        if not chunk:
            return
        yield chunk


def scan_line_starts(chunks: Iterable[bytes]) -> tuple[list[int], int]:
    """Scan *chunks* (consecutive slices of one document) for line starts.

    Returns ``(offsets, total_bytes)`` with the two leading sentinels.
    """
    offsets: list[int] = [0, 0]
    base = 0
    pending_cr = False

    for chunk in chunks:
        n = len(chunk)
        if n == 0:
            continue
        pos = 0
        if pending_cr:
            # CR closed the previous chunk; a leading LF belongs to it.
            pending_cr = False
            if chunk[0] == _LF:
                offsets.append(base + 1)
                pos = 1
            else:
                offsets.append(base)

        for m in _TERMINATOR_RE.finditer(chunk, pos):
            if m.end() == n and chunk[n - 1] == _CR:
                pending_cr = True
                break
            offsets.append(base + m.end())
        base += n

    if pending_cr:
        offsets.append(base)
    return offsets, base


# ---------------------------------------------------------------------------
# Index
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class LineOffsetIndex:
    """Byte offset of the first byte of every line of one document."""

    offsets: list[int]
    total_bytes: int
    document: str = ""

    @property
    def line_count(self) -> int:
        """Number of lines (a trailing terminator opens one empty last line)."""
        return len(self.offsets) - 1

    def line_start(self, line: int) -> int:
        if line < 1 or line >= len(self.offsets):
            last = self.offsets[-1] if len(self.offsets) > 1 else 0
            raise PositionResolutionError(
                f"requested line {line} but only lines 1..{self.line_count} "
                f"are known (last line starts at byte {last})",
                document=self.document,
                line=line,
            )
        return self.offsets[line]

    def line_span(self, line: int) -> tuple[int, int]:
        """Half-open byte range of *line*, terminator included."""
        start = self.line_start(line)
        end = self.offsets[line + 1] if line + 1 < len(self.offsets) else self.total_bytes
        return start, end

    def byte_offset(
        self,
        line: int,
        column: int,
        data: Buffer,
        *,
        encoding: str = "utf-8",
    ) -> int:
        """Resolve a 1-based (line, column) to an absolute byte offset.

        Parsers count columns in characters, so the width of the line prefix
        is measured in *data* (the document bytes, typically an mmap).
        """
        if column < 1:
            raise PositionResolutionError(
                f"column {column} is not a valid 1-based column",
                document=self.document, line=line, column=column,
            )
        start = self.line_start(line)
        return self.advance(line, column, start, column - 1, data, encoding=encoding)

    def advance(
        self,
        line: int,
        column: int,
        base: int,
        chars: int,
        data: Buffer,
        *,
        encoding: str = "utf-8",
    ) -> int:
        """Byte offset *chars* characters after *base* on *line*.

        *base* must sit on a character boundary of *line*. At most
        ``chars * MAX_CHAR_BYTES`` bytes are read, whatever the line length.
        """
        if chars == 0:
            return base
        end = self.line_span(line)[1]
        stop = min(base + chars * MAX_CHAR_BYTES, end)
        with memoryview(data) as view:
            window = bytes(view[base:stop])
        if stop == end:
            window = window.rstrip(b"\r\n")
        if len(window) >= chars and window[:chars].isascii():
            return base + chars

        text = window.decode(encoding, errors="surrogateescape")
        if chars > len(text):
            raise PositionResolutionError(
                f"column {column} is past the end of the line",
                document=self.document, line=line, column=column,
            )
        return base + len(text[:chars].encode(encoding, errors="surrogateescape"))

    def resolve(self, position: Position, data: Buffer, *, encoding: str = "utf-8") -> Position:
        """Return *position* with its byte offset filled in."""
        offset = self.byte_offset(
            position.line_number, position.column, data, encoding=encoding,
        )
        return position.resolved(offset)


class PositionCursor:
    """Resolves the positions of one document in reading order.

    Remembers the last resolved (line, column, byte offset). A position
    further along the same line is measured from there, so records packed
    onto one long line cost only the bytes between them. Any other position
    restarts from its line start.
    """

    def __init__(self, index: LineOffsetIndex, data: Buffer, *, encoding: str = "utf-8") -> None:
        self.index = index
        self.data = data
        self.encoding = encoding
        self._line = 0
        self._column = 1
        self._offset = 0

    def resolve(self, position: Position) -> Position:
        line, column = position.line_number, position.column
        if line == self._line and column >= self._column:
            base, base_column = self._offset, self._column
        else:
            base, base_column = self.index.line_start(line), 1
        offset = self.index.advance(
            line, column, base, column - base_column, self.data, encoding=self.encoding,
        )
        self._line, self._column, self._offset = line, column, offset
        return position.resolved(offset)


def build_line_index(
    source: Path | BinaryIO,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    document: str = "",
) -> LineOffsetIndex:
    """Build the line offset index of *source* in one chunked pass.

    A file object is rewound to 0 afterwards so it can be handed straight
    to the parser.
    """
    t0 = time.monotonic()
    if isinstance(source, Path):
        with source.open("rb") as fh:
            offsets, total = scan_line_starts(iter_chunks(fh, chunk_size))
        name = document or str(source)
    else:
        source.seek(0)
        try:
            offsets, total = scan_line_starts(iter_chunks(source, chunk_size))
        finally:
            source.seek(0)
        name = document

    log.debug(
        "Built %d line offsets from %d bytes of %s in %.3fs",
        len(offsets) - 1, total, name or "<stream>", time.monotonic() - t0,
    )
    return LineOffsetIndex(offsets=offsets, total_bytes=total, document=name)
