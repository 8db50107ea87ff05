"""Tests for smsmerge.line_index: line -> byte offset mapping."""
from __future__ import annotations

import io
from pathlib import Path

import pytest

from smsmerge.line_index import (
    LineOffsetIndex,
    PositionCursor,
    build_line_index,
    iter_chunks,
    scan_line_starts,
)
from smsmerge.record_types import Position, PositionResolutionError


def _chunks(data: bytes, size: int) -> list[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)]


def _index(data: bytes, chunk_size: int = 1 << 20) -> LineOffsetIndex:
    offsets, total = scan_line_starts(_chunks(data, chunk_size))
    return LineOffsetIndex(offsets=offsets, total_bytes=total)


def _reslice(idx: LineOffsetIndex, data: bytes) -> list[bytes]:
    lines = []
    for n in range(1, idx.line_count + 1):
        start, end = idx.line_span(n)
        lines.append(data[start:end])
    # A trailing terminator opens an empty last line that splitlines() omits.
    if lines and lines[-1] == b"":
        lines.pop()
    return lines


SAMPLES: dict[str, bytes] = {
    "lf": b"first\nsecond\n\nfourth",
    "cr": b"first\rsecond\r\rfourth\r",
    "crlf": b"first\r\nsecond\r\n\r\nfourth\r\n",
    "mixed": b"a\r\nb\nc\rd\r\r\ne\n\rf",
    "empty": b"",
    "no_terminator": b"single line",
    "only_terminators": b"\r\n\r\r\n\n\r",
    "utf8": "héllo\r\nwörld\n✓".encode(),
}


class TestScanLineStarts:
    def test_sentinels(self) -> None:
        offsets, total = scan_line_starts([b"abc"])
        assert offsets == [0, 0]
        assert total == 3

    def test_lf_offsets(self) -> None:
        offsets, total = scan_line_starts([b"a\nbb\nccc"])
        assert offsets == [0, 0, 2, 5]
        assert total == 8

    def test_crlf_is_one_terminator(self) -> None:
        offsets, _ = scan_line_starts([b"a\r\nb"])
        assert offsets == [0, 0, 3]

    def test_cr_then_cr_lf(self) -> None:
        # "\r" then "\r\n": two terminators, not three
        offsets, _ = scan_line_starts([b"a\r\r\nb"])
        assert offsets == [0, 0, 2, 4]

    def test_trailing_cr(self) -> None:
        offsets, total = scan_line_starts([b"a\r"])
        assert offsets == [0, 0, 2]
        assert total == 2

    def test_cr_at_chunk_end_followed_by_lf(self) -> None:
        offsets, _ = scan_line_starts([b"ab\r", b"\ncd"])
        assert offsets == [0, 0, 4]

    def test_cr_at_chunk_end_followed_by_text(self) -> None:
        offsets, _ = scan_line_starts([b"ab\r", b"cd"])
        assert offsets == [0, 0, 3]

    def test_cr_at_chunk_end_followed_by_cr(self) -> None:
        offsets, _ = scan_line_starts([b"a\r", b"\r", b"\nb"])
        assert offsets == [0, 0, 2, 4]

    def test_empty_chunks_ignored(self) -> None:
        offsets, _ = scan_line_starts([b"a\r", b"", b"\nb"])
        assert offsets == [0, 0, 3]


@pytest.mark.parametrize("name", sorted(SAMPLES))
@pytest.mark.parametrize("chunk_size", [1, 2, 3, 5, 7, 1 << 20])
def test_reslicing_reproduces_every_line(name: str, chunk_size: int) -> None:
    data = SAMPLES[name]
    idx = _index(data, chunk_size)
    assert _reslice(idx, data) == data.splitlines(keepends=True)
    assert idx.total_bytes == len(data)


@pytest.mark.parametrize("name", sorted(SAMPLES))
def test_chunking_never_changes_offsets(name: str) -> None:
    data = SAMPLES[name]
    reference = _index(data).offsets
    for size in range(1, max(len(data), 1) + 1):
        assert _index(data, size).offsets == reference


class TestLineOffsetIndex:
    def test_line_start_direct_indexing(self) -> None:
        idx = _index(b"ab\ncd\nef")
        assert idx.line_start(1) == 0
        assert idx.line_start(2) == 3
        assert idx.line_start(3) == 6
        assert idx.line_count == 3

    def test_line_beyond_index_is_fatal(self) -> None:
        idx = _index(b"ab\ncd")
        with pytest.raises(PositionResolutionError) as excinfo:
            idx.line_start(3)
        assert excinfo.value.line == 3

    def test_line_zero_is_rejected(self) -> None:
        idx = _index(b"ab")
        with pytest.raises(PositionResolutionError):
            idx.line_start(0)

    def test_byte_offset_ascii(self) -> None:
        data = b"xx\n  <sms/>\n"
        idx = _index(data)
        assert idx.byte_offset(2, 3, data) == 5
        assert data[5:6] == b"<"

    def test_byte_offset_column_one(self) -> None:
        data = b"ab\ncd"
        assert _index(data).byte_offset(2, 1, data) == 3

    def test_byte_offset_counts_characters_not_bytes(self) -> None:
        data = "é✓<x/>\n".encode()
        idx = _index(data)
        # columns: é=1, ✓=2, '<'=3
        offset = idx.byte_offset(1, 3, data)
        assert data[offset:offset + 1] == b"<"
        assert offset == 5

    def test_byte_offset_at_end_of_line(self) -> None:
        data = b"<a/>\r\nnext"
        idx = _index(data)
        assert idx.byte_offset(1, 5, data) == 4

    def test_column_past_end_of_line(self) -> None:
        data = b"ab\ncd"
        idx = _index(data)
        with pytest.raises(PositionResolutionError) as excinfo:
            idx.byte_offset(1, 5, data)
        assert excinfo.value.column == 5

    def test_resolve_fills_byte_offset(self) -> None:
        data = b"12\n345"
        pos = _index(data).resolve(Position(2, 2), data)
        assert pos.byte_offset == 4
        assert pos.line_number == 2 and pos.column == 2


class TestPositionCursor:
    @staticmethod
    def _packed(count: int) -> tuple[bytes, list[int]]:
        """One line of *count* multibyte records; returns data and start columns."""
        parts = [f'<sms body="héllo ✓ {i}"/>' for i in range(count)]
        columns, col = [], 8
        for part in parts:
            columns.append(col)
            col += len(part)
        return ("<smses>" + "".join(parts) + "</smses>\n").encode(), columns

    def test_forward_positions_match_line_start_resolution(self) -> None:
        data, columns = self._packed(500)
        idx = _index(data)
        cursor = PositionCursor(idx, data)
        for col in columns:
            assert cursor.resolve(Position(1, col)).byte_offset == idx.byte_offset(1, col, data)

    def test_record_slices_stay_exact(self) -> None:
        data, columns = self._packed(300)
        idx = _index(data)
        cursor = PositionCursor(idx, data)
        offsets = [cursor.resolve(Position(1, col)).byte_offset for col in columns]
        for i, (start, end) in enumerate(zip(offsets, offsets[1:])):
            assert data[start:end].decode() == f'<sms body="héllo ✓ {i}"/>'

    def test_advance_from_mid_line_base(self) -> None:
        data = ("é" * 1000 + "<x/>").encode()
        idx = _index(data)
        # base is the byte after the thousandth é (column 1001)
        assert idx.advance(1, 1002, 2000, 1, data) == 2001

    def test_backward_and_new_line_positions_restart(self) -> None:
        data = "ü<a/>\n✓<b/>\n".encode()
        idx = _index(data)
        cursor = PositionCursor(idx, data)
        assert cursor.resolve(Position(2, 2)).byte_offset == 10
        assert cursor.resolve(Position(1, 2)).byte_offset == 2
        assert cursor.resolve(Position(1, 6)).byte_offset == 6
        assert cursor.resolve(Position(2, 1)).byte_offset == 7

    def test_past_end_of_line(self) -> None:
        data = "é<a/>\nz".encode()
        cursor = PositionCursor(_index(data), data)
        cursor.resolve(Position(1, 3))
        with pytest.raises(PositionResolutionError) as excinfo:
            cursor.resolve(Position(1, 9))
        assert excinfo.value.column == 9

    def test_declared_encoding(self) -> None:
        data = "<a x='été'/><b/>".encode("latin-1")
        cursor = PositionCursor(_index(data), data, encoding="iso-8859-1")
        assert cursor.resolve(Position(1, 13)).byte_offset == 12


class TestBuildLineIndex:
    def test_from_path(self, tmp_path: Path) -> None:
        path = tmp_path / "doc.xml"
        path.write_bytes(b"a\r\nb\nc")
        idx = build_line_index(path, chunk_size=2)
        assert idx.offsets == [0, 0, 3, 5]
        assert idx.document == str(path)

    def test_from_stream_rewinds(self) -> None:
        fh = io.BytesIO(b"a\nb\n")
        fh.seek(3)
        idx = build_line_index(fh, chunk_size=1)
        assert idx.offsets == [0, 0, 2, 4]
        assert fh.tell() == 0

    def test_iter_chunks_rejects_bad_size(self) -> None:
        with pytest.raises(ValueError):
            list(iter_chunks(io.BytesIO(b"x"), 0))
