"""Streaming record extraction from one backup document.

Walks the top-level children of a document with expat, never holding more
than one parse chunk of the file in memory, and produces a RecordDescriptor
per child: kind, identities, timestamp, address and the exact byte range
``[start, end)`` of the element's text.

Byte ranges:
    start  position of the child's opening ``<``.
    end    position of the first parse event after the child's end tag
           (whitespace, comment, next sibling or the root's end tag), i.e.
           the byte right after the closing ``>``. Trailing whitespace is
           never part of a record.

Positions come from the parser as (line, column) and are resolved to byte
offsets through a PositionCursor over the document's LineOffsetIndex. The
cursor only measures forward from the previous position, so records packed
onto one line cost the bytes between them rather than the whole line.

Two entry points:

* ``extract_records``: lazy iterator of included primary descriptors.
* ``build_document_index``: drives the iterator and fills the per-document
  identity index (primaries plus alternates).
"""
from __future__ import annotations

import logging
import mmap
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from xml.parsers import expat

from smsmerge.identity import RECORD_KINDS, TEXT_IDENTITY_KINDS, attribute_or_none, identify
from smsmerge.line_index import (
    DEFAULT_CHUNK_SIZE,
    LineOffsetIndex,
    PositionCursor,
    build_line_index,
)
from smsmerge.record_types import (
    MalformedDocumentError,
    PerDocumentIndex,
    Position,
    RecordDescriptor,
    RecordPredicate,
    UnknownRecordKindError,
    UnsupportedRootError,
    accept_all,
)

log = logging.getLogger(__name__)

ACCEPTED_ROOTS: tuple[str, ...] = ("smses", "allsms")

# First attribute present and parseable as an integer wins.
TIMESTAMP_ATTRIBUTES: tuple[str, ...] = ("date", "date_sent")

DEFAULT_PARSE_CHUNK = 256 * 1024


# ---------------------------------------------------------------------------
# Attribute helpers
# ---------------------------------------------------------------------------


def parse_timestamp(
    attributes: Mapping[str, str],
    names: tuple[str, ...] = TIMESTAMP_ATTRIBUTES,
) -> int:
    """Integer value of the first usable attribute in *names*, else 0."""
    for name in names:
        value = attribute_or_none(attributes, name)
        if value is None:
            continue
        try:
            return int(value.strip())
        except ValueError:
            continue
    return 0


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class ExtractionStats:
    """Counters for one document's extraction."""

    records_seen: int = 0
    records_included: int = 0
    records_excluded: int = 0
    fallback_identities: int = 0
    duplicate_keys: int = 0
    kinds: dict[str, int] = field(default_factory=dict[str, int])

    def to_dict(self) -> dict[str, Any]:
        return {
            "records_seen": self.records_seen,
            "records_included": self.records_included,
            "records_excluded": self.records_excluded,
            "fallback_identities": self.fallback_identities,
            "duplicate_keys": self.duplicate_keys,
            "kinds": dict(self.kinds),
        }


@dataclass(frozen=True, slots=True)
class DocumentExtraction:
    """Result of extracting one document: its identity index plus counters."""

    document: Path
    index: PerDocumentIndex
    stats: ExtractionStats
    elapsed_sec: float = 0.0


# ---------------------------------------------------------------------------
# expat driver
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class _OpenRecord:
    kind: str
    attributes: dict[str, str]
    line: int
    column: int
    text_parts: list[str] | None = None


@dataclass(frozen=True, slots=True)
class _ClosedRecord:
    record: _OpenRecord
    end_line: int
    end_column: int


class _RecordScanner:
    """Push-parser state machine collecting top-level record boundaries."""

    def __init__(self, document: str) -> None:
        self.document = document
        self.encoding = "utf-8"
        self.root: str | None = None
        self.depth = 0
        self.current: _OpenRecord | None = None
        self.awaiting_end: _OpenRecord | None = None
        self.completed: list[_ClosedRecord] = []

        p = expat.ParserCreate()
        p.buffer_text = False
        p.XmlDeclHandler = self._on_xml_decl
        p.StartElementHandler = self._on_start
        p.EndElementHandler = self._on_end
        p.CharacterDataHandler = self._on_text
        p.CommentHandler = self._on_other
        p.ProcessingInstructionHandler = self._on_other
        p.StartCdataSectionHandler = self._on_other
        p.EndCdataSectionHandler = self._on_other
        self.parser = p

    # -- positions ---------------------------------------------------------

    def _here(self) -> tuple[int, int]:
        # expat: 1-based lines, 0-based columns
        return self.parser.CurrentLineNumber, self.parser.CurrentColumnNumber + 1

    def _mark(self) -> None:
        """Close a finished record at the current event's position."""
        if self.awaiting_end is not None:
            line, column = self._here()
            self.completed.append(_ClosedRecord(self.awaiting_end, line, column))
            self.awaiting_end = None

    # -- handlers ------------------------------------------------------------

    def _on_xml_decl(self, version: str, encoding: str | None, standalone: int) -> None:
        if encoding:
            self.encoding = encoding.lower()

    def _on_start(self, name: str, attributes: dict[str, str]) -> None:
        self._mark()
        if self.depth == 0:
            if name not in ACCEPTED_ROOTS:
                line, column = self._here()
                raise UnsupportedRootError(
                    f"top level tag <{name}> is unsupported; supported top level "
                    "tags are " + ", ".join(f"<{t}>" for t in ACCEPTED_ROOTS),
                    document=self.document, line=line, column=column,
                )
            self.root = name
        elif self.depth == 1:
            line, column = self._here()
            if name not in RECORD_KINDS:
                raise UnknownRecordKindError(
                    f"encountered <{name}> which is not a known record kind "
                    "(" + ", ".join(f"<{k}>" for k in RECORD_KINDS) + ")",
                    document=self.document, line=line, column=column,
                )
            self.current = _OpenRecord(
                kind=name,
                attributes=attributes,
                line=line,
                column=column,
                text_parts=[] if name in TEXT_IDENTITY_KINDS else None,
            )
        self.depth += 1

    def _on_end(self, name: str) -> None:
        self._mark()
        self.depth -= 1
        if self.depth == 1 and self.current is not None:
            self.awaiting_end = self.current
            self.current = None

    def _on_text(self, data: str) -> None:
        self._mark()
        if self.current is not None and self.current.text_parts is not None:
            self.current.text_parts.append(data)

    def _on_other(self, *_args: Any) -> None:
        self._mark()

    # -- feeding -------------------------------------------------------------

    def feed(self, chunk: bytes, final: bool = False) -> list[_ClosedRecord]:
        try:
            self.parser.Parse(chunk, final)
        except expat.ExpatError as exc:
            raise MalformedDocumentError(
                f"XML parse error: {expat.errors.messages[exc.code]}",
                document=self.document,
                line=exc.lineno,
                column=exc.offset + 1,
            ) from exc
        done, self.completed = self.completed, []
        return done


@contextmanager
def _mapped(path: Path) -> Iterator[mmap.mmap | bytes]:
    """Read-only random access to *path* (mmap, or b"" for empty files)."""
    with path.open("rb") as fh:
        if path.stat().st_size == 0:
            yield b""
            return
        mm = mmap.mmap(fh.fileno(), 0, access=mmap.ACCESS_READ)
        try:
            yield mm
        finally:
            mm.close()


def _describe(
    closed: _ClosedRecord,
    cursor: PositionCursor,
    *,
    document: str,
    stats: ExtractionStats,
) -> RecordDescriptor:
    rec = closed.record
    text = "".join(rec.text_parts) if rec.text_parts is not None else ""
    identity = identify(rec.kind, rec.attributes, text)
    start = cursor.resolve(Position(rec.line, rec.column))
    end = cursor.resolve(Position(closed.end_line, closed.end_column))

    if identity.is_fallback:
        stats.fallback_identities += 1
        log.debug(
            "%s: <%s> at line %d has no correlating id; using text-content identity %s",
            document, rec.kind, rec.line, identity.primary,
        )

    descriptor = RecordDescriptor(
        kind=rec.kind,
        id=identity.primary,
        primary_id=identity.primary,
        is_primary=True,
        start=start,
        end=end,
        timestamp=parse_timestamp(rec.attributes),
        address=attribute_or_none(rec.attributes, "address"),
        alternate_ids=identity.alternates,
    )
    descriptor.require_positive_range(document)
    return descriptor


def extract_records(
    path: Path,
    index: LineOffsetIndex | None = None,
    *,
    include: RecordPredicate = accept_all,
    chunk_size: int = DEFAULT_PARSE_CHUNK,
    stats: ExtractionStats | None = None,
) -> Iterator[RecordDescriptor]:
    """Lazily yield the included primary descriptors of *path*, in order.

    Records rejected by *include* are dropped silently. Format errors raise
    a DocumentFormatError subclass naming the document, line and column.
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    document = str(path)
    if index is None:
        index = build_line_index(path, document=document)
    if stats is None:
        stats = ExtractionStats()

    scanner = _RecordScanner(document)
    with _mapped(path) as data:
        cursor = PositionCursor(index, data)
        size = len(data)
        pos = 0
        while True:
            final = pos >= size
            chunk = b"" if final else data[pos:pos + chunk_size]
            pos += len(chunk)
            for closed in scanner.feed(chunk, final):
                cursor.encoding = scanner.encoding
                descriptor = _describe(closed, cursor, document=document, stats=stats)
                stats.records_seen += 1
                stats.kinds[descriptor.kind] = stats.kinds.get(descriptor.kind, 0) + 1
                if not include(descriptor):
                    stats.records_excluded += 1
                    continue
                stats.records_included += 1
                yield descriptor
            if final:
                break


def register(index: PerDocumentIndex, descriptor: RecordDescriptor, stats: ExtractionStats) -> None:
    """Add a primary and its alternates to *index*, keyed by their own ids."""
    for d in (descriptor, *descriptor.alternates()):
        if d.id in index:
            stats.duplicate_keys += 1
            log.debug("Identity %s repeated within document; keeping later record", d.id)
        index[d.id] = d


def build_document_index(
    path: Path,
    *,
    include: RecordPredicate = accept_all,
    line_chunk_size: int = DEFAULT_CHUNK_SIZE,
    parse_chunk_size: int = DEFAULT_PARSE_CHUNK,
) -> DocumentExtraction:
    """Extract *path* into its per-document identity index."""
    t0 = time.monotonic()
    document = str(path)
    log.info("Analysing %s...", document)

    line_index = build_line_index(path, chunk_size=line_chunk_size, document=document)
    stats = ExtractionStats()
    index: PerDocumentIndex = {}
    for descriptor in extract_records(
        path, line_index, include=include, chunk_size=parse_chunk_size, stats=stats,
    ):
        register(index, descriptor, stats)

    elapsed = time.monotonic() - t0
    if stats.fallback_identities:
        log.warning(
            "%s: %d record(s) had no correlating id and were keyed by text content",
            document, stats.fallback_identities,
        )
    log.info(
        "Finished analysing %s in %.2fs. Discovered %d item(s) (%d excluded by filter)",
        document, elapsed, stats.records_included, stats.records_excluded,
    )
    return DocumentExtraction(document=path, index=index, stats=stats, elapsed_sec=elapsed)
