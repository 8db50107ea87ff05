"""Core types shared by every stage of the merge.

All byte coordinates are absolute offsets into the source document (never
line-relative). Descriptors are frozen: they are built once during
extraction and only read afterwards.

Type hierarchy:
  Position         : 1-based line/column plus resolved byte offset
  RecordDescriptor : One top-level record (primary or alternate spelling)
  MergedEntry      : (source document, descriptor) pair in the merged result
  PerDocumentIndex : identity string -> descriptor, for one document

Error taxonomy:
  MergeError
    DocumentFormatError      : carries document/line/column
      UnsupportedRootError
      UnknownRecordKindError
      MalformedDocumentError
      PositionResolutionError
    EmptyRecordRangeError
    RecordCorruptionError
  MergeContractError         : caller programming error (ValueError)
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TypeAlias

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class MergeError(RuntimeError):
    """Base class for fatal, non-recoverable merge failures."""


class DocumentFormatError(MergeError):
    """A document does not have the shape the extractor understands."""

    def __init__(
        self,
        message: str,
        *,
        document: str = "",
        line: int | None = None,
        column: int | None = None,
    ) -> None:
        self.document = document
        self.line = line
        self.column = column
        where = document or "<unknown document>"
        if line is not None:
            where = f"{where} at line {line}"
            if column is not None:
                where = f"{where} (column {column})"
        super().__init__(f"{where}: {message}")


class UnsupportedRootError(DocumentFormatError):
    """Root element is not one of the accepted container names."""


class UnknownRecordKindError(DocumentFormatError):
    """Top-level child (or identity request) for a kind we do not handle."""


class MalformedDocumentError(DocumentFormatError):
    """The streaming parser rejected the document (bad or truncated XML)."""


class PositionResolutionError(DocumentFormatError):
    """A parser position could not be mapped onto the line offset index."""


class EmptyRecordRangeError(MergeError):
    """A record resolved to a zero or negative byte range."""


class RecordCorruptionError(MergeError):
    """Source document ended before a record's byte range was copied."""


class MergeContractError(ValueError):
    """Caller passed inconsistent arguments (programming error, not data)."""


# ---------------------------------------------------------------------------
# Position
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Position:
    """Parser position in a source document.

    ``line_number`` and ``column`` are 1-based and authoritative.
    ``byte_offset`` is derived from them via the line offset index and stays
    ``None`` until resolved.
    """

    line_number: int
    column: int
    byte_offset: int | None = None

    def __post_init__(self) -> None:
        if self.line_number < 1:
            raise ValueError(f"line_number must be >= 1, got {self.line_number}")
        if self.column < 1:
            raise ValueError(f"column must be >= 1, got {self.column}")
        if self.byte_offset is not None and self.byte_offset < 0:
            raise ValueError(f"byte_offset must be >= 0, got {self.byte_offset}")

    def resolved(self, byte_offset: int) -> Position:
        """Return a copy carrying *byte_offset*."""
        return Position(self.line_number, self.column, byte_offset)


# ---------------------------------------------------------------------------
# RecordDescriptor
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RecordDescriptor:
    """One logical record (one top-level child element) of a document.

    The extractor emits exactly one primary descriptor per record. For every
    alternate identity it also builds an alternate descriptor: same byte
    range and attributes, ``id`` set to that alternate, ``is_primary`` False,
    and ``alternate_ids`` listing the primary id followed by the remaining
    alternates. ``primary_id`` is the explicit back-pointer from an
    alternate to the record it spells.
    """

    kind: str                     # "sms" | "mms"
    id: str                       # identity this descriptor is keyed by
    primary_id: str
    is_primary: bool
    start: Position
    end: Position
    timestamp: int = 0
    address: str | None = None
    alternate_ids: tuple[str, ...] = field(default_factory=tuple)

    @property
    def byte_count(self) -> int:
        if self.start.byte_offset is None or self.end.byte_offset is None:
            raise ValueError(f"Record {self.id!r} has unresolved positions")
        return self.end.byte_offset - self.start.byte_offset

    def all_ids(self) -> tuple[str, ...]:
        """Every spelling of this record, primary first."""
        ids = [self.primary_id]
        for i in (self.id, *self.alternate_ids):
            if i not in ids:
                ids.append(i)
        return tuple(ids)

    def alternates(self) -> tuple[RecordDescriptor, ...]:
        """Build the alternate descriptors for a primary descriptor."""
        if not self.is_primary:
            raise ValueError(f"Alternates can only be derived from a primary, got {self.id!r}")
        result: list[RecordDescriptor] = []
        for alt in self.alternate_ids:
            others = tuple(i for i in self.alternate_ids if i != alt)
            result.append(
                replace(
                    self,
                    id=alt,
                    is_primary=False,
                    alternate_ids=(self.primary_id, *others),
                )
            )
        return tuple(result)

    def require_positive_range(self, document: str = "") -> None:
        """Raise EmptyRecordRangeError unless end lies after start."""
        count = self.byte_count
        if count <= 0:
            where = f" in {document}" if document else ""
            raise EmptyRecordRangeError(
                f"<{self.kind}> record {self.primary_id!r}{where} at line "
                f"{self.start.line_number} (column {self.start.column}) spans "
                f"{count} bytes [{self.start.byte_offset}, {self.end.byte_offset})"
            )


@dataclass(frozen=True, slots=True)
class MergedEntry:
    """A surviving record tagged with the document it will be copied from."""

    document: Path
    descriptor: RecordDescriptor


# Identity string (primary or alternate) -> descriptor. One per document,
# owned exclusively by the worker that builds it.
PerDocumentIndex: TypeAlias = dict[str, RecordDescriptor]

# Injected inclusion filter. Returning False drops the record silently.
RecordPredicate: TypeAlias = Callable[[RecordDescriptor], bool]


def accept_all(_descriptor: RecordDescriptor) -> bool:
    """Default inclusion predicate."""
    return True


def primaries(index: PerDocumentIndex) -> list[RecordDescriptor]:
    """Primary descriptors of *index* in insertion (document) order."""
    return [d for d in index.values() if d.is_primary]
