"""Byte-range stitching of merged records into one output document.

Each surviving record is copied verbatim from its source document into the
output, between a fresh container preamble and a fixed postamble. Nothing is
re-encoded or escaped. Correctness rests entirely on the
extractor's byte ranges being exact element boundaries.

Sources are opened once per distinct document, not per record.
"""
from __future__ import annotations

import logging
import os
import tempfile
import time
import uuid
from collections.abc import Callable, Sequence
from contextlib import ExitStack
from pathlib import Path
from typing import BinaryIO, TypeAlias

from smsmerge.record_types import MergedEntry, RecordCorruptionError

log = logging.getLogger(__name__)

DEFAULT_COPY_BUFFER = 1 << 20  # 1 MiB
DEFAULT_OUTPUT_ROOT = "smses"
RECORD_SEPARATOR = b"\n"

SourceOpener: TypeAlias = Callable[[Path], BinaryIO]


def open_source(path: Path) -> BinaryIO:
    return path.open("rb")


def preamble(
    count: int,
    *,
    root: str = DEFAULT_OUTPUT_ROOT,
    backup_set: str | None = None,
    backup_date_ms: int | None = None,
) -> bytes:
    """XML declaration plus the container start tag carrying *count*."""
    backup_set = backup_set or str(uuid.uuid4())
    backup_date_ms = backup_date_ms if backup_date_ms is not None else int(time.time() * 1000)
    return (
        "<?xml version='1.0' encoding='UTF-8' standalone='yes' ?>\n"
        f'<{root} count="{count}" backup_set="{backup_set}" '
        f'backup_date="{backup_date_ms}" type="full">\n'
    ).encode("utf-8")


def postamble(*, root: str = DEFAULT_OUTPUT_ROOT) -> bytes:
    return f"</{root}>\n".encode("utf-8")


def copy_range(
    source: BinaryIO,
    output: BinaryIO,
    offset: int,
    count: int,
    buffer: bytearray,
    *,
    document: str = "",
    record_id: str = "",
) -> None:
    """Copy exactly *count* bytes starting at *offset* from *source*.

    Short reads are retried; a read returning nothing before *count* bytes
    arrived means the source is truncated or corrupt.
    """
    source.seek(offset)
    view = memoryview(buffer)
    remaining = count
    try:
        while remaining > 0:
            want = min(remaining, len(view))
            read = source.readinto(view[:want])
            if not read:
                raise RecordCorruptionError(
                    f"{document or '<source>'}: record {record_id!r} expected "
                    f"{count} bytes at offset {offset} but the source ended after "
                    f"{count - remaining}"
                )
            output.write(view[:read])
            remaining -= read
    finally:
        view.release()


def write_merged(
    output: BinaryIO,
    entries: Sequence[MergedEntry],
    *,
    open_document: SourceOpener = open_source,
    root: str = DEFAULT_OUTPUT_ROOT,
    buffer_size: int = DEFAULT_COPY_BUFFER,
) -> int:
    """Write the merged document to *output*. Returns bytes of record data copied."""
    if buffer_size <= 0:
        raise ValueError(f"buffer_size must be positive, got {buffer_size}")

    with ExitStack() as stack:
        sources: dict[Path, BinaryIO] = {}
        for entry in entries:
            if entry.document not in sources:
                sources[entry.document] = stack.enter_context(open_document(entry.document))

        output.write(preamble(len(entries), root=root))
        buffer = bytearray(buffer_size)
        copied = 0
        for entry in entries:
            d = entry.descriptor
            d.require_positive_range(str(entry.document))
            copy_range(
                sources[entry.document],
                output,
                d.start.byte_offset or 0,
                d.byte_count,
                buffer,
                document=str(entry.document),
                record_id=d.primary_id,
            )
            output.write(RECORD_SEPARATOR)
            copied += d.byte_count
        output.write(postamble(root=root))

    log.debug("Stitched %d record(s), %d bytes from %d source(s)", len(entries), copied, len(sources))
    return copied


def publish_atomically(destination: Path, write: Callable[[BinaryIO], object]) -> None:
    """Run *write* against a temp file beside *destination*, then swap it in.

    On any failure the temp file is removed and *destination* is untouched.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{destination.name}.", suffix=".tmp", dir=str(destination.parent),
    )
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as fh:
            write(fh)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(str(tmp), str(destination))
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
