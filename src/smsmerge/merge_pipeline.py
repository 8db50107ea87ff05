"""End-to-end merge: extract every document, resolve, stitch, publish.

Phases:
  1. extraction: one worker per document (thread pool). Each worker owns
     its document's file, line index and identity dict; nothing is shared.
  2. barrier   : resolution starts only once every document finished. The
     first extraction failure cancels pending work and aborts the merge.
  3. resolution: right-to-left dedup, then optional date re-sort.
  4. stitching : verbatim copy into a temp file, atomically swapped into
     place on success.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from smsmerge.extractor import DEFAULT_PARSE_CHUNK, DocumentExtraction, build_document_index
from smsmerge.line_index import DEFAULT_CHUNK_SIZE
from smsmerge.merge_resolver import resolve, sort_by_timestamp, summarize
from smsmerge.record_types import MergedEntry, RecordPredicate, accept_all
from smsmerge.stitcher import (
    DEFAULT_COPY_BUFFER,
    DEFAULT_OUTPUT_ROOT,
    SourceOpener,
    open_source,
    publish_atomically,
    write_merged,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MergeOptions:
    """Tunables for one merge run."""

    include: RecordPredicate = accept_all
    reorder_by_date: bool = False
    workers: int = 4
    output_root: str = DEFAULT_OUTPUT_ROOT
    line_chunk_size: int = DEFAULT_CHUNK_SIZE
    parse_chunk_size: int = DEFAULT_PARSE_CHUNK
    copy_buffer_size: int = DEFAULT_COPY_BUFFER

    def __post_init__(self) -> None:
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "filtered": self.include is not accept_all,
            "reorder_by_date": self.reorder_by_date,
            "workers": self.workers,
            "output_root": self.output_root,
        }


@dataclass(frozen=True, slots=True)
class MergeReport:
    """What a merge run produced."""

    output_path: Path | None
    entries: list[MergedEntry]
    extractions: list[DocumentExtraction]
    bytes_copied: int = 0
    timings_sec: dict[str, float] = field(default_factory=dict[str, float])

    @property
    def summary(self) -> dict[str, dict[str, int]]:
        return summarize(self.entries)

    def per_document(self) -> dict[str, Any]:
        return {str(x.document): x.stats.to_dict() for x in self.extractions}

    def to_dict(self) -> dict[str, Any]:
        return {
            "output_path": str(self.output_path) if self.output_path else None,
            "records_written": len(self.entries),
            "bytes_copied": self.bytes_copied,
            "summary": self.summary,
            "per_document": self.per_document(),
            "timings_sec": self.timings_sec,
        }


def extract_all(
    paths: Sequence[Path],
    *,
    include: RecordPredicate = accept_all,
    workers: int = 4,
    line_chunk_size: int = DEFAULT_CHUNK_SIZE,
    parse_chunk_size: int = DEFAULT_PARSE_CHUNK,
) -> list[DocumentExtraction]:
    """Extract every document; results are aligned with *paths*.

    All-or-nothing: any failure propagates and no partial list is returned.
    """
    kwargs: dict[str, Any] = {
        "include": include,
        "line_chunk_size": line_chunk_size,
        "parse_chunk_size": parse_chunk_size,
    }
    if workers <= 1 or len(paths) <= 1:
        return [build_document_index(p, **kwargs) for p in paths]

    results: list[DocumentExtraction | None] = [None] * len(paths)
    with ThreadPoolExecutor(max_workers=min(workers, len(paths))) as pool:
        futures = {
            pool.submit(build_document_index, p, **kwargs): i
            for i, p in enumerate(paths)
        }
        try:
            for future in as_completed(futures):
                results[futures[future]] = future.result()
        except BaseException:
            for f in futures:
                f.cancel()
            raise

    return [r for r in results if r is not None]


def merge_documents(
    paths: Sequence[Path],
    options: MergeOptions | None = None,
) -> tuple[list[MergedEntry], list[DocumentExtraction]]:
    """Extract and resolve *paths* (no output written)."""
    options = options or MergeOptions()
    extractions = extract_all(
        paths,
        include=options.include,
        workers=options.workers,
        line_chunk_size=options.line_chunk_size,
        parse_chunk_size=options.parse_chunk_size,
    )
    entries = resolve([x.document for x in extractions], [x.index for x in extractions])
    if options.reorder_by_date:
        log.info("Reordering merged items by the date they were received")
        entries = sort_by_timestamp(entries)
    return entries, extractions


def run_merge(
    paths: Sequence[Path],
    output_path: Path,
    options: MergeOptions | None = None,
    *,
    open_document: SourceOpener = open_source,
) -> MergeReport:
    """Merge *paths* into *output_path*, published only on full success."""
    options = options or MergeOptions()
    t0 = time.monotonic()
    entries, extractions = merge_documents(paths, options)
    t_resolved = time.monotonic()

    copied = 0

    def _write(fh: Any) -> None:
        nonlocal copied
        copied = write_merged(
            fh,
            entries,
            open_document=open_document,
            root=options.output_root,
            buffer_size=options.copy_buffer_size,
        )

    publish_atomically(output_path, _write)
    t_done = time.monotonic()
    log.info("Wrote %d record(s) to %s", len(entries), output_path)

    return MergeReport(
        output_path=output_path,
        entries=entries,
        extractions=extractions,
        bytes_copied=copied,
        timings_sec={
            "extract_and_resolve": round(t_resolved - t0, 4),
            "stitch": round(t_done - t_resolved, 4),
            "total": round(t_done - t0, 4),
        },
    )


def format_summary(summary: dict[str, dict[str, int]]) -> list[str]:
    """Human-readable merged-file analysis lines."""
    lines = ["Merged file analysis:"]
    for document, kinds in summary.items():
        lines.append(f"\t{document}")
        for kind, count in kinds.items():
            lines.append(f"\t\t{count:,} {kind}(s)")
    return lines
