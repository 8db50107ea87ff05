"""Cross-document deduplication with right-to-left precedence.

The last document is the most authoritative. Its records are all kept;
each earlier document only contributes records whose primary id and every
alternate id are still unclaimed. Accepting a record claims all of its
spellings, so a record known as ``X`` in one file and as ``Y`` (with ``X``
as an alternate) in another is only kept once.

Output order is the insertion order: grouped by document, most
authoritative first, each group in its document's order.
``sort_by_timestamp`` re-sorts stably by date when requested.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

from smsmerge.record_types import MergeContractError, MergedEntry, PerDocumentIndex, primaries

log = logging.getLogger(__name__)


def resolve(
    documents: Sequence[Path],
    indexes: Sequence[PerDocumentIndex],
) -> list[MergedEntry]:
    """Merge per-document indexes into one deduplicated result.

    *indexes* must be aligned 1:1 with *documents*; a mismatch raises
    MergeContractError.
    """
    if len(documents) != len(indexes):
        raise MergeContractError(
            f"Mismatch of arguments; working with {len(documents)} file(s) and "
            f"{len(indexes)} mappings for those files. These should be the same."
        )
    if not documents:
        return []

    last_doc, last_index = documents[-1], indexes[-1]
    results: list[MergedEntry] = []
    for d in primaries(last_index):
        d.require_positive_range(str(last_doc))
        results.append(MergedEntry(last_doc, d))
    claimed: set[str] = set(last_index.keys())

    for doc, index in zip(reversed(documents[:-1]), reversed(indexes[:-1]), strict=True):
        accepted = 0
        skipped = 0
        for d in primaries(index):
            ids = d.all_ids()
            if any(i in claimed for i in ids):
                skipped += 1
                continue
            d.require_positive_range(str(doc))
            results.append(MergedEntry(doc, d))
            claimed.update(ids)
            accepted += 1
        log.debug("%s: %d record(s) taken, %d duplicate(s) skipped", doc, accepted, skipped)

    return results


def sort_by_timestamp(entries: Sequence[MergedEntry]) -> list[MergedEntry]:
    """Stable ascending sort by record timestamp."""
    return sorted(entries, key=lambda e: e.descriptor.timestamp)


def summarize(entries: Sequence[MergedEntry]) -> dict[str, dict[str, int]]:
    """Per source document, per record kind, how many records were kept."""
    summary: dict[str, dict[str, int]] = {}
    for entry in entries:
        kinds = summary.setdefault(str(entry.document), {})
        kinds[entry.descriptor.kind] = kinds.get(entry.descriptor.kind, 0) + 1
    return summary
