#!/usr/bin/env python3
"""Merge SMS/MMS backup files into one, dropping duplicate messages.

Order matters: when a message exists in more than one input it is taken
from the last file specified. Each kept message is copied byte-for-byte
from its source file.

Usage::

    python3 scripts/merge_backups.py -i old.xml,new.xml -o merged.xml
    python3 scripts/merge_backups.py -i a.xml -i b.xml -o merged.xml --force \\
        --must-match-address 412345678 --reorder-items-by-date --json
"""
from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from smsmerge.io_utils import dumps
from smsmerge.merge_pipeline import MergeOptions, format_summary, run_merge
from smsmerge.record_filters import address_filter, load_filter_file
from smsmerge.record_types import MergeContractError, MergeError, RecordPredicate, accept_all
from smsmerge.run_manifest import (
    build_manifest,
    describe_inputs,
    generate_run_id,
    git_commit_hash,
    write_manifest,
)

log = logging.getLogger("merge_backups")

EXIT_PRECONDITION = 1
EXIT_MERGE_FAILED = 3


def _split_csv(values: list[str] | None) -> list[str]:
    """Flatten repeated and comma-separated option values."""
    out: list[str] = []
    for value in values or []:
        out.extend(v.strip() for v in value.split(",") if v.strip())
    return out


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Merge SMS Backup & Restore files, removing duplicate messages.",
    )
    parser.add_argument(
        "-i", "--input-file", action="append", required=True, dest="input_files",
        help=(
            "Files to merge. Note, order matters. When a message exists in more "
            "than one file it'll be taken from the last file specified. Repeat "
            "the option or separate multiple files with a comma (,)"
        ),
    )
    parser.add_argument(
        "-o", "--output-file", type=Path, required=True,
        help="Output file to write to",
    )
    parser.add_argument(
        "-f", "--force", action="store_true",
        help="Overwrite the output file if it already exists",
    )
    parser.add_argument(
        "--must-match-address", action="append", default=None,
        help=(
            "Only keep messages to/from an address containing one of these values. "
            "MMS and SMS tend to use different formats (with or without the country "
            "code), so prefer a portion of the number: '412345678' rather than "
            "'+61412345678'"
        ),
    )
    parser.add_argument(
        "--filter-file", type=Path, default=None,
        help="JSON address filter expression ({'op': 'or', 'children': [{'value': ...}]})",
    )
    parser.add_argument(
        "--reorder-items-by-date", action="store_true",
        help=(
            "Order the merged file by message date instead of grouping SMS before "
            "MMS; gives a more accurate progress estimate when restoring"
        ),
    )
    parser.add_argument(
        "--workers", type=int, default=4,
        help="Number of files analysed in parallel (default: 4)",
    )
    parser.add_argument(
        "--manifest", nargs="?", const="", default=None,
        help="Write a run manifest with input sizes and SHA-256 fingerprints "
        "(default path: <output>.manifest.json)",
    )
    parser.add_argument("--json", action="store_true", help="Print a JSON report to stdout")
    parser.add_argument("--verbose", "-v", action="store_true")
    return parser


def _build_predicate(args: argparse.Namespace) -> RecordPredicate:
    addresses = _split_csv(args.must_match_address)
    if args.filter_file is not None and addresses:
        raise ValueError("--filter-file and --must-match-address are mutually exclusive")
    if args.filter_file is not None:
        return load_filter_file(args.filter_file)
    if addresses:
        return address_filter(addresses)
    return accept_all


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    inputs = [Path(p) for p in _split_csv(args.input_files)]
    output_path: Path = args.output_file

    if output_path.exists():
        if not args.force:
            log.error(
                "Output file, %s, already exists. Aborting. Specify --force to override",
                output_path,
            )
            return EXIT_PRECONDITION
        log.warning("Output file, %s, already exists. Will be overridden", output_path)

    for path in inputs:
        if not path.is_file():
            log.error("Input file, %s, does not exist. Aborting.", path)
            return EXIT_PRECONDITION

    try:
        predicate = _build_predicate(args)
        options = MergeOptions(
            include=predicate,
            reorder_by_date=args.reorder_items_by_date,
            workers=args.workers,
        )
    except (OSError, ValueError) as exc:
        log.error("%s", exc)
        return EXIT_PRECONDITION

    run_id = generate_run_id()
    t0 = time.time()
    try:
        report = run_merge(inputs, output_path, options)
    except (MergeError, MergeContractError, OSError) as exc:
        log.error("Merge failed, %s was not written: %s", output_path, exc)
        return EXIT_MERGE_FAILED

    for line in format_summary(report.summary):
        log.info("%s", line)

    payload = report.to_dict()
    payload["run_id"] = run_id
    if args.manifest is not None:
        manifest = build_manifest(
            run_id=run_id,
            output_path=output_path,
            inputs=describe_inputs(inputs, fingerprint=True),
            records_written=len(report.entries),
            per_document=report.per_document(),
            summary=report.summary,
            timings_sec={**report.timings_sec, "wall": round(time.time() - t0, 4)},
            options=options.to_dict(),
            git_commit=git_commit_hash(search_from=ROOT),
        )
        manifest_path = write_manifest(
            output_path, manifest, Path(args.manifest) if args.manifest else None,
        )
        payload["manifest_path"] = str(manifest_path)
        log.info("Manifest written to %s", manifest_path)

    if args.json:
        sys.stdout.write(dumps(payload).decode("utf-8") + "\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
