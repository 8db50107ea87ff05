"""Run-manifest utilities for merge reproducibility and comparison."""
from __future__ import annotations

import hashlib
import subprocess
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from smsmerge.io_utils import load_json, save_json

MANIFEST_VERSION = "1.0"
_HASH_CHUNK = 1 << 20


def utc_now_iso() -> str:
    """Return current UTC timestamp in ISO-8601 format."""
    return datetime.now(UTC).isoformat()


def generate_run_id(prefix: str = "merge") -> str:
    """Generate a compact run id suitable for artifact naming."""
    ts = datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")
    return f"{prefix}_{ts}_{uuid4().hex[:8]}"


def default_manifest_path_for_output(output_path: Path) -> Path:
    """Return the sidecar manifest path for a merged output file."""
    return output_path.parent / f"{output_path.name}.manifest.json"


def git_commit_hash(*, search_from: Path | None = None) -> str | None:
    """Best-effort current git commit hash for reproducibility metadata."""
    cwd = (search_from or Path.cwd())
    if cwd.is_file():
        cwd = cwd.parent
    try:
        proc = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        return None
    if proc.returncode != 0:
        return None
    out = proc.stdout.strip()
    return out if out else None


def file_fingerprint(path: Path) -> str:
    """SHA256 of the file contents, read in bounded chunks."""
    h = hashlib.sha256()
    with path.open("rb") as fh:
        while chunk := fh.read(_HASH_CHUNK):
            h.update(chunk)
    return h.hexdigest()


def describe_inputs(paths: Sequence[Path], *, fingerprint: bool = False) -> list[dict[str, Any]]:
    """Size/mtime (and optionally SHA256) for each input, in merge order."""
    rows: list[dict[str, Any]] = []
    for position, path in enumerate(paths):
        stat = path.stat()
        row: dict[str, Any] = {
            "position": position,
            "path": str(path),
            "size_bytes": stat.st_size,
            "mtime_ns": int(stat.st_mtime_ns),
        }
        if fingerprint:
            row["sha256"] = file_fingerprint(path)
        rows.append(row)
    return rows


def build_manifest(
    *,
    run_id: str,
    output_path: Path,
    inputs: list[dict[str, Any]],
    records_written: int,
    per_document: dict[str, Any],
    summary: dict[str, dict[str, int]],
    timings_sec: dict[str, float],
    options: dict[str, Any] | None = None,
    git_commit: str | None = None,
) -> dict[str, Any]:
    """Build canonical manifest payload for one merge run."""
    return {
        "manifest_version": MANIFEST_VERSION,
        "created_at": utc_now_iso(),
        "run_id": run_id,
        "output_path": str(output_path),
        "git_commit": git_commit,
        "inputs": inputs,
        "records_written": int(records_written),
        "per_document": per_document,
        "summary": summary,
        "timings_sec": timings_sec,
        "options": options or {},
    }


def write_manifest(output_path: Path, manifest: dict[str, Any], path: Path | None = None) -> Path:
    """Write *manifest* beside the merged output (or to *path*)."""
    target = path or default_manifest_path_for_output(output_path)
    save_json(manifest, target, pretty=True)
    return target


def load_manifest(path: Path) -> dict[str, Any]:
    """Load a manifest from JSON."""
    data = load_json(path)
    if not isinstance(data, dict):
        raise ValueError(f"Invalid manifest payload in {path}")
    return data


def _kind_totals(manifest: dict[str, Any]) -> dict[str, int]:
    summary = manifest.get("summary", {})
    totals: dict[str, int] = {}
    if not isinstance(summary, dict):
        return totals
    for kinds in summary.values():
        if not isinstance(kinds, dict):
            continue
        for kind, count in kinds.items():
            totals[kind] = totals.get(kind, 0) + int(count or 0)
    return totals


def compare_manifests(
    current: dict[str, Any],
    previous: dict[str, Any],
) -> dict[str, Any]:
    """Compare two manifest payloads and produce deterministic deltas."""
    curr_kinds = _kind_totals(current)
    prev_kinds = _kind_totals(previous)
    keys = sorted(set(curr_kinds) | set(prev_kinds))
    kind_delta = {k: curr_kinds.get(k, 0) - prev_kinds.get(k, 0) for k in keys}

    curr_inputs = [str(r.get("path")) for r in current.get("inputs", []) if isinstance(r, dict)]
    prev_inputs = [str(r.get("path")) for r in previous.get("inputs", []) if isinstance(r, dict)]

    return {
        "current_run_id": current.get("run_id"),
        "previous_run_id": previous.get("run_id"),
        "records_written_delta": int(current.get("records_written", 0) or 0)
        - int(previous.get("records_written", 0) or 0),
        "kind_delta": kind_delta,
        "inputs_added": [p for p in curr_inputs if p not in prev_inputs],
        "inputs_removed": [p for p in prev_inputs if p not in curr_inputs],
        "input_order_changed": [p for p in curr_inputs if p in prev_inputs]
        != [p for p in prev_inputs if p in curr_inputs],
    }
