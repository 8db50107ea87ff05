"""End-to-end tests for smsmerge.merge_pipeline."""
from __future__ import annotations

import xml.etree.ElementTree as ET
from pathlib import Path

import pytest

from smsmerge.extractor import extract_records
from smsmerge.merge_pipeline import (
    MergeOptions,
    extract_all,
    format_summary,
    merge_documents,
    run_merge,
)
from smsmerge.record_filters import address_filter
from smsmerge.record_types import MalformedDocumentError, UnsupportedRootError

HELLO = (
    '<sms protocol="0" address="+61412345678" date="1000" type="1" '
    'body="Hello" date_sent="999" />'
)
EARLY = '<sms address="+61499999999" date="500" type="2" body="first" />'
MMS_MID = (
    '<mms date="2000" msg_box="1" address="0412345678" m_id="abc">\n'
    '    <parts><part seq="0" text="héllo" /></parts>\n'
    "  </mms>"
)
MMS_BOTH = (
    '<mms date="2000" msg_box="1" address="0412345678" m_id="abc" tr_id="T1">\n'
    '    <parts><part seq="0" text="héllo" /></parts>\n'
    "  </mms>"
)
MMS_TRID = (
    '<mms date="2000" msg_box="1" address="0412345678" tr_id="T1">'
    '<parts><part seq="0" text="héllo" /></parts></mms>'
)
LATE = '<sms address="+61412345678" date="4000" type="1" body="Ünïcödé ✓" />'


def _doc(*records: str, newline: str = "\n") -> bytes:
    body = "".join(f"  {r}\n" for r in records)
    text = (
        "<?xml version='1.0' encoding='UTF-8' standalone='yes' ?>\n"
        f'<smses count="{len(records)}">\n{body}</smses>\n'
    )
    return text.replace("\n", newline).encode("utf-8")


def _write(tmp_path: Path, name: str, data: bytes) -> Path:
    path = tmp_path / name
    path.write_bytes(data)
    return path


def _records(path: Path) -> list[bytes]:
    data = path.read_bytes()
    return [data[d.start.byte_offset:d.end.byte_offset] for d in extract_records(path)]


class TestMergeOptions:
    def test_defaults(self) -> None:
        opts = MergeOptions()
        assert opts.workers == 4
        assert opts.to_dict()["filtered"] is False

    def test_rejects_zero_workers(self) -> None:
        with pytest.raises(ValueError):
            MergeOptions(workers=0)


class TestRunMerge:
    def test_identical_sms_taken_once_from_last_document(self, tmp_path: Path) -> None:
        a = _write(tmp_path, "a.xml", _doc(HELLO, EARLY))
        b = _write(tmp_path, "b.xml", _doc(HELLO, LATE, newline="\r\n"))
        out = tmp_path / "merged.xml"

        report = run_merge([a, b], out)

        assert len(report.entries) == 3
        assert [e.document for e in report.entries] == [b, b, a]
        assert _records(out) == [HELLO.encode(), LATE.encode(), EARLY.encode()]
        assert report.summary == {str(b): {"sms": 2}, str(a): {"sms": 1}}
        assert set(report.timings_sec) == {"extract_and_resolve", "stitch", "total"}

    def test_output_is_well_formed_and_counted(self, tmp_path: Path) -> None:
        a = _write(tmp_path, "a.xml", _doc(HELLO, MMS_MID, EARLY))
        out = tmp_path / "merged.xml"
        run_merge([a], out)

        root = ET.parse(out).getroot()
        assert root.tag == "smses"
        assert root.get("count") == "3"
        assert root.get("type") == "full"
        assert [child.tag for child in root] == ["sms", "mms", "sms"]

    def test_copied_bytes_match_source_spans(self, tmp_path: Path) -> None:
        a = _write(tmp_path, "a.xml", _doc(HELLO, MMS_BOTH, LATE, newline="\r"))
        out = tmp_path / "merged.xml"
        report = run_merge([a], out)
        assert _records(out) == _records(a)
        assert report.bytes_copied == sum(len(r) for r in _records(a))

    def test_merged_output_can_be_merged_again(self, tmp_path: Path) -> None:
        a = _write(tmp_path, "a.xml", _doc(HELLO, EARLY))
        b = _write(tmp_path, "b.xml", _doc(MMS_MID, LATE))
        first = tmp_path / "first.xml"
        run_merge([a, b], first)

        second = tmp_path / "second.xml"
        report = run_merge([a, first], second)
        assert len(report.entries) == 4
        assert all(e.document == first for e in report.entries)

    def test_mms_spelled_differently_are_both_kept(self, tmp_path: Path) -> None:
        a = _write(tmp_path, "a.xml", _doc(MMS_MID))
        b = _write(tmp_path, "b.xml", _doc(MMS_TRID))
        report = run_merge([a, b], tmp_path / "out.xml")
        assert len(report.entries) == 2

    def test_mms_alternate_spelling_deduplicated(self, tmp_path: Path) -> None:
        a = _write(tmp_path, "a.xml", _doc(MMS_BOTH))
        b = _write(tmp_path, "b.xml", _doc(MMS_TRID))
        out = tmp_path / "out.xml"
        report = run_merge([a, b], out)
        assert [e.document for e in report.entries] == [b]
        assert _records(out) == [MMS_TRID.encode()]

    def test_reorder_by_date(self, tmp_path: Path) -> None:
        a = _write(tmp_path, "a.xml", _doc(LATE, EARLY))
        b = _write(tmp_path, "b.xml", _doc(MMS_MID, HELLO))
        out = tmp_path / "out.xml"
        report = run_merge([a, b], out, MergeOptions(reorder_by_date=True))
        assert [e.descriptor.timestamp for e in report.entries] == [500, 1000, 2000, 4000]
        assert _records(out)[0] == EARLY.encode()

    def test_address_filter_excludes_from_index_and_output(self, tmp_path: Path) -> None:
        a = _write(tmp_path, "a.xml", _doc(HELLO, MMS_BOTH, EARLY))
        out = tmp_path / "out.xml"
        options = MergeOptions(include=address_filter(["412345678"]))
        report = run_merge([a], out, options)

        assert [e.descriptor.address for e in report.entries] == ["+61412345678", "0412345678"]
        (extraction,) = report.extractions
        assert all("+61499999999" not in key for key in extraction.index)
        assert extraction.stats.records_excluded == 1
        assert EARLY.encode() not in out.read_bytes()

    def test_filter_drops_alternates_too(self, tmp_path: Path) -> None:
        a = _write(tmp_path, "a.xml", _doc(MMS_BOTH))
        report = run_merge([a], tmp_path / "out.xml", MergeOptions(include=address_filter(["nomatch"])))
        assert report.entries == []
        assert report.extractions[0].index == {}

    def test_failure_leaves_no_output(self, tmp_path: Path) -> None:
        a = _write(tmp_path, "a.xml", _doc(HELLO))
        bad = _write(tmp_path, "bad.xml", _doc(HELLO)[:-10])
        out = tmp_path / "out.xml"
        with pytest.raises(MalformedDocumentError):
            run_merge([a, bad], out)
        assert not out.exists()
        assert sorted(p.name for p in tmp_path.iterdir()) == ["a.xml", "bad.xml"]

    def test_failure_keeps_previous_output(self, tmp_path: Path) -> None:
        bad = _write(tmp_path, "bad.xml", b"<calls><call/></calls>")
        out = _write(tmp_path, "out.xml", b"previous")
        with pytest.raises(UnsupportedRootError):
            run_merge([bad], out)
        assert out.read_bytes() == b"previous"

    def test_no_inputs_writes_empty_container(self, tmp_path: Path) -> None:
        out = tmp_path / "out.xml"
        report = run_merge([], out)
        assert report.entries == []
        assert ET.parse(out).getroot().get("count") == "0"


class TestMergeDocuments:
    def test_single_document_equals_direct_extraction(self, tmp_path: Path) -> None:
        a = _write(tmp_path, "a.xml", _doc(HELLO, MMS_BOTH, EARLY))
        entries, _ = merge_documents([a])
        assert [e.descriptor for e in entries] == list(extract_records(a))

    def test_repeated_record_within_document_keeps_later_copy(self, tmp_path: Path) -> None:
        a = _write(tmp_path, "a.xml", _doc(HELLO, MMS_BOTH, EARLY, HELLO))
        entries, extractions = merge_documents([a])
        direct = list(extract_records(a))
        # the key keeps its first slot but points at the later record
        assert [e.descriptor for e in entries] == [direct[3], direct[1], direct[2]]
        assert extractions[0].stats.duplicate_keys == 1

    @pytest.mark.parametrize("workers", [1, 2, 8])
    def test_worker_count_does_not_change_result(self, tmp_path: Path, workers: int) -> None:
        paths = [
            _write(tmp_path, "a.xml", _doc(HELLO, EARLY)),
            _write(tmp_path, "b.xml", _doc(MMS_MID, HELLO)),
            _write(tmp_path, "c.xml", _doc(LATE, MMS_TRID)),
        ]
        reference, _ = merge_documents(paths, MergeOptions(workers=1))
        entries, extractions = merge_documents(paths, MergeOptions(workers=workers))
        assert entries == reference
        assert [x.document for x in extractions] == paths

    def test_extract_all_propagates_first_failure(self, tmp_path: Path) -> None:
        paths = [
            _write(tmp_path, "a.xml", _doc(HELLO)),
            _write(tmp_path, "bad.xml", b"<smses><sms>"),
        ]
        with pytest.raises(MalformedDocumentError):
            extract_all(paths, workers=2)


def test_format_summary() -> None:
    lines = format_summary({"b.xml": {"sms": 1200, "mms": 3}})
    assert lines == ["Merged file analysis:", "\tb.xml", "\t\t1,200 sms(s)", "\t\t3 mms(s)"]
