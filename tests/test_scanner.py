import datetime as dt
import itertools

import pytest

from conftest import UTC
from fi_scanner.scanner import ObjectStoreScanner, file_type, is_target_file, parse_key
from fi_scanner.store import ObjectStoreClient

START = dt.datetime(2024, 1, 1, tzinfo=UTC)
END = dt.datetime(2024, 1, 31, 23, 59, 59, tzinfo=UTC)
INSIDE = dt.datetime(2024, 1, 15, tzinfo=UTC)
OUTSIDE = dt.datetime(2023, 12, 15, tzinfo=UTC)


def _scanner(settings, fake_s3, clock=None, page_size=None):
    client = ObjectStoreClient(settings, s3_client=fake_s3)
    if page_size is not None:
        client.page_size = page_size
    if clock is None:
        return ObjectStoreScanner(client, settings)
    return ObjectStoreScanner(client, settings, clock=clock)


@pytest.mark.parametrize(
    ("key", "expected"),
    [
        ("planning-docs/P1/letter.pdf", ("P1", "letter.pdf")),
        ("planning-docs/P1/sub/dir/letter.pdf", ("P1", "letter.pdf")),
        ("planning-docs/letter.pdf", None),
        ("planning-docs/P1/", None),
        ("other/P1/letter.pdf", None),
    ],
)
def test_parse_key(key, expected):
    assert parse_key(key, "planning-docs/") == expected


def test_is_target_file():
    extensions = [".pdf", ".docx"]

    assert is_target_file("Letter.PDF", extensions)
    assert is_target_file("notes.docx", extensions)
    assert not is_target_file("drawing.dwg", extensions)
    assert not is_target_file("docfiles.txt", extensions + [".txt"])
    assert not is_target_file(".hidden.pdf", extensions)
    assert not is_target_file("README", extensions)


def test_file_type():
    assert file_type("a.pdf") == "pdf"
    assert file_type("a.DOCX") == "document"
    assert file_type("a.xyz") == "other"
    assert file_type("") == "unknown"


def test_streams_only_objects_inside_window(settings, fake_s3):
    fake_s3.put("planning-docs/P1/a.pdf", INSIDE)
    fake_s3.put("planning-docs/P1/b.pdf", OUTSIDE)
    fake_s3.put("planning-docs/P2/c.docx", END)
    seen = []

    stats = _scanner(settings, fake_s3).stream_since(START, END, seen.append)

    assert [d.storage_key for d in seen] == ["planning-docs/P1/a.pdf", "planning-docs/P2/c.docx"]
    assert seen[0].project_id == "P1"
    assert seen[0].file_name == "a.pdf"
    assert seen[1].file_type == "document"
    assert stats.total_scanned == 3
    assert stats.total_matched == 2
    assert stats.stopped_reason == "exhausted"
    assert not stats.partial


def test_filters_sentinels_and_extensions(settings, fake_s3):
    fake_s3.put("planning-docs/P1/docfiles.txt", INSIDE)
    fake_s3.put("planning-docs/P1/drawing.dwg", INSIDE)
    fake_s3.put("planning-docs/stray.pdf", INSIDE)
    fake_s3.put("planning-docs/P1/keep.pdf", INSIDE)
    seen = []

    _scanner(settings, fake_s3).stream_since(START, END, seen.append)

    assert [d.file_name for d in seen] == ["keep.pdf"]


def test_follows_pagination_in_key_order(settings, fake_s3):
    for i in range(5):
        fake_s3.put(f"planning-docs/P{i}/doc.pdf", INSIDE)
    seen = []

    stats = _scanner(settings, fake_s3, page_size=2).stream_since(START, END, seen.append)

    assert [d.project_id for d in seen] == ["P0", "P1", "P2", "P3", "P4"]
    assert stats.pages == 3
    assert [c["ContinuationToken"] for c in fake_s3.list_calls] == [
        None,
        "planning-docs/P1/doc.pdf",
        "planning-docs/P3/doc.pdf",
    ]


def test_start_after_skips_already_processed_keys(settings, fake_s3):
    for i in range(4):
        fake_s3.put(f"planning-docs/P{i}/doc.pdf", INSIDE)
    seen = []

    _scanner(settings, fake_s3).stream_since(
        START, END, seen.append, start_after="planning-docs/P1/doc.pdf"
    )

    assert [d.project_id for d in seen] == ["P2", "P3"]
    assert fake_s3.list_calls[0]["StartAfter"] == "planning-docs/P1/doc.pdf"


def test_max_objects_returns_partial_stats(settings, fake_s3):
    for i in range(5):
        fake_s3.put(f"planning-docs/P{i}/doc.pdf", INSIDE)
    seen = []

    stats = _scanner(settings, fake_s3).stream_since(START, END, seen.append, max_objects=3)

    assert len(seen) == 3
    assert stats.total_scanned == 3
    assert stats.stopped_reason == "max_objects"
    assert stats.partial


def test_timeout_returns_partial_stats(settings, fake_s3):
    for i in range(5):
        fake_s3.put(f"planning-docs/P{i}/doc.pdf", INSIDE)
    ticks = itertools.count()
    seen = []

    stats = _scanner(settings, fake_s3, clock=lambda: next(ticks)).stream_since(
        START, END, seen.append, timeout_seconds=2.5
    )

    assert len(seen) == 2
    assert stats.stopped_reason == "timeout"


def test_consumer_exception_stops_the_scan(settings, fake_s3):
    for i in range(3):
        fake_s3.put(f"planning-docs/P{i}/doc.pdf", INSIDE)
    seen = []

    def on_document(document):
        seen.append(document)
        raise RuntimeError("stop")

    with pytest.raises(RuntimeError):
        _scanner(settings, fake_s3).stream_since(START, END, on_document)

    assert len(seen) == 1


def test_count_since_uses_the_same_filter(settings, fake_s3):
    fake_s3.put("planning-docs/P1/a.pdf", INSIDE)
    fake_s3.put("planning-docs/P1/b.pdf", OUTSIDE)
    fake_s3.put("planning-docs/P2/c.docx", INSIDE)
    fake_s3.put("planning-docs/P2/docfiles.txt", INSIDE)

    scanner = _scanner(settings, fake_s3)

    assert scanner.count_since(START, END) == 2
    assert scanner.count_since(START, END, start_after="planning-docs/P1/b.pdf") == 1
