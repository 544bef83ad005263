"""Offline cursor verification."""

from __future__ import annotations

import asyncio

from catalogcrawl.errors import ClassifiedError, ErrorType
from catalogcrawl.failures import FailureTracker
from catalogcrawl.verify import missing_jobs, verify_target
from tests.pages import seed_target

URL = "https://example.test/en/serie-1/novel"


def item_url(target_url: str, index: int) -> str:
    return f"{target_url}/chapter-{index}?default=true"


def test_cursor_behind_files_is_corrected(store):
    seed_target(store, "serie-1", URL, total=10, scraped=5, files=range(1, 8))

    report = asyncio.run(verify_target(store, "serie-1"))

    assert report.previous_cursor == 5
    assert report.corrected_cursor == 7
    assert report.applied
    assert report.gaps == []
    assert report.missing == [8, 9, 10]
    assert store.load_detail("serie-1").scraped_count == 7


def test_gap_limits_cursor_to_contiguous_prefix(store):
    seed_target(store, "serie-1", URL, total=10, scraped=7, files=[1, 2, 3, 5, 6, 7])

    report = asyncio.run(verify_target(store, "serie-1"))

    assert report.corrected_cursor == 3
    assert report.gaps == [4]
    assert report.missing == [4, 8, 9, 10]
    assert store.load_detail("serie-1").scraped_count == 3


def test_pending_failure_is_settled_but_reported_as_gap(store):
    seed_target(store, "serie-1", URL, total=5, scraped=5, files=[1, 2, 3, 5])
    tracker = FailureTracker(store)
    asyncio.run(tracker.record_failure("serie-1", 4, ClassifiedError(ErrorType.SERVER_ERROR, "HTTP 503", 3)))

    report = asyncio.run(verify_target(store, "serie-1"))

    assert not report.changed
    assert report.gaps == [4]
    assert report.pending_failures == [4]
    assert not report.complete


def test_dry_run_does_not_write(store):
    seed_target(store, "serie-1", URL, total=10, scraped=5, files=range(1, 8))
    report = asyncio.run(verify_target(store, "serie-1", apply=False))
    assert report.changed and not report.applied
    assert store.load_detail("serie-1").scraped_count == 5


def test_orphans_and_empty_index(store):
    seed_target(store, "serie-1", URL, total=3, scraped=3, files=[1, 2, 3, 12])
    report = asyncio.run(verify_target(store, "serie-1"))
    assert report.orphans == [12]
    assert report.empty_index
    assert report.complete


def test_missing_jobs_cover_exactly_the_missing_indices(store):
    detail = seed_target(store, "serie-1", URL, total=6, scraped=6, files=[1, 3, 4])
    report = asyncio.run(verify_target(store, "serie-1"))
    jobs = missing_jobs(report, detail, item_url)
    assert [j.index for j in jobs] == [2, 5, 6]
    assert jobs[0].url == f"{URL}/chapter-2?default=true"


def test_unknown_target_returns_none(store):
    assert asyncio.run(verify_target(store, "serie-404")) is None
