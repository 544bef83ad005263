"""Failed item tracking."""

from __future__ import annotations

import asyncio

from catalogcrawl.errors import ClassifiedError, ErrorType
from catalogcrawl.failures import FailureTracker


def err(message: str, kind: ErrorType = ErrorType.NETWORK) -> ClassifiedError:
    return ClassifiedError(kind, message, attempts=3)


def test_recording_same_index_keeps_latest_error(store):
    tracker = FailureTracker(store)

    async def _run():
        await tracker.record_failure("serie-1", 4, err("timeout"))
        await tracker.record_failure("serie-1", 4, err("HTTP 503", ErrorType.SERVER_ERROR))

    asyncio.run(_run())
    failures = tracker.list_failures("serie-1")
    assert len(failures) == 1
    assert failures[0].index == 4
    assert failures[0].error == "HTTP 503"
    assert failures[0].error_type == "SERVER_ERROR"


def test_record_many_is_ordered_by_index(store):
    tracker = FailureTracker(store)
    asyncio.run(tracker.record_many("serie-1", {9: err("a"), 2: err("b"), 5: err("c")}))
    assert [f.index for f in tracker.list_failures("serie-1")] == [2, 5, 9]
    assert tracker.failed_indices("serie-1") == {2, 5, 9}


def test_resolve_drops_recovered_and_clears_when_empty(store):
    tracker = FailureTracker(store)

    async def _run():
        await tracker.record_many("serie-1", {2: err("a"), 5: err("b")})
        partial = await tracker.resolve("serie-1", [2, 7])
        rest = await tracker.resolve("serie-1", [5])
        return partial, rest

    partial, rest = asyncio.run(_run())
    assert [f.index for f in partial] == [5]
    assert rest == []
    assert tracker.list_failures("serie-1") == []


def test_resolve_without_failures_file_writes_nothing(store):
    tracker = FailureTracker(store)
    assert asyncio.run(tracker.resolve("serie-1", [1, 2])) == []
    assert not store.failed_path("serie-1").exists()


def test_clear(store):
    tracker = FailureTracker(store)

    async def _run():
        await tracker.record_many("serie-1", {1: err("a")})
        await tracker.clear("serie-1")

    asyncio.run(_run())
    assert tracker.list_failures("serie-1") == []
