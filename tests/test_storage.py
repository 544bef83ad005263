"""Persisted layout, atomic writes and per-path serialization."""

from __future__ import annotations

import asyncio
import json

from catalogcrawl.models import CrawlTarget, ItemIndexEntry, ItemRecord
from catalogcrawl.storage import PathLocks, read_json, write_json_atomic
from tests.pages import seed_target


def test_write_json_atomic_leaves_no_temp_files(tmp_path):
    path = tmp_path / "nested" / "data.json"
    write_json_atomic(path, {"a": 1})
    write_json_atomic(path, {"a": 2, "text": "naïve"})

    assert json.loads(path.read_text(encoding="utf-8")) == {"a": 2, "text": "naïve"}
    assert [p.name for p in path.parent.iterdir()] == ["data.json"]


def test_read_json_default_for_missing_file(tmp_path):
    assert read_json(tmp_path / "absent.json", default=[]) == []


def test_path_locks_are_keyed_by_resolved_path(tmp_path):
    locks = PathLocks()
    a = locks.lock_for(tmp_path / "x.json")
    b = locks.lock_for(tmp_path / "sub" / ".." / "x.json")
    c = locks.lock_for(tmp_path / "y.json")
    assert a is b
    assert a is not c
    assert len(locks) == 2


def test_concurrent_detail_updates_are_serialized(store):
    seed_target(store, "serie-1", "https://example.test/serie-1", total=10, scraped=0)

    async def bump():
        def _mutate(detail):
            detail.metadata["hits"] = detail.metadata.get("hits", 0) + 1
        await store.update_detail("serie-1", _mutate)

    async def _run():
        await asyncio.gather(*(bump() for _ in range(25)))

    asyncio.run(_run())
    assert store.load_detail("serie-1").metadata["hits"] == 25


def test_advance_cursor_moves_over_contiguous_settled_run(store):
    seed_target(store, "serie-1", "https://example.test/serie-1", total=10, scraped=2)

    async def _run():
        first = await store.advance_cursor("serie-1", {3, 4, 6})
        second = await store.advance_cursor("serie-1", set())
        third = await store.advance_cursor("serie-1", set(range(1, 20)))
        return first, second, third

    first, second, third = asyncio.run(_run())
    assert first.scraped_count == 4
    assert second.scraped_count == 4
    assert third.scraped_count == 10


def test_item_indices_ignore_foreign_files(store):
    seed_target(store, "serie-1", "https://example.test/serie-1", total=5, scraped=0, files=[1, 3])
    (store.items_dir("serie-1") / "notes.txt").write_text("x")
    (store.items_dir("serie-1") / "item_x.json").write_text("{}")
    assert store.item_indices("serie-1") == {1, 3}
    assert store.item_indices("serie-404") == set()


def test_item_record_layout(store):
    path = store.write_item("serie-2", ItemRecord(index=7, title="Seven", content="<p>7</p>"))
    assert path == store.root / "targets" / "serie-2" / "items" / "item_7.json"
    assert read_json(path) == {"index": 7, "title": "Seven", "content": "<p>7</p>"}


def test_target_list_round_trip(store):
    targets = [
        CrawlTarget(slug="serie-1", url="https://example.test/serie-1/a", total_items=12, status="ongoing"),
        CrawlTarget(slug="serie-2", url="https://example.test/serie-2/b", needs_refresh=False),
    ]
    asyncio.run(store.save_targets(targets, lastProcessedPage=3))

    raw = read_json(store.target_list_path)
    assert raw["total"] == 2
    assert raw["lastProcessedPage"] == 3
    assert raw["targets"][0]["totalItems"] == 12
    assert store.load_targets() == targets


def test_item_index_is_sorted(store):
    entries = [ItemIndexEntry(3, "c"), ItemIndexEntry(1, "a"), ItemIndexEntry(2, "b")]
    asyncio.run(store.save_item_index("serie-1", entries))
    assert [e.index for e in store.load_item_index("serie-1")] == [1, 2, 3]
