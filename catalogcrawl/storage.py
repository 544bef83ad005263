"""
Persisted layout and per-file write serialization.

Layout under ``data_dir``::

    target_list.json
    targets/<slug>/detail.json
    targets/<slug>/item_index.json
    targets/<slug>/items/item_<n>.json
    targets/<slug>/failed_items.json
    checkpoint.json
    run.lock
    stats.json

Every read-modify-write of a shared file goes through ``PathLocks``: one
``asyncio.Lock`` per path, so concurrent completions for the same target are
applied one after another in arrival order.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from .models import (
    CrawlTarget,
    FailedItem,
    ItemIndexEntry,
    ItemRecord,
    TargetDetail,
    utc_now,
)

logger = logging.getLogger(__name__)

ITEM_FILE = re.compile(r"^item_(\d+)\.json$")


# =============================================================================
# FILE PRIMITIVES
# =============================================================================

def write_json_atomic(path: Path, payload: Any) -> None:
    """Write JSON to a temp file in the same directory, then rename over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp)
        raise


def read_json(path: Path, default: Any = None) -> Any:
    """Read JSON from ``path``; ``default`` when the file does not exist."""
    try:
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return default


class PathLocks:
    """
    Mutual exclusion keyed by file path.

    ``asyncio.Lock`` wakes waiters in FIFO order, so writers for the same path
    are serialized in the order they asked.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, path: Path) -> asyncio.Lock:
        key = str(Path(path).resolve())
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


# =============================================================================
# STORE
# =============================================================================

class Store:
    """Owns every file under the data directory."""

    def __init__(self, root: Path | str):
        self.root = Path(root)
        self.locks = PathLocks()

    # --- Paths ---

    @property
    def target_list_path(self) -> Path:
        return self.root / "target_list.json"

    @property
    def checkpoint_path(self) -> Path:
        return self.root / "checkpoint.json"

    @property
    def lock_path(self) -> Path:
        return self.root / "run.lock"

    @property
    def stats_path(self) -> Path:
        return self.root / "stats.json"

    @property
    def log_dir(self) -> Path:
        return self.root / "logs"

    def target_dir(self, slug: str) -> Path:
        return self.root / "targets" / slug

    def detail_path(self, slug: str) -> Path:
        return self.target_dir(slug) / "detail.json"

    def item_index_path(self, slug: str) -> Path:
        return self.target_dir(slug) / "item_index.json"

    def items_dir(self, slug: str) -> Path:
        return self.target_dir(slug) / "items"

    def item_path(self, slug: str, index: int) -> Path:
        return self.items_dir(slug) / f"item_{index}.json"

    def failed_path(self, slug: str) -> Path:
        return self.target_dir(slug) / "failed_items.json"

    def ensure(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    # --- Target list ---

    def load_targets(self) -> list[CrawlTarget]:
        data = read_json(self.target_list_path, default=None) or {}
        return [CrawlTarget.from_dict(t) for t in data.get("targets", [])]

    async def save_targets(self, targets: list[CrawlTarget], **extra: Any) -> None:
        payload = {
            "total": len(targets),
            "targets": [t.to_dict() for t in targets],
            "lastUpdated": utc_now(),
        }
        payload.update(extra)
        async with self.locks.lock_for(self.target_list_path):
            write_json_atomic(self.target_list_path, payload)

    def known_slugs(self) -> list[str]:
        """Slugs that have a directory under ``targets/``."""
        base = self.root / "targets"
        if not base.is_dir():
            return []
        return sorted(p.name for p in base.iterdir() if p.is_dir())

    # --- Detail / cursor ---

    def load_detail(self, slug: str) -> Optional[TargetDetail]:
        data = read_json(self.detail_path(slug), default=None)
        if data is None:
            return None
        return TargetDetail.from_dict(data)

    async def save_detail(self, detail: TargetDetail) -> None:
        path = self.detail_path(detail.slug)
        async with self.locks.lock_for(path):
            write_json_atomic(path, detail.to_dict())

    async def update_detail(
        self,
        slug: str,
        mutate: Callable[[TargetDetail], None],
    ) -> TargetDetail:
        """Read-modify-write ``detail.json`` while holding its path lock."""
        path = self.detail_path(slug)
        async with self.locks.lock_for(path):
            data = read_json(path, default=None)
            if data is None:
                raise FileNotFoundError(f"No detail record for {slug}: {path}")
            detail = TargetDetail.from_dict(data)
            mutate(detail)
            detail.scraped_count = max(0, min(detail.scraped_count, detail.total_count))
            detail.last_updated = utc_now()
            write_json_atomic(path, detail.to_dict())
            return detail

    async def advance_cursor(self, slug: str, settled: Iterable[int]) -> TargetDetail:
        """
        Move ``scraped_count`` forward over the contiguous run of settled indices.

        An index is settled when its item file is persisted or it has been
        recorded as failed. The cursor never moves backwards and never
        passes ``total_count``.
        """
        settled_set = set(settled)

        def _advance(detail: TargetDetail) -> None:
            cursor = detail.scraped_count
            while cursor + 1 <= detail.total_count and (cursor + 1) in settled_set:
                cursor += 1
            detail.scraped_count = cursor

        return await self.update_detail(slug, _advance)

    async def set_cursor(self, slug: str, value: int) -> TargetDetail:
        """Overwrite the cursor; only the verification pass does this."""
        def _set(detail: TargetDetail) -> None:
            detail.scraped_count = value

        return await self.update_detail(slug, _set)

    # --- Item index ---

    def load_item_index(self, slug: str) -> Optional[list[ItemIndexEntry]]:
        data = read_json(self.item_index_path(slug), default=None)
        if data is None:
            return None
        return [ItemIndexEntry(index=int(e["index"]), title=str(e.get("title", ""))) for e in data]

    async def save_item_index(self, slug: str, entries: list[ItemIndexEntry]) -> None:
        path = self.item_index_path(slug)
        ordered = sorted(entries, key=lambda e: e.index)
        async with self.locks.lock_for(path):
            write_json_atomic(path, [e.to_dict() for e in ordered])

    # --- Items ---

    def write_item(self, slug: str, record: ItemRecord) -> Path:
        path = self.item_path(slug, record.index)
        write_json_atomic(path, record.to_dict())
        return path

    def item_indices(self, slug: str) -> set[int]:
        """Indices of persisted item files."""
        directory = self.items_dir(slug)
        if not directory.is_dir():
            return set()
        found = set()
        for entry in directory.iterdir():
            match = ITEM_FILE.match(entry.name)
            if match:
                found.add(int(match.group(1)))
        return found

    # --- Failed items ---

    def load_failures(self, slug: str) -> list[FailedItem]:
        data = read_json(self.failed_path(slug), default=None) or []
        return [FailedItem.from_dict(d) for d in data]

    async def update_failures(
        self,
        slug: str,
        mutate: Callable[[dict[int, FailedItem]], None],
    ) -> list[FailedItem]:
        """Read-modify-write ``failed_items.json`` keyed by index, under its path lock."""
        path = self.failed_path(slug)
        async with self.locks.lock_for(path):
            current = {f.index: f for f in self.load_failures(slug)}
            mutate(current)
            ordered = [current[i] for i in sorted(current)]
            write_json_atomic(path, [f.to_dict() for f in ordered])
            return ordered
