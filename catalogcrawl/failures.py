"""Per-target record of items that exhausted their retry budget."""

from __future__ import annotations

import logging
from typing import Iterable

from .errors import ClassifiedError
from .models import FailedItem, utc_now
from .storage import Store

logger = logging.getLogger(__name__)


class FailureTracker:
    """
    Reads and writes ``failed_items.json`` for each target.

    Records are keyed by index: recording the same index again replaces the
    error and refreshes the timestamp instead of adding a duplicate.
    """

    def __init__(self, store: Store):
        self.store = store

    async def record_failure(self, slug: str, index: int, error: ClassifiedError) -> None:
        await self.record_many(slug, {index: error})

    async def record_many(self, slug: str, errors: dict[int, ClassifiedError]) -> list[FailedItem]:
        """Record a batch's failures in a single locked write."""
        if not errors:
            return self.store.load_failures(slug)

        def _merge(current: dict[int, FailedItem]) -> None:
            now = utc_now()
            for index, err in errors.items():
                current[index] = FailedItem(
                    index=index,
                    error=err.message,
                    error_type=err.error_type.value,
                    timestamp=now,
                )

        result = await self.store.update_failures(slug, _merge)
        logger.info("[Failures] %s: recorded %d failed item(s): %s",
                    slug, len(errors), sorted(errors))
        return result

    def list_failures(self, slug: str) -> list[FailedItem]:
        return self.store.load_failures(slug)

    def failed_indices(self, slug: str) -> set[int]:
        return {f.index for f in self.store.load_failures(slug)}

    async def resolve(self, slug: str, indices: Iterable[int]) -> list[FailedItem]:
        """Drop indices that have since been fetched; returns what remains."""
        done = set(indices)
        if not done or not self.store.failed_path(slug).exists():
            return self.store.load_failures(slug)

        def _drop(current: dict[int, FailedItem]) -> None:
            for index in done:
                current.pop(index, None)

        remaining = await self.store.update_failures(slug, _drop)
        if not remaining:
            logger.info("[Failures] %s: all failed items recovered, list cleared", slug)
        return remaining

    async def clear(self, slug: str) -> None:
        if not self.store.failed_path(slug).exists():
            return
        await self.store.update_failures(slug, lambda current: current.clear())
