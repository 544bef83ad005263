"""
Offline reconciliation of the cursor against persisted item files.

Nothing here touches the network. The cursor is recomputed as the longest
prefix ``1..c`` in which every index is either persisted or recorded as a
pending failure, which is the same rule a fetch pass uses to advance it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from .models import FetchJob, TargetDetail, jobs_for_indices
from .storage import Store

logger = logging.getLogger(__name__)


@dataclass
class VerificationReport:
    slug: str
    total_count: int
    previous_cursor: int
    corrected_cursor: int
    file_count: int
    gaps: list[int] = field(default_factory=list)
    missing: list[int] = field(default_factory=list)
    orphans: list[int] = field(default_factory=list)
    pending_failures: list[int] = field(default_factory=list)
    empty_index: bool = False
    applied: bool = False

    @property
    def changed(self) -> bool:
        return self.corrected_cursor != self.previous_cursor

    @property
    def consistent(self) -> bool:
        return not self.changed and not self.gaps and not self.orphans

    @property
    def complete(self) -> bool:
        return not self.missing and self.corrected_cursor >= self.total_count

    def summary(self) -> str:
        parts = [
            f"files={self.file_count}/{self.total_count}",
            f"cursor={self.previous_cursor}"
            + (f"→{self.corrected_cursor}" if self.changed else ""),
        ]
        if self.gaps:
            parts.append(f"gaps={_compact(self.gaps)}")
        if self.missing:
            parts.append(f"missing={len(self.missing)}")
        if self.orphans:
            parts.append(f"orphans={_compact(self.orphans)}")
        if self.empty_index:
            parts.append("empty item index")
        return " | ".join(parts)


def _compact(indices: list[int], limit: int = 10) -> str:
    shown = ", ".join(str(i) for i in indices[:limit])
    if len(indices) > limit:
        shown += f", ... (+{len(indices) - limit})"
    return f"[{shown}]"


def settled_prefix(total: int, settled: set[int]) -> int:
    cursor = 0
    while cursor + 1 <= total and (cursor + 1) in settled:
        cursor += 1
    return cursor


async def verify_target(store: Store, slug: str, apply: bool = True) -> Optional[VerificationReport]:
    """
    Reconcile one target's cursor with its item files.

    Args:
        store: Data store
        slug: Target to verify
        apply: Write the corrected cursor back to ``detail.json``

    Returns:
        VerificationReport, or None when the target has no detail record
    """
    detail = store.load_detail(slug)
    if detail is None:
        logger.warning("[Verify] %s: no detail record, skipping", slug)
        return None

    files = store.item_indices(slug)
    failures = {f.index for f in store.load_failures(slug)}
    total = detail.total_count

    corrected = settled_prefix(total, files | failures)
    report = VerificationReport(
        slug=slug,
        total_count=total,
        previous_cursor=detail.scraped_count,
        corrected_cursor=corrected,
        file_count=len(files),
        gaps=[i for i in range(1, max(detail.scraped_count, corrected) + 1) if i not in files],
        missing=[i for i in range(1, total + 1) if i not in files],
        orphans=sorted(i for i in files if i > total),
        pending_failures=sorted(failures),
        empty_index=not store.load_item_index(slug),
    )

    if report.gaps:
        logger.warning("[Verify] %s: gaps in item files at %s", slug, _compact(report.gaps))
    if report.orphans:
        logger.warning("[Verify] %s: item files beyond total_count: %s", slug, _compact(report.orphans))
    if report.empty_index:
        logger.warning("[Verify] %s: item index is empty or missing", slug)

    if report.changed:
        if apply:
            await store.set_cursor(slug, corrected)
            report.applied = True
            logger.info("[Verify] %s: corrected scraped_count %d → %d",
                        slug, report.previous_cursor, corrected)
        else:
            logger.info("[Verify] %s: scraped_count %d should be %d (not applied)",
                        slug, report.previous_cursor, corrected)
    else:
        logger.info("[Verify] %s: %s", slug, report.summary())

    return report


def missing_jobs(
    report: VerificationReport,
    detail: TargetDetail,
    item_url: Callable[[str, int], str],
) -> list[FetchJob]:
    """Exactly one FetchJob per missing index."""
    return jobs_for_indices(detail, report.missing, item_url)
