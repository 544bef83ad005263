"""
Session statistics.

``stats.json`` holds a ring of the most recent sessions, newest first. Saving
upserts the current session at the head of the ring, so repeated flushes
during one session never create duplicates.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from .models import utc_now
from .storage import read_json, write_json_atomic

logger = logging.getLogger(__name__)

MAX_ERRORS = 50


@dataclass
class SessionStats:
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    start_time: str = field(default_factory=utc_now)
    end_time: Optional[str] = None
    total_targets: int = 0
    list_entries: int = 0
    details_fetched: int = 0
    total_items: int = 0
    items_succeeded: int = 0
    items_failed: int = 0
    items_skipped: int = 0
    avg_item_seconds: float = 0.0
    avg_detail_seconds: float = 0.0
    resource_usage: dict[str, float] = field(default_factory=dict)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def duration_hours(self) -> float:
        if not self.end_time:
            return 0.0
        start = datetime.fromisoformat(self.start_time)
        end = datetime.fromisoformat(self.end_time)
        return max(0.0, (end - start).total_seconds() / 3600)

    @property
    def success_rate(self) -> float:
        attempted = self.items_succeeded + self.items_failed
        return 100.0 * self.items_succeeded / attempted if attempted else 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionStats":
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in data.items() if k in known})


class StatsCollector:
    """
    Accumulates counters for the current session and persists the ring.

    Args:
        path: ``stats.json`` location
        keep: Number of sessions retained
        monitor: Optional ResourceMonitor whose peaks/averages are copied in
            on every save
    """

    def __init__(self, path: Path | str, keep: int = 10, monitor=None):
        self.path = Path(path)
        self.keep = max(1, keep)
        self.monitor = monitor
        self.session = SessionStats()

    # --- Counters ---

    def record_targets(self, count: int) -> None:
        self.session.total_targets = count

    def record_list_entries(self, count: int) -> None:
        self.session.list_entries += count

    def record_detail(self, elapsed: float) -> None:
        s = self.session
        s.details_fetched += 1
        s.avg_detail_seconds += (elapsed - s.avg_detail_seconds) / s.details_fetched

    def record_items_planned(self, count: int) -> None:
        self.session.total_items += count

    def record_item_success(self, elapsed: float) -> None:
        s = self.session
        s.items_succeeded += 1
        s.avg_item_seconds += (elapsed - s.avg_item_seconds) / s.items_succeeded

    def record_item_skipped(self, count: int = 1) -> None:
        self.session.items_skipped += count

    def record_item_failure(self, error: str, context: Optional[dict[str, Any]] = None) -> None:
        self.session.items_failed += 1
        self.record_error(error, context)

    def record_error(self, error: str, context: Optional[dict[str, Any]] = None) -> None:
        self.session.errors.append({"timestamp": utc_now(), "error": error, "context": context or {}})
        del self.session.errors[:-MAX_ERRORS]

    # --- Persistence ---

    def load(self) -> list[SessionStats]:
        data = read_json(self.path, default=None)
        if not isinstance(data, list):
            return []
        return [SessionStats.from_dict(d) for d in data if isinstance(d, dict)]

    def save(self) -> None:
        """Upsert the current session at the head of the ring."""
        self.session.end_time = utc_now()
        if self.monitor is not None:
            self.session.resource_usage = self.monitor.summary()

        history = [s for s in self.load() if s.session_id != self.session.session_id]
        ring = [self.session, *history][: self.keep]
        write_json_atomic(self.path, [s.to_dict() for s in ring])
        logger.debug("[Stats] Saved session %s (%d in ring)", self.session.session_id, len(ring))

    def flush(self) -> None:
        """Save, logging instead of raising; used on shutdown paths."""
        try:
            self.save()
        except OSError as e:
            logger.warning("[Stats] Could not save %s: %s", self.path, e)

    # --- Reporting ---

    def generate_report(self, session: Optional[SessionStats] = None) -> str:
        """Human summary of ``session`` (default: the newest saved session)."""
        if session is None:
            saved = self.load()
            if not saved:
                return "No statistics available"
            session = saved[0]

        usage = session.resource_usage or {}
        lines = [
            "📊 Crawl Session Report",
            "",
            f"⏱️ Duration: {session.duration_hours:.2f} hours",
            "",
            "Targets & Details:",
            f"  📚 Targets known: {session.total_targets}",
            f"  🔍 List entries seen: {session.list_entries}",
            f"  📖 Details fetched: {session.details_fetched}",
            f"  ⚡ Avg time/detail: {session.avg_detail_seconds:.2f}s",
            "",
            "Items:",
            f"  📝 Planned: {session.total_items}",
            f"  ✅ Succeeded: {session.items_succeeded}",
            f"  ❌ Failed: {session.items_failed}",
            f"  ⏭️ Skipped: {session.items_skipped}",
            f"  📈 Success rate: {session.success_rate:.2f}%",
            f"  ⚡ Avg time/item: {session.avg_item_seconds:.2f}s",
            "",
            "Resources:",
            f"  💻 Peak CPU: {usage.get('peak_cpu', 0.0):.1f}%  (avg {usage.get('avg_cpu', 0.0):.1f}%)",
            f"  🧠 Peak memory: {usage.get('peak_memory', 0.0):.1f}%  (avg {usage.get('avg_memory', 0.0):.1f}%)",
        ]
        if session.errors:
            lines += ["", f"Recent errors ({len(session.errors)}):"]
            lines += [f"  • {e.get('error', '')}" for e in session.errors[-5:]]
        return "\n".join(lines)
