"""Persisted and in-flight record types."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from urllib.parse import urlsplit


SLUG_TOKEN = re.compile(r"serie-\d+")


def utc_now() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def sanitize_name(name: str, max_len: int = 180) -> str:
    """Sanitize a string for use as a directory or file name."""
    name = name.strip().replace("/", "_")
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", name)
    name = re.sub(r"_+", "_", name).strip("._")
    if not name:
        name = "target"
    return name[:max_len]


def slug_from_url(url: str) -> str:
    """Stable target identifier derived from its URL."""
    match = SLUG_TOKEN.search(url)
    if match:
        return match.group(0)
    segments = [s for s in urlsplit(url).path.split("/") if s]
    return sanitize_name(segments[-1] if segments else url)


# =============================================================================
# CATALOG RECORDS
# =============================================================================

@dataclass
class CrawlTarget:
    """One catalog entry, merged by URL on every list pass."""
    slug: str
    url: str
    total_items: int = 0
    status: str = "unknown"
    needs_refresh: bool = True
    last_known_items: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "slug": self.slug,
            "totalItems": self.total_items,
            "lastKnownItems": self.last_known_items,
            "status": self.status,
            "needsRefresh": self.needs_refresh,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CrawlTarget":
        url = str(data["url"])
        return cls(
            slug=str(data.get("slug") or slug_from_url(url)),
            url=url,
            total_items=int(data.get("totalItems", 0) or 0),
            status=str(data.get("status", "unknown")),
            needs_refresh=bool(data.get("needsRefresh", True)),
            last_known_items=int(data.get("lastKnownItems", 0) or 0),
        )


@dataclass
class ListingEntry:
    """A catalog entry as seen on a list page."""
    url: str
    total_items: int
    status: str = "unknown"


@dataclass
class TargetDetail:
    """Target metadata plus the ItemProgress cursor (``scraped_count``)."""
    slug: str
    url: str
    title: str = ""
    total_count: int = 0
    scraped_count: int = 0
    last_updated: str = field(default_factory=utc_now)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.metadata)
        data.update({
            "slug": self.slug,
            "title": self.title,
            "url_source": self.url,
            "total_count": self.total_count,
            "scraped_count": self.scraped_count,
            "last_updated": self.last_updated,
        })
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TargetDetail":
        reserved = {"slug", "title", "url_source", "total_count", "scraped_count", "last_updated"}
        return cls(
            slug=str(data["slug"]),
            url=str(data.get("url_source", "")),
            title=str(data.get("title", "")),
            total_count=int(data.get("total_count", 0) or 0),
            scraped_count=int(data.get("scraped_count", 0) or 0),
            last_updated=str(data.get("last_updated") or utc_now()),
            metadata={k: v for k, v in data.items() if k not in reserved},
        )


@dataclass
class ItemIndexEntry:
    index: int
    title: str

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "title": self.title}


@dataclass
class DetailPayload:
    """What the extractor pulls out of a detail page."""
    title: str
    total_count: int
    items: list[ItemIndexEntry]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ItemRecord:
    """One fetched item's normalized content."""
    index: int
    title: str
    content: str

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "title": self.title, "content": self.content}


@dataclass
class FailedItem:
    index: int
    error: str
    error_type: str = "UNKNOWN"
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "error": self.error,
            "error_type": self.error_type,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FailedItem":
        return cls(
            index=int(data["index"]),
            error=str(data.get("error", "")),
            error_type=str(data.get("error_type", "UNKNOWN")),
            timestamp=str(data.get("timestamp") or utc_now()),
        )


# =============================================================================
# WORK UNITS
# =============================================================================

@dataclass(frozen=True)
class FetchJob:
    """Ephemeral unit of work; regenerated from the cursor on every run."""
    slug: str
    index: int
    url: str


def backlog_for(detail: TargetDetail, item_url: Callable[[str, int], str]) -> list[FetchJob]:
    """One job per index in ``scraped_count + 1 .. total_count``."""
    return [
        FetchJob(slug=detail.slug, index=i, url=item_url(detail.url, i))
        for i in range(detail.scraped_count + 1, detail.total_count + 1)
    ]


def jobs_for_indices(detail: TargetDetail, indices: list[int], item_url: Callable[[str, int], str]) -> list[FetchJob]:
    return [
        FetchJob(slug=detail.slug, index=i, url=item_url(detail.url, i))
        for i in sorted(set(indices))
    ]


def is_complete(detail: Optional[TargetDetail], pending_failures: int) -> bool:
    """Fully scraped means the cursor reached the end and nothing is pending."""
    if detail is None:
        return False
    return detail.scraped_count >= detail.total_count and pending_failures == 0
