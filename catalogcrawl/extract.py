"""
Field extraction from fetched pages.

List pages are read from their markup. Detail and item pages carry their data
in the embedded ``__NEXT_DATA__`` JSON blob. ``None`` from a parse method means
the page is not a usable record (SKIP); a blob that is present but cannot be
decoded raises ``ParseError``.
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional, Protocol
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from .errors import ParseError
from .models import DetailPayload, ItemIndexEntry, ItemRecord, ListingEntry

COUNT_REGEX = re.compile(r"(\d[\d,]*)")


class Extractor(Protocol):
    def parse_list_page(self, document: str, base_url: str) -> list[ListingEntry]: ...

    def parse_detail(self, document: str, url: str) -> Optional[DetailPayload]: ...

    def parse_item(self, document: str, index: int) -> Optional[ItemRecord]: ...


def title_case(text: str) -> str:
    """Capitalize the first letter of every word, leaving the rest alone."""
    return " ".join(w[:1].upper() + w[1:] for w in text.split())


def _parse_count(text: str) -> int:
    match = COUNT_REGEX.search(text or "")
    return int(match.group(1).replace(",", "")) if match else 0


def _dig(data: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


class NextDataExtractor:
    """Default extractor for Next.js rendered catalog pages."""

    NEXT_DATA_ID = "__NEXT_DATA__"

    def __init__(self, parser: str = "html.parser"):
        self.parser = parser

    def _soup(self, document: str) -> BeautifulSoup:
        return BeautifulSoup(document, self.parser)

    def next_data(self, soup: BeautifulSoup) -> Optional[dict[str, Any]]:
        script = soup.find("script", id=self.NEXT_DATA_ID)
        if script is None or not script.string or not script.string.strip():
            return None
        try:
            data = json.loads(script.string)
        except json.JSONDecodeError as e:
            raise ParseError(f"Malformed {self.NEXT_DATA_ID} JSON: {e.msg}") from e
        if not isinstance(data, dict):
            raise ParseError(f"{self.NEXT_DATA_ID} is not a JSON object")
        return data

    # --- List pages ---

    def parse_list_page(self, document: str, base_url: str) -> list[ListingEntry]:
        soup = self._soup(document)
        entries = []
        for element in soup.select(".serie-item"):
            link = element.select_one(".title")
            href = link.get("href") if link is not None else None
            if not href:
                continue
            spans = element.select(".detail-item span")
            status = spans[0].get_text(strip=True).lower() if spans else ""
            count = _parse_count(spans[1].get_text(strip=True)) if len(spans) > 1 else 0
            entries.append(ListingEntry(
                url=urljoin(base_url.rstrip("/") + "/", href.lstrip("/")),
                total_items=count,
                status=status or "unknown",
            ))
        return entries

    # --- Detail pages ---

    def parse_detail(self, document: str, url: str) -> Optional[DetailPayload]:
        soup = self._soup(document)
        data = self.next_data(soup)
        if data is None:
            return None

        chapters = _dig(data, "props", "pageProps", "serie", "chapters") or []
        if not isinstance(chapters, list) or not chapters:
            return None

        alert = soup.select_one(".alert-warning")
        if alert is not None and "You need to login" in alert.get_text():
            return None

        items = []
        for chapter in chapters:
            if not isinstance(chapter, dict) or "order" not in chapter:
                continue
            try:
                order = int(chapter["order"])
            except (TypeError, ValueError):
                continue
            items.append(ItemIndexEntry(index=order, title=title_case(str(chapter.get("title", "")))))
        if not items:
            return None
        items.sort(key=lambda e: e.index)

        heading = soup.find("h1")
        title = heading.get_text(strip=True) if heading is not None else ""
        spans = soup.select(".detail-item span")
        status = spans[0].get_text(strip=True).lower() if spans else "unknown"
        total = _parse_count(spans[1].get_text(strip=True)) if len(spans) > 1 else 0
        if total <= 0:
            total = max(e.index for e in items)

        metadata: dict[str, Any] = {"status": status or "unknown"}
        original = heading.find_next_sibling("h3") if heading is not None else None
        if original is not None:
            metadata["original_title"] = original.get_text(strip=True)
        summary = soup.select_one(".lead")
        if summary is not None:
            metadata["summary"] = summary.get_text(strip=True)
        image = soup.select_one(".img-wrap img")
        if image is not None and image.get("src"):
            metadata["image_url"] = image["src"]
        metadata.update(self._table_fields(soup))

        return DetailPayload(title=title_case(title), total_count=total, items=items, metadata=metadata)

    def _table_fields(self, soup: BeautifulSoup) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        for row in soup.select(".custom-table tr"):
            cells = row.find_all("td")
            if len(cells) < 2:
                continue
            label = cells[0].get_text(strip=True)
            value = cells[-1]
            if label == "Author":
                fields["author"] = ", ".join(a.get_text(strip=True) for a in value.find_all("a"))
            elif label == "Genre":
                fields["genre"] = [g.get_text(strip=True).rstrip(",") for g in value.select(".genre")]
            elif label == "Tags":
                fields["tags"] = [t.get_text(strip=True).rstrip(",").lower() for t in value.select(".tag")]
            elif label == "Addition Date":
                fields["addition_date"] = value.get_text(strip=True)
        return fields

    # --- Item pages ---

    def parse_item(self, document: str, index: int) -> Optional[ItemRecord]:
        data = self.next_data(self._soup(document))
        if data is None:
            return None
        chapter = _dig(data, "props", "pageProps", "serie", "chapter_data", "data")
        if not isinstance(chapter, dict):
            return None
        body = chapter.get("body")
        if not isinstance(body, list):
            return None
        paragraphs = [f"<p>{p}</p>" for p in body if isinstance(p, str) and p.strip()]
        if not paragraphs:
            return None
        return ItemRecord(
            index=index,
            title=title_case(str(chapter.get("title", ""))),
            content="\n".join(paragraphs),
        )
