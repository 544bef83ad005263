"""Shared fixtures: temporary data directory, fake network, scripted host load."""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import pytest

from catalogcrawl.config import Config
from catalogcrawl.errors import FetchError
from catalogcrawl.storage import Store


class RecordingSleep:
    """Drop-in for asyncio.sleep that records the requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeFetcher:
    """
    Serves documents from a dict keyed by URL.

    A value may be a document string, an exception instance (raised on every
    call) or a callable returning either. Unknown URLs get ``default`` or 404.
    """

    def __init__(self, pages: Optional[dict[str, Any]] = None, default: Optional[str] = None) -> None:
        self.pages = dict(pages or {})
        self.default = default
        self.calls: list[str] = []

    async def fetch_page(self, url: str) -> str:
        self.calls.append(url)
        await asyncio.sleep(0)
        page = self.pages.get(url, self.default)
        if callable(page):
            page = page()
        if page is None:
            raise FetchError("HTTP 404: Not Found", status=404)
        if isinstance(page, BaseException):
            raise page
        return page

    def count(self, url: str) -> int:
        return self.calls.count(url)


class ScriptedSampler:
    """Returns the scripted (cpu, memory) readings in order, then repeats the last."""

    def __init__(self, readings: list[tuple[float, float]]) -> None:
        self.readings = list(readings)
        self.position = 0

    def __call__(self) -> tuple[float, float]:
        reading = self.readings[min(self.position, len(self.readings) - 1)]
        self.position += 1
        return reading


class RecordingNotifier:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []

    async def notify(self, message: str, level: str = "info") -> None:
        self.messages.append((level, message))

    def levels(self) -> list[str]:
        return [level for level, _ in self.messages]


@pytest.fixture
def cfg(tmp_path) -> Config:
    return Config(
        data_dir=str(tmp_path / "data"),
        base_url="https://example.test",
        show_progress=False,
        chunk_delay=0.0,
        stage_cooldown=0.0,
        retry_delay=0.01,
        list_concurrency=2,
        max_list_pages=4,
        empty_page_limit=2,
        min_concurrency=2,
        shutdown_grace=1.0,
    )


@pytest.fixture
def store(cfg) -> Store:
    s = Store(cfg.data_path)
    s.ensure()
    return s


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
