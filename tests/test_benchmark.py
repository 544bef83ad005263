"""Concurrency level sweep."""

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from catalogcrawl import cli
from catalogcrawl.benchmark import BenchmarkReport, ConcurrencyBenchmark, LevelResult, parse_levels
from catalogcrawl.errors import FetchError
from catalogcrawl.extract import NextDataExtractor
from catalogcrawl.pipeline import CatalogPipeline
from tests.conftest import FakeFetcher
from tests.pages import item_page, seed_target

SLUG = "serie-1"
URL = "https://example.test/en/serie-1/the-novel"


class Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.now += delay
        await asyncio.sleep(0)


class ThrottlingFetcher:
    """Each batch costs one second; more than two requests in flight get a 429."""

    def __init__(self, pages: dict[str, str], clock: Clock, limit: int = 2) -> None:
        self.pages = pages
        self.clock = clock
        self.limit = limit
        self.in_flight = 0

    async def fetch_page(self, url: str) -> str:
        if self.in_flight == 0:
            self.clock.now += 1.0
        self.in_flight += 1
        position = self.in_flight
        try:
            await asyncio.sleep(0)
            if position > self.limit:
                raise FetchError("HTTP 429: Too Many Requests", status=429)
            return self.pages[url]
        finally:
            self.in_flight -= 1


def sample_pages(cfg, count):
    return {cfg.item_url(URL, i): item_page(f"chapter {i}", ["text"]) for i in range(1, count + 1)}


def test_recommends_fastest_reliable_level(cfg, store):
    cfg = replace(cfg, chunk_delay=0.5)
    detail = seed_target(store, SLUG, URL, total=10, scraped=0)
    clock = Clock()
    fetcher = ThrottlingFetcher(sample_pages(cfg, 4), clock)
    bench = ConcurrencyBenchmark(cfg, fetcher, NextDataExtractor(), sleep=clock.sleep, clock=clock)

    report = asyncio.run(bench.run(detail, sample=4, levels=[1, 2, 4]))

    by_level = {r.concurrency: r for r in report.results}
    assert report.sample == 4
    assert by_level[1].total_seconds == pytest.approx(4 + 3 * 0.5)
    # Pauses between batches are not request time.
    assert by_level[1].avg_request_seconds == pytest.approx(1.0)
    assert by_level[2].avg_request_seconds == pytest.approx(0.5)
    assert by_level[4].success_rate == 50.0 and by_level[4].error_rate == 50.0
    assert report.recommended == 2
    assert store.item_indices(SLUG) == set()


def test_sample_is_bounded_by_total(cfg, store):
    detail = seed_target(store, SLUG, URL, total=3, scraped=0)
    fetcher = FakeFetcher(sample_pages(cfg, 3))
    clock = Clock()
    bench = ConcurrencyBenchmark(cfg, fetcher, NextDataExtractor(), sleep=clock.sleep, clock=clock)

    report = asyncio.run(bench.run(detail, sample=20, levels=[1, 3]))
    assert report.sample == 3
    assert len(fetcher.calls) == 6
    assert [r.success_rate for r in report.results] == [100.0, 100.0]


def test_unusable_pages_count_as_errors(cfg, store):
    detail = seed_target(store, SLUG, URL, total=2, scraped=0)
    pages = sample_pages(cfg, 1)
    pages[cfg.item_url(URL, 2)] = "<html><body>login required</body></html>"
    clock = Clock()
    bench = ConcurrencyBenchmark(cfg, FakeFetcher(pages), NextDataExtractor(), sleep=clock.sleep, clock=clock)

    [result] = asyncio.run(bench.run(detail, sample=2, levels=[2])).results
    assert (result.success_rate, result.error_rate) == (50.0, 50.0)


def test_stop_request_ends_sweep(cfg, store):
    detail = seed_target(store, SLUG, URL, total=2, scraped=0)
    fetcher = FakeFetcher(sample_pages(cfg, 2))

    async def _run():
        stop = asyncio.Event()
        stop.set()
        clock = Clock()
        bench = ConcurrencyBenchmark(cfg, fetcher, NextDataExtractor(), sleep=clock.sleep,
                                     stop_event=stop, clock=clock)
        return await bench.run(detail, sample=2, levels=[1, 2])

    report = asyncio.run(_run())
    assert report.stopped
    assert report.results == []
    assert report.recommended is None
    assert fetcher.calls == []


def test_tie_goes_to_earlier_level():
    report = BenchmarkReport(slug=SLUG, sample=4, results=[
        LevelResult(3, 2.0, 0.5, 100.0, 0.0),
        LevelResult(5, 2.0, 0.5, 100.0, 0.0),
        LevelResult(8, 2.0, 0.25, 50.0, 50.0),
    ])
    assert report.recommended == 3
    frame = report.to_frame()
    assert frame["concurrency"].to_list() == [3, 5, 8]
    assert frame["score"].to_list() == [200.0, 200.0, 0.0]


def test_pipeline_benchmark_without_detail(cfg, store, sleep):
    async def _run():
        pipeline = CatalogPipeline(cfg, store, FakeFetcher(), NextDataExtractor(), sleep=sleep)
        return await pipeline.benchmark("serie-404", sample=2, levels=[1])

    assert asyncio.run(_run()) is None


def test_parse_levels():
    assert parse_levels("10, 1,5,5") == [1, 5, 10]
    with pytest.raises(ValueError):
        parse_levels("0,2")
    with pytest.raises(ValueError):
        parse_levels("fast")


def test_benchmark_arguments():
    args = cli.build_parser().parse_args(["benchmark", SLUG, "--sample", "8", "--levels", "2,4"])
    assert (args.slug, args.sample, args.levels) == (SLUG, 8, [2, 4])
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["benchmark", SLUG, "--levels", "x"])
