"""
Concurrency benchmark.

Fetches the first ``sample`` items of one target once per candidate level,
each level in fixed-size batches, and recommends the level with the best
``(success% - error%) / avg seconds per request``. Nothing is written to the
store; the results are returned as a report and a polars table.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

import polars as pl

from .config import Config
from .controller import FixedConcurrency
from .extract import Extractor
from .fetch import Fetcher
from .models import FetchJob, TargetDetail, jobs_for_indices
from .retry import SleepFn
from .scheduler import ChunkScheduler, JobOutcome, JobStatus

logger = logging.getLogger(__name__)

DEFAULT_LEVELS: tuple[int, ...] = (
    1, 3, 5, 8, 10, 15, 20, 25, 30, 35, 40, 45, 50,
    55, 60, 65, 70, 75, 80, 85, 90, 95, 100,
)
DEFAULT_SAMPLE = 20


@dataclass
class LevelResult:
    concurrency: int
    total_seconds: float
    avg_request_seconds: float
    success_rate: float
    error_rate: float

    @property
    def score(self) -> float:
        if self.avg_request_seconds <= 0:
            return math.inf if self.success_rate > self.error_rate else 0.0
        return (self.success_rate - self.error_rate) / self.avg_request_seconds


@dataclass
class BenchmarkReport:
    slug: str
    sample: int
    results: list[LevelResult] = field(default_factory=list)
    stopped: bool = False

    @property
    def best(self) -> Optional[LevelResult]:
        """Highest score; the earlier level wins a tie."""
        best = None
        for result in self.results:
            if best is None or result.score > best.score:
                best = result
        return best

    @property
    def recommended(self) -> Optional[int]:
        best = self.best
        return best.concurrency if best is not None else None

    def to_frame(self) -> pl.DataFrame:
        schema = {
            "concurrency": pl.Int64, "total_seconds": pl.Float64,
            "avg_request_seconds": pl.Float64, "success_rate": pl.Float64,
            "error_rate": pl.Float64, "score": pl.Float64,
        }
        rows = [
            {
                "concurrency": r.concurrency,
                "total_seconds": round(r.total_seconds, 3),
                "avg_request_seconds": round(r.avg_request_seconds, 4),
                "success_rate": round(r.success_rate, 2),
                "error_rate": round(r.error_rate, 2),
                "score": r.score,
            }
            for r in self.results
        ]
        return pl.DataFrame(rows, schema=schema)


def parse_levels(text: str) -> list[int]:
    """``"1,5,10"`` -> ``[1, 5, 10]``; sorted, de-duplicated, all positive."""
    try:
        levels = sorted({int(part) for part in text.split(",") if part.strip()})
    except ValueError as e:
        raise ValueError(f"Invalid concurrency levels: {text!r}") from e
    if not levels or levels[0] < 1:
        raise ValueError(f"Concurrency levels must be positive integers: {text!r}")
    return levels


class ConcurrencyBenchmark:
    """
    Args:
        cfg: Runtime configuration (item URL template, chunk delay)
        fetcher: Page fetcher collaborator
        extractor: Field extraction collaborator
        sleep: Awaitable sleep used between batches
        stop_event: Checked between batches and between levels
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        cfg: Config,
        fetcher: Fetcher,
        extractor: Extractor,
        *,
        sleep: SleepFn,
        stop_event: Optional[asyncio.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cfg = cfg
        self.fetcher = fetcher
        self.extractor = extractor
        self._sleep = sleep
        self.stop_event = stop_event
        self.clock = clock

    async def _attempt(self, job: FetchJob) -> JobOutcome:
        # One attempt per item: the benchmark measures raw behaviour.
        document = await self.fetcher.fetch_page(job.url)
        record = self.extractor.parse_item(document, job.index)
        if record is None:
            return JobOutcome(job, JobStatus.SKIPPED)
        return JobOutcome(job, JobStatus.OK)

    async def measure(self, jobs: list[FetchJob], level: int) -> tuple[LevelResult, bool]:
        paused = 0.0

        async def _timed_sleep(delay: float) -> None:
            nonlocal paused
            started = self.clock()
            await self._sleep(delay)
            paused += self.clock() - started

        scheduler = ChunkScheduler(
            FixedConcurrency(level),
            chunk_delay=self.cfg.chunk_delay,
            stop_event=self.stop_event,
            sleep=_timed_sleep,
            name="Benchmark",
            detect_aborts=False,
        )
        started = self.clock()
        report = await scheduler.run(jobs, self._attempt, slug=f"level {level}")
        elapsed = self.clock() - started

        sample = len(jobs)
        request_time = max(0.0, elapsed - paused)
        result = LevelResult(
            concurrency=level,
            total_seconds=elapsed,
            avg_request_seconds=request_time / sample,
            success_rate=report.succeeded / sample * 100,
            error_rate=(report.failed + report.skipped) / sample * 100,
        )
        return result, report.cancelled

    async def run(
        self,
        detail: TargetDetail,
        sample: int = DEFAULT_SAMPLE,
        levels: Sequence[int] = DEFAULT_LEVELS,
    ) -> BenchmarkReport:
        size = min(sample, detail.total_count)
        report = BenchmarkReport(slug=detail.slug, sample=size)
        if size <= 0:
            logger.warning("[Benchmark] %s: no items to sample", detail.slug)
            return report

        jobs = jobs_for_indices(detail, list(range(1, size + 1)), self.cfg.item_url)
        for level in levels:
            if self.stop_event is not None and self.stop_event.is_set():
                report.stopped = True
                break
            logger.info("[Benchmark] %s: testing concurrency %d over %d item(s)", detail.slug, level, size)
            result, cancelled = await self.measure(jobs, level)
            if cancelled:
                report.stopped = True
                break
            report.results.append(result)
            logger.info(
                "[Benchmark] concurrency=%d | avg/request=%.3fs | success=%.2f%% | total=%.2fs",
                level, result.avg_request_seconds, result.success_rate, result.total_seconds,
            )

        if report.recommended is not None:
            logger.info("[Benchmark] %s: recommended concurrency %d", detail.slug, report.recommended)
        return report
