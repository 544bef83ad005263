"""
Catalog pipeline: list pages → detail pages → item pages.

Each stage is a ``ChunkScheduler`` run. Progress is persisted only from the
scheduler's per-batch hook, after every job in the batch has settled, so a
crash mid-batch leaves the cursor at its last confirmed value.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

from tqdm import tqdm

from .benchmark import DEFAULT_LEVELS, DEFAULT_SAMPLE, BenchmarkReport, ConcurrencyBenchmark
from .config import Config
from .controller import ConcurrencyController, Controller, FixedConcurrency
from .errors import ClassifiedError, ErrorType
from .extract import Extractor
from .failures import FailureTracker
from .fetch import Fetcher
from .models import (
    CrawlTarget,
    FetchJob,
    ListingEntry,
    TargetDetail,
    backlog_for,
    is_complete,
    jobs_for_indices,
    slug_from_url,
)
from .notify import Notifier, safe_notify
from .resources import ResourceMonitor
from .retry import RetryPolicy, SleepFn
from .scheduler import ChunkScheduler, JobOutcome, JobStatus, TargetRunReport
from .stats import StatsCollector
from .storage import Store
from .verify import VerificationReport, missing_jobs, settled_prefix, verify_target

logger = logging.getLogger(__name__)

CATALOG = "catalog"
SKIP_MESSAGE = "Skipped: page is not a usable record"


@dataclass
class RetrySummary:
    total_failed: int = 0
    recovered: int = 0
    remaining: int = 0
    reports: list[TargetRunReport] = field(default_factory=list)


@dataclass
class CycleReport:
    targets: int = 0
    new_targets: int = 0
    details: TargetRunReport = field(default_factory=lambda: TargetRunReport(slug="details"))
    items: list[TargetRunReport] = field(default_factory=list)
    stopped: bool = False

    @property
    def items_succeeded(self) -> int:
        return sum(r.succeeded for r in self.items)

    @property
    def items_failed(self) -> int:
        return sum(r.failed for r in self.items)


class CatalogPipeline:
    """
    Args:
        cfg: Runtime configuration
        store: Persisted layout
        fetcher: Page fetcher collaborator
        extractor: Field extraction collaborator
        notifier: Best-effort notification channel
        monitor: Resource monitor; enables the adaptive item controller
        stats: Session statistics
        controller: Item-stage controller override (tests)
        stop_event: Cooperative cancellation token, checked between batches
        sleep: Awaitable sleep used for every delay (tests inject a no-op)
    """

    def __init__(
        self,
        cfg: Config,
        store: Store,
        fetcher: Fetcher,
        extractor: Extractor,
        *,
        notifier: Optional[Notifier] = None,
        monitor: Optional[ResourceMonitor] = None,
        stats: Optional[StatsCollector] = None,
        controller: Optional[Controller] = None,
        stop_event: Optional[asyncio.Event] = None,
        sleep: Optional[SleepFn] = None,
    ):
        self.cfg = cfg
        self.store = store
        self.fetcher = fetcher
        self.extractor = extractor
        self.notifier = notifier
        self.monitor = monitor
        self.stats = stats or StatsCollector(store.stats_path, keep=cfg.stats_keep, monitor=monitor)
        self.stop_event = stop_event or asyncio.Event()
        self._sleep = sleep or asyncio.sleep
        self.retry = RetryPolicy(cfg.retry_count, cfg.retry_delay, sleep=self._sleep)
        self.failures = FailureTracker(store)
        self._controller = controller

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    # =========================================================================
    # CONTROLLERS
    # =========================================================================

    @property
    def item_controller(self) -> Controller:
        """Adaptive when a monitor is attached, otherwise fixed at the floor."""
        if self._controller is None:
            if self.monitor is not None:
                ceiling = self.monitor.suggested_concurrency()
                self._controller = ConcurrencyController(
                    self.monitor,
                    ceiling=ceiling,
                    floor=self.cfg.min_concurrency,
                    cpu_high_water=self.cfg.cpu_high_water,
                    memory_high_water=self.cfg.memory_high_water,
                    low_water=self.cfg.low_water,
                    shrink_ratio=self.cfg.shrink_ratio,
                    cooldown=self.cfg.throttle_cooldown,
                )
                logger.info("[Throttle] Session ceiling=%d floor=%d",
                            self._controller.ceiling, self._controller.floor)
            else:
                self._controller = FixedConcurrency(self.cfg.min_concurrency)
        return self._controller

    def _scheduler(self, controller: Controller, chunk_delay: float, name: str,
                   detect_aborts: bool = True) -> ChunkScheduler:
        return ChunkScheduler(
            controller,
            chunk_delay=chunk_delay,
            stop_event=self.stop_event,
            sleep=self._sleep,
            name=name,
            detect_aborts=detect_aborts,
        )

    def _progress(self, total: int, desc: str, unit: str) -> tqdm:
        return tqdm(total=total, desc=desc, unit=unit, leave=False, disable=not self.cfg.show_progress)

    # =========================================================================
    # STAGE 1: TARGET LIST
    # =========================================================================

    async def _list_page(self, job: FetchJob) -> JobOutcome:
        async def _fetch() -> list[ListingEntry]:
            document = await self.fetcher.fetch_page(job.url)
            return self.extractor.parse_list_page(document, self.cfg.base_url)

        outcome = await self.retry.run(_fetch, {"page": job.index, "url": job.url})
        if not outcome.ok:
            self.stats.record_error(outcome.error.message, {"page": job.index})
            return JobOutcome(job, JobStatus.FAILED, error=outcome.error)
        # An empty page is a valid answer; the hook counts them.
        return JobOutcome(job, JobStatus.OK, value=outcome.value)

    def _needs_refresh(self, slug: str, total_items: int) -> bool:
        detail = self.store.load_detail(slug)
        if detail is None:
            return True
        return detail.total_count != total_items or not is_complete(
            detail, len(self.failures.failed_indices(slug))
        )

    def merge_entries(
        self,
        targets: list[CrawlTarget],
        entries: list[ListingEntry],
        first_scrape: bool = False,
    ) -> int:
        """Merge listing entries into ``targets`` by URL. Returns the number added."""
        by_url = {t.url: t for t in targets}
        added = 0
        for entry in entries:
            existing = by_url.get(entry.url)
            if existing is None:
                target = CrawlTarget(
                    slug=slug_from_url(entry.url),
                    url=entry.url,
                    total_items=entry.total_items,
                    status=entry.status,
                    needs_refresh=True,
                )
                targets.append(target)
                by_url[entry.url] = target
                added += 1
                continue

            changed = existing.total_items != entry.total_items
            needs = changed or self._needs_refresh(existing.slug, entry.total_items)
            existing.last_known_items = existing.total_items
            existing.total_items = entry.total_items
            existing.status = entry.status
            existing.needs_refresh = True if first_scrape else needs
        return added

    async def fetch_target_list(self) -> list[CrawlTarget]:
        """Walk list pages until ``empty_page_limit`` empty pages in a row."""
        targets = self.store.load_targets()
        first_scrape = not targets
        empty_pages = 0
        processed = 0
        added_total = 0

        jobs = [
            FetchJob(slug=CATALOG, index=page, url=self.cfg.list_page_url(page))
            for page in range(1, self.cfg.max_list_pages + 1)
        ]

        async def _on_batch(outcomes: list[JobOutcome]) -> bool:
            nonlocal empty_pages, processed, added_total
            processed += len(outcomes)
            entries = [e for o in sorted(outcomes, key=lambda o: o.index)
                       if o.status is JobStatus.OK for e in o.value]
            if entries:
                empty_pages = 0
                self.stats.record_list_entries(len(entries))
                added_total += self.merge_entries(targets, entries, first_scrape)
            else:
                empty_pages += len(outcomes)

            await self.store.save_targets(targets, lastProcessedPage=processed)
            if empty_pages >= self.cfg.empty_page_limit:
                logger.info("[Targets] No entries on the last %d pages; stopping at page %d",
                            empty_pages, processed)
                return False
            return True

        scheduler = self._scheduler(FixedConcurrency(self.cfg.list_concurrency),
                                    self.cfg.chunk_delay, "Targets", detect_aborts=False)
        with self._progress(len(jobs), "List pages", "page") as bar:
            await scheduler.run(jobs, self._list_page, _on_batch, progress=bar, slug=CATALOG)

        self.stats.record_targets(len(targets))
        logger.info("[Targets] %d targets known | %d new | %d need refresh",
                    len(targets), added_total, sum(t.needs_refresh for t in targets))
        return targets

    # =========================================================================
    # STAGE 2: DETAILS
    # =========================================================================

    async def _store_detail(self, target: CrawlTarget, payload) -> TargetDetail:
        slug = target.slug
        existing = self.store.load_detail(slug)
        if existing is None:
            settled = self.store.item_indices(slug) | self.failures.failed_indices(slug)
            detail = TargetDetail(
                slug=slug,
                url=target.url,
                title=payload.title,
                total_count=payload.total_count,
                scraped_count=settled_prefix(payload.total_count, settled),
                metadata=dict(payload.metadata),
            )
            await self.store.save_detail(detail)
        else:
            def _refresh(d: TargetDetail) -> None:
                d.url = target.url
                d.title = payload.title or d.title
                d.total_count = payload.total_count
                d.metadata.update(payload.metadata)

            detail = await self.store.update_detail(slug, _refresh)
        await self.store.save_item_index(slug, payload.items)
        return detail

    async def _detail_page(self, target: CrawlTarget) -> JobOutcome:
        started = time.monotonic()

        async def _fetch():
            document = await self.fetcher.fetch_page(target.url)
            return self.extractor.parse_detail(document, target.url)

        outcome = await self.retry.run(_fetch, {"slug": target.slug, "url": target.url})
        if not outcome.ok:
            self.stats.record_error(outcome.error.message, {"slug": target.slug})
            return JobOutcome(target, JobStatus.FAILED, error=outcome.error)
        if outcome.value is None:
            logger.info("[Details] %s: no usable detail record, skipping", target.slug)
            return JobOutcome(target, JobStatus.SKIPPED)

        detail = await self._store_detail(target, outcome.value)
        target.total_items = detail.total_count
        target.needs_refresh = False
        self.stats.record_detail(time.monotonic() - started)
        return JobOutcome(target, JobStatus.OK, value=detail)

    async def fetch_details(self, targets: Optional[list[CrawlTarget]] = None) -> TargetRunReport:
        """Fetch details for targets flagged ``needs_refresh``."""
        all_targets = targets if targets is not None else self.store.load_targets()
        todo = [t for t in all_targets if t.needs_refresh]
        if not todo:
            logger.info("[Details] Nothing to refresh")
            return TargetRunReport(slug="details")

        async def _on_batch(outcomes: list[JobOutcome]) -> None:
            await self.store.save_targets(all_targets)

        scheduler = self._scheduler(FixedConcurrency(self.cfg.detail_concurrency),
                                    self.cfg.chunk_delay * 2, "Details", detect_aborts=False)
        with self._progress(len(todo), "Details", "target") as bar:
            report = await scheduler.run(todo, self._detail_page, _on_batch, progress=bar, slug="details")

        logger.info("[Details] %d fetched | %d skipped | %d failed",
                    report.succeeded, report.skipped, report.failed)
        return report

    # =========================================================================
    # STAGE 3: ITEMS
    # =========================================================================

    async def _item_page(self, job: FetchJob) -> JobOutcome:
        started = time.monotonic()

        async def _fetch():
            document = await self.fetcher.fetch_page(job.url)
            return self.extractor.parse_item(document, job.index)

        outcome = await self.retry.run(_fetch, {"slug": job.slug, "index": job.index, "url": job.url})
        if not outcome.ok:
            self.stats.record_item_failure(outcome.error.message, {"slug": job.slug, "index": job.index})
            return JobOutcome(job, JobStatus.FAILED, error=outcome.error)
        if outcome.value is None:
            self.stats.record_item_skipped()
            return JobOutcome(job, JobStatus.SKIPPED)

        self.store.write_item(job.slug, outcome.value)
        self.stats.record_item_success(time.monotonic() - started)
        return JobOutcome(job, JobStatus.OK, value=outcome.value)

    def _item_batch_hook(self, slug: str) -> Callable[[list[JobOutcome]], Any]:
        async def _on_batch(outcomes: list[JobOutcome]) -> None:
            errors: dict[int, ClassifiedError] = {}
            recovered = set()
            for o in outcomes:
                if o.status is JobStatus.OK:
                    recovered.add(o.index)
                elif o.status is JobStatus.SKIPPED:
                    errors[o.index] = ClassifiedError(ErrorType.UNKNOWN, SKIP_MESSAGE, attempts=1)
                else:
                    errors[o.index] = o.error

            if errors:
                await self.failures.record_many(slug, errors)
            if recovered:
                await self.failures.resolve(slug, recovered)

            settled = self.store.item_indices(slug) | self.failures.failed_indices(slug)
            await self.store.advance_cursor(slug, settled)

        return _on_batch

    async def fetch_items(self, slug: str, jobs: Optional[list[FetchJob]] = None) -> TargetRunReport:
        """
        Run a target's item backlog (``scraped_count + 1 .. total_count`` by
        default, or the given jobs) through the adaptive scheduler.
        """
        detail = self.store.load_detail(slug)
        if detail is None:
            logger.warning("[Items] %s: no detail record, skipping", slug)
            return TargetRunReport(slug=slug)

        if jobs is None:
            jobs = backlog_for(detail, self.cfg.item_url)
        if not jobs:
            return TargetRunReport(slug=slug)

        logger.info("[Items] %s: %d job(s) starting at index %d",
                    slug, len(jobs), jobs[0].index)
        scheduler = self._scheduler(self.item_controller, self.cfg.chunk_delay, "Items")
        with self._progress(len(jobs), slug, "item") as bar:
            report = await scheduler.run(jobs, self._item_page, self._item_batch_hook(slug),
                                         progress=bar, slug=slug)

        if report.failed:
            failed = sorted(self.failures.failed_indices(slug))
            await safe_notify(
                self.notifier,
                f"{slug}: {report.failed} item(s) failed after {self.cfg.retry_count} attempts.\n"
                f"Pending failures: {failed[:50]}",
                "warning",
            )
        if report.aborted:
            await safe_notify(self.notifier, f"{slug}: backlog aborted ({report.abort_reason})", "warning")
        return report

    def targets_with_backlog(self) -> list[str]:
        slugs = [t.slug for t in self.store.load_targets()] or self.store.known_slugs()
        pending = []
        for slug in slugs:
            detail = self.store.load_detail(slug)
            if detail is not None and detail.scraped_count < detail.total_count:
                pending.append(slug)
        return pending

    async def fetch_all_items(self) -> list[TargetRunReport]:
        reports = []
        slugs = self.targets_with_backlog()
        logger.info("[Items] %d target(s) with outstanding items", len(slugs))
        for slug in slugs:
            if self.stopping:
                logger.info("[Items] Stop requested; remaining targets left for the next cycle")
                break
            try:
                detail = self.store.load_detail(slug)
                self.stats.record_items_planned(detail.total_count - detail.scraped_count)
                reports.append(await self.fetch_items(slug))
            except (OSError, ValueError, KeyError) as e:
                logger.error("[Items] %s: %s: %s", slug, type(e).__name__, e)
                self.stats.record_error(str(e), {"slug": slug})
        return reports

    # =========================================================================
    # COMPANION PASSES
    # =========================================================================

    def _slugs(self, slug: Optional[str]) -> list[str]:
        return [slug] if slug else self.store.known_slugs()

    async def retry_failed(self, slug: Optional[str] = None) -> RetrySummary:
        """Re-fetch only the pending failed indices of one or all targets."""
        summary = RetrySummary()
        for current in self._slugs(slug):
            if self.stopping:
                break
            pending = sorted(self.failures.failed_indices(current))
            if not pending:
                continue
            detail = self.store.load_detail(current)
            if detail is None:
                logger.warning("[RetryFailed] %s: %d failure(s) but no detail record", current, len(pending))
                summary.total_failed += len(pending)
                summary.remaining += len(pending)
                continue

            logger.info("[RetryFailed] %s: retrying %d item(s)", current, len(pending))
            jobs = jobs_for_indices(detail, pending, self.cfg.item_url)
            report = await self.fetch_items(current, jobs=jobs)
            remaining = len(self.failures.failed_indices(current))

            summary.reports.append(report)
            summary.total_failed += len(pending)
            summary.remaining += remaining
            summary.recovered += len(pending) - remaining
            logger.info("[RetryFailed] %s: %d recovered | %d remaining",
                        current, len(pending) - remaining, remaining)

        await safe_notify(
            self.notifier,
            f"Retry of failed items finished: {summary.recovered}/{summary.total_failed} recovered, "
            f"{summary.remaining} remaining",
            "success" if summary.remaining == 0 else "warning",
        )
        return summary

    async def verify(self, slug: Optional[str] = None, repair: bool = False) -> list[VerificationReport]:
        """Reconcile cursors with item files; optionally re-fetch what is missing."""
        reports = []
        for current in self._slugs(slug):
            try:
                report = await verify_target(self.store, current, apply=True)
            except (OSError, ValueError, KeyError) as e:
                logger.error("[Verify] %s: %s: %s", current, type(e).__name__, e)
                continue
            if report is None:
                continue

            if repair and report.missing and not self.stopping:
                detail = self.store.load_detail(current)
                jobs = missing_jobs(report, detail, self.cfg.item_url)
                logger.info("[Verify] %s: re-fetching %d missing item(s)", current, len(jobs))
                await self.fetch_items(current, jobs=jobs)
                report = await verify_target(self.store, current, apply=True)
            reports.append(report)
        return reports

    async def benchmark(
        self,
        slug: str,
        sample: int = DEFAULT_SAMPLE,
        levels: Sequence[int] = DEFAULT_LEVELS,
    ) -> Optional[BenchmarkReport]:
        """Sweep fixed concurrency levels over a target's first items; nothing is stored."""
        detail = self.store.load_detail(slug)
        if detail is None:
            logger.warning("[Benchmark] %s: no detail record; run a cycle first", slug)
            return None
        bench = ConcurrencyBenchmark(
            self.cfg, self.fetcher, self.extractor, sleep=self._sleep, stop_event=self.stop_event,
        )
        return await bench.run(detail, sample=sample, levels=levels)

    # =========================================================================
    # CYCLE
    # =========================================================================

    async def _between_stages(self) -> None:
        self.stats.flush()
        if not self.stopping and self.cfg.stage_cooldown > 0:
            await self._sleep(self.cfg.stage_cooldown)

    async def run_cycle(self, on_phase: Optional[Callable[[str], Any]] = None) -> CycleReport:
        """One full pass: target list, details, items."""
        cycle = CycleReport()

        def _phase(name: str) -> None:
            if on_phase is not None:
                on_phase(name)

        _phase("targets")
        before = len(self.store.load_targets())
        targets = await self.fetch_target_list()
        cycle.targets = len(targets)
        cycle.new_targets = max(0, len(targets) - before)
        await self._between_stages()
        if self.stopping:
            cycle.stopped = True
            return cycle

        _phase("details")
        cycle.details = await self.fetch_details(targets)
        await self._between_stages()
        if self.stopping:
            cycle.stopped = True
            return cycle

        _phase("items")
        cycle.items = await self.fetch_all_items()
        self.stats.flush()
        cycle.stopped = self.stopping
        return cycle
