"""
Cycle driver: single-instance, periodic, cooperatively cancellable.

A cycle only starts under the RunLock. SIGINT/SIGTERM set a stop event that
the scheduler checks between batches; the cycle then unwinds through its
``finally`` (stats flush, lock release). A cycle that has not unwound within
``shutdown_grace`` seconds is cancelled.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar

from .checkpoint import CheckpointStore
from .config import Config
from .notify import Notifier, safe_notify
from .pipeline import CatalogPipeline, CycleReport
from .resources import ResourceMonitor
from .runlock import RunLock

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CycleResult:
    status: str                     # "ok", "locked" or "failed"
    cycle: int = 0
    report: Optional[CycleReport] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


class CycleDriver:
    """
    Args:
        cfg: Runtime configuration
        pipeline: The pipeline to drive; its ``stop_event`` is the stop token
        lock: Single-instance lock
        checkpoint: Phase bookkeeping
        notifier: Best-effort notification channel
        monitor: Started and stopped around the driver's lifetime
    """

    def __init__(
        self,
        cfg: Config,
        pipeline: CatalogPipeline,
        lock: RunLock,
        checkpoint: CheckpointStore,
        *,
        notifier: Optional[Notifier] = None,
        monitor: Optional[ResourceMonitor] = None,
    ):
        self.cfg = cfg
        self.pipeline = pipeline
        self.lock = lock
        self.checkpoint = checkpoint
        self.notifier = notifier
        self.monitor = monitor
        self.stop_event = pipeline.stop_event
        self.cycles_run = 0

    # =========================================================================
    # SHUTDOWN HANDLING
    # =========================================================================

    def request_stop(self) -> None:
        if not self.stop_event.is_set():
            logger.warning("[Shutdown] Interrupt received. Attempting graceful shutdown...")
        self.stop_event.set()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(self.request_stop))

    async def _with_grace(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation``; once a stop is requested allow it ``shutdown_grace`` to finish."""
        task = asyncio.ensure_future(operation())
        stop_waiter = asyncio.ensure_future(self.stop_event.wait())
        try:
            await asyncio.wait({task, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
            if not task.done():
                try:
                    await asyncio.wait_for(asyncio.shield(task), timeout=self.cfg.shutdown_grace)
                except asyncio.TimeoutError:
                    logger.warning("[Shutdown] Cycle did not stop within %.0fs; cancelling",
                                   self.cfg.shutdown_grace)
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
                    raise asyncio.CancelledError()
            return task.result()
        finally:
            stop_waiter.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await stop_waiter

    # =========================================================================
    # LOCKED OPERATIONS
    # =========================================================================

    async def run_locked(self, operation: Callable[[], Awaitable[T]], phase: str) -> tuple[bool, Optional[T]]:
        """
        Run a companion pass (retry-failed, verify) under the RunLock.

        Returns:
            (False, None) on lock contention, otherwise (True, result)
        """
        if not self.lock.acquire():
            return False, None
        try:
            self.checkpoint.mark(phase)
            result = await self._with_grace(operation)
            self.checkpoint.mark("idle")
            return True, result
        finally:
            self.pipeline.stats.flush()
            self.lock.release()

    async def run_once(self) -> CycleResult:
        """One locked cycle. Lock contention is a result, not an error."""
        if not self.lock.acquire():
            owner = self.lock.owner() or {}
            logger.warning("[Cycle] Skipping: another instance holds the lock (pid %s)", owner.get("pid"))
            return CycleResult("locked")

        cycle = 0
        try:
            cycle = self.checkpoint.begin_cycle()
            self.cycles_run += 1
            logger.info("[Cycle] #%d starting", cycle)
            await safe_notify(self.notifier, f"Crawl cycle #{cycle} started", "info")

            report = await self.pipeline.run_cycle(on_phase=self.checkpoint.mark)

            next_run = datetime.now(timezone.utc) + timedelta(seconds=self.cfg.cycle_period)
            self.checkpoint.finish_cycle("idle", next_run_at=next_run.isoformat())
            summary = (
                f"Crawl cycle #{cycle} {'stopped early' if report.stopped else 'completed'}: "
                f"{report.targets} targets ({report.new_targets} new), "
                f"{report.items_succeeded} items fetched, {report.items_failed} failed"
            )
            logger.info("[Cycle] %s", summary)
            self.pipeline.stats.flush()
            await safe_notify(self.notifier, summary, "success")
            await safe_notify(self.notifier, self.pipeline.stats.generate_report(self.pipeline.stats.session), "info")
            return CycleResult("ok", cycle=cycle, report=report)

        except Exception as e:
            logger.exception("[Cycle] #%d failed: %s", cycle, e)
            self.pipeline.stats.record_error(f"{type(e).__name__}: {e}", {"cycle": cycle})
            with contextlib.suppress(OSError):
                self.checkpoint.mark("failed", error=str(e))
            await safe_notify(self.notifier, f"Crawl cycle #{cycle} failed: {e}", "error")
            return CycleResult("failed", cycle=cycle, error=str(e))

        finally:
            self.pipeline.stats.flush()
            self.lock.release()

    # =========================================================================
    # PERIODIC LOOP
    # =========================================================================

    async def _start_monitor(self) -> None:
        if self.monitor is not None:
            await self.monitor.start()

    async def _shutdown(self) -> None:
        if self.monitor is not None:
            await self.monitor.stop()
        self.pipeline.stats.flush()
        if self.lock.held:
            self.lock.release()

    async def run_single(self) -> CycleResult:
        """``run_once`` with the monitor lifecycle and shutdown grace around it."""
        await self._start_monitor()
        try:
            return await self._with_grace(self.run_once)
        finally:
            await self._shutdown()

    async def run_forever(self, max_cycles: Optional[int] = None) -> list[CycleResult]:
        """Repeat cycles every ``cycle_period`` until a stop is requested."""
        results: list[CycleResult] = []
        await self._start_monitor()
        try:
            while not self.stop_event.is_set():
                result = await self._with_grace(self.run_once)
                results.append(result)
                if max_cycles is not None and len(results) >= max_cycles:
                    break
                if self.stop_event.is_set():
                    break

                logger.info("[Cycle] Next cycle in %.1f hours", self.cfg.cycle_period / 3600)
                try:
                    await asyncio.wait_for(self.stop_event.wait(), timeout=self.cfg.cycle_period)
                except asyncio.TimeoutError:
                    pass
        except Exception as e:
            await safe_notify(self.notifier, f"Crawler stopped on an unexpected error: {e}", "error")
            raise
        finally:
            await self._shutdown()
        logger.info("[Shutdown] Driver stopped after %d cycle(s)", len(results))
        return results
