"""
Chunked dispatch of fetch jobs.

Jobs run in batches of at most k concurrent operations, where k comes from a
controller consulted before every batch. A batch is a barrier: the next one
starts only after every job in the current one has settled and the settled
outcomes have been handed to ``on_batch``.

An aborted batch never reaches ``on_batch``. Items its successful jobs already
wrote sit past the cursor and are fetched again, and overwritten, on the next
run of that target.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence, TypeVar

from .controller import ConcurrencyState, Controller
from .errors import ClassifiedError, ErrorType, StructuralError
from .retry import SleepFn

logger = logging.getLogger(__name__)

J = TypeVar("J")


class JobStatus(Enum):
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class JobOutcome:
    """Settled result of one job."""
    job: Any
    status: JobStatus
    value: Any = None
    error: Optional[ClassifiedError] = None

    @property
    def index(self) -> Optional[int]:
        return getattr(self.job, "index", None)


@dataclass
class TargetRunReport:
    slug: str
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    batches: int = 0
    max_in_flight: int = 0
    aborted: bool = False
    abort_reason: str = ""
    cancelled: bool = False
    stopped_early: bool = False


Handler = Callable[[J], Awaitable[JobOutcome]]
BatchHook = Callable[[list[JobOutcome]], Awaitable[Optional[bool]]]


def chunk_backlog(jobs: Sequence[J], size: int) -> list[list[J]]:
    """Partition ``jobs`` into consecutive batches of ``size``."""
    size = max(1, size)
    return [list(jobs[i:i + size]) for i in range(0, len(jobs), size)]


def abort_reason(outcomes: list[JobOutcome]) -> Optional[str]:
    """
    Why a batch indicates a target-wide problem, or None.

    Every job skipped means the target has no more usable records. Every job
    failing with one identical parse error means the source layout changed.
    """
    if not outcomes:
        return None
    if all(o.status is JobStatus.SKIPPED for o in outcomes):
        return "every job in the batch was skipped"
    if len(outcomes) > 1 and all(
        o.status is JobStatus.FAILED
        and o.error is not None
        and o.error.error_type is ErrorType.PARSE_ERROR
        for o in outcomes
    ):
        messages = {o.error.message for o in outcomes}
        if len(messages) == 1:
            return f"every job failed with the same parse error: {messages.pop()}"
    return None


class ChunkScheduler:
    """
    Runs a backlog through ``handler`` in controller-sized batches.

    Args:
        controller: Supplies the concurrency level before each batch
        chunk_delay: Pause between batches (seconds)
        stop_event: Checked between batches; a set event ends the run early
        sleep: Awaitable sleep, injectable for tests
        name: Tag used in log lines
        detect_aborts: Apply the all-skipped / identical-parse-error abort rules.
            A StructuralError raised by a job always aborts.
    """

    def __init__(
        self,
        controller: Controller,
        chunk_delay: float = 2.0,
        stop_event: Optional[asyncio.Event] = None,
        sleep: Optional[SleepFn] = None,
        name: str = "Scheduler",
        detect_aborts: bool = True,
    ):
        self.controller = controller
        self.chunk_delay = chunk_delay
        self.stop_event = stop_event
        self._sleep = sleep or asyncio.sleep
        self.name = name
        self.detect_aborts = detect_aborts
        self._in_flight = 0

    @property
    def stopping(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()

    async def _guard(self, handler: Handler, job: Any, report: TargetRunReport) -> JobOutcome:
        self._in_flight += 1
        report.max_in_flight = max(report.max_in_flight, self._in_flight)
        try:
            return await handler(job)
        finally:
            self._in_flight -= 1

    async def run(
        self,
        jobs: Iterable[J],
        handler: Handler,
        on_batch: Optional[BatchHook] = None,
        progress: Any = None,
        slug: str = "",
    ) -> TargetRunReport:
        """
        Dispatch ``jobs`` batch by batch.

        ``on_batch`` receives every settled, non-aborted batch; returning False
        from it ends the run after that batch.

        Returns:
            TargetRunReport with counts of what was attempted and how it settled
        """
        pending = list(jobs)
        report = TargetRunReport(slug=slug)
        position = 0

        while position < len(pending):
            if self.stopping:
                report.cancelled = True
                logger.info("[%s] %s: stop requested, %d job(s) left for the next run",
                            self.name, slug or "-", len(pending) - position)
                break

            state: ConcurrencyState = self.controller.next_state()
            batch = pending[position:position + state.level]
            position += len(batch)

            results = await asyncio.gather(
                *(self._guard(handler, job, report) for job in batch),
                return_exceptions=True,
            )

            outcomes: list[JobOutcome] = []
            structural: Optional[BaseException] = None
            for job, result in zip(batch, results):
                if isinstance(result, StructuralError):
                    structural = result
                    outcomes.append(JobOutcome(job, JobStatus.FAILED,
                                               error=ClassifiedError.from_exception(result, 1)))
                elif isinstance(result, BaseException) and not isinstance(result, Exception):
                    raise result
                elif isinstance(result, Exception):
                    outcomes.append(JobOutcome(job, JobStatus.FAILED,
                                               error=ClassifiedError.from_exception(result, 1)))
                else:
                    outcomes.append(result)

            report.batches += 1
            report.attempted += len(batch)
            for o in outcomes:
                if o.status is JobStatus.OK:
                    report.succeeded += 1
                elif o.status is JobStatus.SKIPPED:
                    report.skipped += 1
                else:
                    report.failed += 1

            if progress is not None:
                progress.update(len(batch))

            if structural is not None:
                reason = f"structural error: {structural}"
            else:
                reason = abort_reason(outcomes) if self.detect_aborts else None
            if reason:
                report.aborted = True
                report.abort_reason = reason
                logger.warning("[%s] %s: aborting remaining %d job(s); %s",
                               self.name, slug or "-", len(pending) - position, reason)
                break

            if on_batch is not None and await on_batch(outcomes) is False:
                report.stopped_early = True
                break

            if position < len(pending) and not self.stopping:
                delay = self.chunk_delay + state.cooldown
                if delay > 0:
                    await self._sleep(delay)

        return report
