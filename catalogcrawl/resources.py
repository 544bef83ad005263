"""
Host resource sampling.

``ResourceMonitor`` samples host-wide CPU and memory utilization on a
background task and keeps a rolling window of samples. The controller reads
``current_metrics()`` before every item batch; ``suggested_concurrency()``
gives the session ceiling once at startup.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

import psutil

from .notify import Notifier, safe_notify

logger = logging.getLogger(__name__)

TREND_SPAN = 5


@dataclass(frozen=True)
class ResourceSample:
    timestamp: float
    cpu: float
    memory: float


@dataclass(frozen=True)
class ResourceMetrics:
    cpu: float
    memory: float
    cpu_trend: float
    memory_trend: float


SamplerFn = Callable[[], tuple[float, float]]


def psutil_sampler() -> tuple[float, float]:
    """Aggregate CPU% since the previous call and used memory%."""
    return psutil.cpu_percent(interval=None), psutil.virtual_memory().percent


class ResourceMonitor:
    """
    Rolling window of host CPU/memory samples.

    Args:
        interval: Seconds between samples
        window: Seconds of history to keep
        high_water: Percent above which a warning notification is sent
        per_request_memory_mb: Memory assumed per in-flight request
        hard_cap: Upper bound for ``suggested_concurrency``
        notifier: Receives threshold warnings (best effort)
        sampler: Returns ``(cpu_percent, memory_percent)``; psutil by default
    """

    def __init__(
        self,
        interval: float = 30.0,
        window: float = 3600.0,
        high_water: float = 80.0,
        per_request_memory_mb: int = 100,
        hard_cap: int = 15,
        notifier: Optional[Notifier] = None,
        sampler: Optional[SamplerFn] = None,
    ):
        self.interval = interval
        self.high_water = high_water
        self.per_request_memory_mb = per_request_memory_mb
        self.hard_cap = hard_cap
        self.notifier = notifier
        self._sampler = sampler or psutil_sampler
        self._samples: deque[ResourceSample] = deque(maxlen=max(2, int(window // max(interval, 1e-9))))
        self._task: Optional[asyncio.Task] = None

        self.peak_cpu = 0.0
        self.peak_memory = 0.0
        self._cpu_total = 0.0
        self._memory_total = 0.0
        self._count = 0

    # --- Lifecycle ---

    async def start(self) -> None:
        if self._task is not None:
            return
        if self._sampler is psutil_sampler:
            # Prime psutil so the first reading is not a meaningless 0.0.
            psutil.cpu_percent(interval=None)
        await self.sample()
        self._task = asyncio.create_task(self._run(), name="resource-monitor")
        logger.info("[Monitor] Started | interval=%.0fs | window=%d samples",
                    self.interval, self._samples.maxlen)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("[Monitor] Stopped")

    @property
    def running(self) -> bool:
        return self._task is not None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sample()
            except Exception as e:
                logger.warning("[Monitor] Sampling failed: %s", e)

    # --- Sampling ---

    async def sample(self) -> ResourceSample:
        """Take one sample, update aggregates and warn on threshold breaches."""
        cpu, memory = self._sampler()
        sample = ResourceSample(timestamp=time.time(), cpu=float(cpu), memory=float(memory))
        self._samples.append(sample)

        self.peak_cpu = max(self.peak_cpu, sample.cpu)
        self.peak_memory = max(self.peak_memory, sample.memory)
        self._cpu_total += sample.cpu
        self._memory_total += sample.memory
        self._count += 1

        breaches = []
        if sample.cpu > self.high_water:
            breaches.append(f"CPU {sample.cpu:.1f}%")
        if sample.memory > self.high_water:
            breaches.append(f"memory {sample.memory:.1f}%")
        if breaches:
            message = f"High resource usage: {', '.join(breaches)}"
            logger.warning("[Monitor] %s", message)
            await safe_notify(self.notifier, message, "warning")
        return sample

    def _trend(self, attr: str) -> float:
        if len(self._samples) < 2:
            return 0.0
        latest = getattr(self._samples[-1], attr)
        back = min(TREND_SPAN, len(self._samples) - 1)
        return latest - getattr(self._samples[-1 - back], attr)

    def current_metrics(self) -> ResourceMetrics:
        if not self._samples:
            return ResourceMetrics(cpu=0.0, memory=0.0, cpu_trend=0.0, memory_trend=0.0)
        latest = self._samples[-1]
        return ResourceMetrics(
            cpu=latest.cpu,
            memory=latest.memory,
            cpu_trend=self._trend("cpu"),
            memory_trend=self._trend("memory"),
        )

    def suggested_concurrency(
        self,
        cpu_count: Optional[int] = None,
        available_memory: Optional[int] = None,
    ) -> int:
        """min(2 x cores, available memory / per-request memory, hard cap), at least 1."""
        cores = cpu_count if cpu_count is not None else (os.cpu_count() or 1)
        free = available_memory if available_memory is not None else psutil.virtual_memory().available
        by_memory = free // (self.per_request_memory_mb * 1024 * 1024)
        return max(1, min(cores * 2, int(by_memory), self.hard_cap))

    # --- Aggregates ---

    @property
    def samples(self) -> list[ResourceSample]:
        return list(self._samples)

    @property
    def average_cpu(self) -> float:
        return self._cpu_total / self._count if self._count else 0.0

    @property
    def average_memory(self) -> float:
        return self._memory_total / self._count if self._count else 0.0

    def summary(self) -> dict[str, float]:
        return {
            "peak_cpu": round(self.peak_cpu, 1),
            "peak_memory": round(self.peak_memory, 1),
            "avg_cpu": round(self.average_cpu, 1),
            "avg_memory": round(self.average_memory, 1),
        }
