"""
Concurrency control for batched fetching.

The controller is consulted once per batch. A new level only applies to the
next batch; work already dispatched is never resized.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Optional, Protocol

from .resources import ResourceMetrics, ResourceMonitor

logger = logging.getLogger(__name__)

HISTORY_SIZE = 120  # recent control decisions kept for inspection


@dataclass(frozen=True)
class ConcurrencyState:
    level: int
    ceiling: int
    floor: int
    cooldown: float = 0.0
    reason: str = ""


class Controller(Protocol):
    def next_state(self) -> ConcurrencyState: ...


class FixedConcurrency:
    """Constant batch size; used for list and detail pages."""

    def __init__(self, level: int):
        self.level = max(1, level)

    def next_state(self) -> ConcurrencyState:
        return ConcurrencyState(level=self.level, ceiling=self.level, floor=self.level)


class ConcurrencyController:
    """
    Load-driven batch size for item fetching.

    Above the high-water mark on CPU or memory the level shrinks
    multiplicatively and a cooldown is requested; below the low-water mark on
    both it grows by one. The level always stays within [floor, ceiling].

    Args:
        monitor: Source of current CPU/memory readings
        ceiling: Session ceiling, normally ``monitor.suggested_concurrency()``
        floor: Lowest level the controller will shrink to
        initial: Starting level; defaults to the ceiling
        high_water: Shrink threshold (percent)
        low_water: Grow threshold (percent)
        shrink_ratio: Multiplier applied when shrinking
        cooldown: Extra pause requested after a shrink
    """

    def __init__(
        self,
        monitor: ResourceMonitor,
        ceiling: int,
        floor: int = 2,
        initial: Optional[int] = None,
        cpu_high_water: float = 80.0,
        memory_high_water: float = 80.0,
        low_water: float = 50.0,
        shrink_ratio: float = 0.7,
        cooldown: float = 4.0,
    ):
        self.monitor = monitor
        self.floor = max(1, floor)
        self.ceiling = max(self.floor, ceiling)
        start = self.ceiling if initial is None else initial
        self._level = max(self.floor, min(start, self.ceiling))
        self.cpu_high_water = cpu_high_water
        self.memory_high_water = memory_high_water
        self.low_water = low_water
        self.shrink_ratio = shrink_ratio
        self.cooldown = cooldown
        self.history: deque[ConcurrencyState] = deque(maxlen=HISTORY_SIZE)

    @property
    def level(self) -> int:
        return self._level

    def _set_level(self, new_level: int, reason: str) -> None:
        new_level = max(self.floor, min(new_level, self.ceiling))
        if new_level != self._level:
            old = self._level
            self._level = new_level
            logger.info("[Throttle] Concurrency: %d → %d (%s)", old, new_level, reason)

    def decide(self, metrics: ResourceMetrics) -> ConcurrencyState:
        """Apply one control step for the given readings."""
        cooldown = 0.0
        reason = "steady"
        if metrics.cpu > self.cpu_high_water or metrics.memory > self.memory_high_water:
            reason = f"high load cpu={metrics.cpu:.0f}% mem={metrics.memory:.0f}%"
            self._set_level(int(self._level * self.shrink_ratio), reason)
            cooldown = self.cooldown
        elif metrics.cpu < self.low_water and metrics.memory < self.low_water:
            reason = f"low load cpu={metrics.cpu:.0f}% mem={metrics.memory:.0f}%"
            self._set_level(self._level + 1, reason)

        state = ConcurrencyState(
            level=self._level,
            ceiling=self.ceiling,
            floor=self.floor,
            cooldown=cooldown,
            reason=reason,
        )
        self.history.append(state)
        return state

    def next_state(self) -> ConcurrencyState:
        return self.decide(self.monitor.current_metrics())
