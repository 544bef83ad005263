"""Cycle phase bookkeeping in ``checkpoint.json``."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Optional

from .models import utc_now
from .storage import read_json, write_json_atomic

logger = logging.getLogger(__name__)

PHASES = ("starting", "targets", "details", "items", "retry", "verify", "benchmark", "idle", "failed")


class CheckpointStore:
    def __init__(self, path: Path | str):
        self.path = Path(path)

    def load(self) -> dict[str, Any]:
        data = read_json(self.path, default=None)
        return data if isinstance(data, dict) else {}

    def mark(self, phase: str, **fields: Any) -> dict[str, Any]:
        """Record a phase transition, keeping fields from earlier transitions."""
        if phase not in PHASES:
            raise ValueError(f"Unknown phase: {phase}")
        data = self.load()
        data.update(fields)
        data["phase"] = phase
        data["pid"] = os.getpid()
        data["timestamp"] = utc_now()
        write_json_atomic(self.path, data)
        logger.debug("[Checkpoint] phase=%s", phase)
        return data

    def begin_cycle(self) -> int:
        cycle = int(self.load().get("cycle", 0)) + 1
        self.mark("starting", cycle=cycle, started_at=utc_now(), finished_at=None)
        return cycle

    def finish_cycle(self, phase: str = "idle", next_run_at: Optional[str] = None) -> None:
        self.mark(phase, finished_at=utc_now(), next_run_at=next_run_at)
