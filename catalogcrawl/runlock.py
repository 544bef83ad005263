"""
Single-instance lock across processes.

The marker file holds ``{pid, hostname, acquired_at}``. It is written to a
temp file first and hard-linked into place, so of two processes reclaiming the
same stale marker only one can win, and no reader ever sees a partial marker.
An unreadable marker younger than ``unreadable_grace`` is treated as held.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import socket
import tempfile
import time
from pathlib import Path
from typing import Any, Optional

import psutil

logger = logging.getLogger(__name__)


class RunLock:
    """
    Args:
        path: Marker file location
        stale_after: Seconds after which a marker is reclaimable regardless
            of whether its owner is alive
        unreadable_grace: Seconds an unreadable marker is left alone before
            it is considered abandoned
    """

    def __init__(self, path: Path | str, stale_after: float = 3600.0, unreadable_grace: float = 30.0):
        self.path = Path(path)
        self.stale_after = stale_after
        self.unreadable_grace = unreadable_grace
        self.pid = os.getpid()
        self.hostname = socket.gethostname()
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def owner(self) -> Optional[dict[str, Any]]:
        """Parsed marker contents; None when absent or unreadable."""
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError):
            return None
        return data if isinstance(data, dict) else None

    def _create(self) -> bool:
        # The marker is written in full to a temp file and then hard-linked into
        # place, so it is never observed empty or half-written.
        marker = {"pid": self.pid, "hostname": self.hostname, "acquired_at": time.time()}
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(marker, f)
                f.flush()
                os.fsync(f.fileno())
            try:
                os.link(tmp, self.path)
            except FileExistsError:
                return False
        finally:
            with contextlib.suppress(OSError):
                os.unlink(tmp)
        self._held = True
        return True

    def _marker_age(self) -> Optional[float]:
        try:
            return time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return None

    def _reclaim_reason(self, marker: Optional[dict[str, Any]]) -> Optional[str]:
        if marker is None:
            age = self._marker_age()
            if age is not None and age < self.unreadable_grace:
                return None
            return "unreadable marker"
        try:
            pid = int(marker["pid"])
            acquired_at = float(marker["acquired_at"])
        except (KeyError, TypeError, ValueError):
            return "malformed marker"
        age = time.time() - acquired_at
        if age > self.stale_after:
            return f"stale marker ({age:.0f}s old)"
        if pid == self.pid:
            return "marker left by this process"
        if not psutil.pid_exists(pid):
            return f"owner pid {pid} is not running"
        return None

    def acquire(self) -> bool:
        """
        Take the lock.

        Returns:
            True when this process now holds the lock, False when another live
            instance holds it (the marker is left untouched in that case)
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self._create():
            logger.info("[Lock] Acquired %s (pid %d)", self.path, self.pid)
            return True

        marker = self.owner()
        if marker is None and not self.path.exists():
            # Released between our attempts.
            return self._create()

        reason = self._reclaim_reason(marker)
        if reason is None:
            if marker is None:
                logger.warning("[Lock] %s is being written by another instance; skipping", self.path)
            else:
                logger.warning("[Lock] Another instance is running (pid %s on %s); skipping",
                               marker.get("pid"), marker.get("hostname"))
            return False

        logger.warning("[Lock] Reclaiming %s: %s", self.path, reason)
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        if self._create():
            logger.info("[Lock] Acquired %s (pid %d)", self.path, self.pid)
            return True
        logger.warning("[Lock] Lost the race reclaiming %s", self.path)
        return False

    def release(self) -> None:
        """Remove the marker if, and only if, this process owns it."""
        marker = self.owner()
        self._held = False
        if marker is None:
            return
        if marker.get("pid") != self.pid or marker.get("hostname") != self.hostname:
            logger.warning("[Lock] Not releasing %s: owned by pid %s", self.path, marker.get("pid"))
            return
        try:
            self.path.unlink()
            logger.info("[Lock] Released %s", self.path)
        except FileNotFoundError:
            pass

    def __enter__(self) -> "RunLock":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._held:
            self.release()
